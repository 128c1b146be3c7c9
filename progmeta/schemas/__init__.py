"""
progmeta.schemas - Data structures for the build orchestration engine.

SourceRef -> ManifestInfo -> BuildEvent* -> ProgramRecord

Lifecycle:
1. SourceRef: What the caller submitted (git URL or archive bytes)
2. ManifestInfo: Package identity and program fields read from Cargo.toml
3. BuildEvent: Progress chunks and the single terminal result sent to the caller
4. ProgramRecord: Content hash + manifest JSON committed to the store
"""

from .source import (
    SourceRef,
    GitSource,
    ArchiveSource,
)
from .manifest import (
    ManifestInfo,
    MANIFEST_FILENAME,
    DEFAULT_METADATA_NAMESPACE,
    read_manifest,
)
from .events import (
    BuildEvent,
    StdOutChunk,
    StdErrChunk,
    BuildSuccess,
    BuildFailure,
    event_to_json,
    event_from_dict,
    event_from_json,
)
from .program_record import (
    ProgramRecord,
    HASH_SIZE,
)

__all__ = [
    # Sources
    "SourceRef",
    "GitSource",
    "ArchiveSource",
    # Manifest
    "ManifestInfo",
    "MANIFEST_FILENAME",
    "DEFAULT_METADATA_NAMESPACE",
    "read_manifest",
    # Events
    "BuildEvent",
    "StdOutChunk",
    "StdErrChunk",
    "BuildSuccess",
    "BuildFailure",
    "event_to_json",
    "event_from_dict",
    "event_from_json",
    # Records
    "ProgramRecord",
    "HASH_SIZE",
]
