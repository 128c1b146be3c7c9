"""
Error classes for progmeta.

These error types classify failures at the build orchestration boundary:
- TransientError: The caller may resubmit later (mailbox full)
- PermanentError: Resubmitting the same source will fail the same way

Pipeline stages raise BuildError subclasses. The orchestrator catches them
at the worker boundary and converts each into exactly one terminal Error
event for the caller. Nothing in progmeta retries automatically.

Error handling contract:
- Errors are exceptions inside the pipeline
- Events are values, produced only by the orchestrator
- Don't mix "errors as values" with exceptions
"""

from typing import Optional


class ProgmetaError(Exception):
    """Base exception for progmeta."""
    pass


class TransientError(ProgmetaError):
    """
    Transient error - safe to resubmit later.

    Examples:
    - Build mailbox is full
    """
    pass


class PermanentError(ProgmetaError):
    """
    Permanent error - resubmitting unchanged input will not help.

    Examples:
    - Source cannot be fetched
    - Cargo.toml has no root package
    - The build tool exits non-zero
    """
    pass


class BuildError(PermanentError):
    """
    A build pipeline stage failed.

    Attributes:
        kind: Stable machine-readable error kind sent to the caller
        detail: Human-readable description (e.g. tail of the tool's stderr)
        stage: Pipeline stage that failed, filled in by the pipeline
    """

    kind = "BuildError"

    def __init__(self, detail: str = "", stage: Optional[str] = None):
        self.detail = detail
        self.stage = stage
        super().__init__(detail or self.kind)


class FetchFailed(BuildError):
    """git clone failed or the archive could not be unpacked."""
    kind = "FetchFailed"


class MetadataMissingRootPackage(BuildError):
    """Cargo.toml is missing or has no [package] name."""
    kind = "MetadataMissingRootPackage"


class MetadataParseFailure(BuildError):
    """Cargo.toml is not valid TOML or a metadata field has the wrong type."""
    kind = "MetadataParseFailure"


class InvocationFailed(BuildError):
    """The build tool could not be spawned."""
    kind = "InvocationFailed"


class CompilationFailed(BuildError):
    """The build tool exited with a non-zero status."""
    kind = "CompilationFailed"


class ArtifactNotFound(BuildError):
    """No single artifact with the expected extension was produced."""
    kind = "ArtifactNotFound"


class StorageFailure(BuildError):
    """The program store could not be read or written."""
    kind = "StorageFailure"


class SerializationFailure(BuildError):
    """Manifest data could not be encoded as JSON."""
    kind = "SerializationFailure"


class ProgramNotFoundError(PermanentError):
    """No program is stored under the requested hash."""
    pass


class QueueFullError(TransientError):
    """The build mailbox stayed full for the whole submit timeout."""
    pass


class ResponderGoneError(ProgmetaError):
    """The caller stopped listening before the terminal event was delivered."""
    pass


class OrchestratorClosedError(ProgmetaError):
    """A request was submitted after the orchestrator was shut down."""
    pass
