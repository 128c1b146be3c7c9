"""
Artifact locating and content hashing.

The program hash is BLAKE2b-256 over a canonical encoding of:

    u64le(len(binary)) || binary
    u64le(len(configuration_schema)) || configuration_schema
    u64le(len(auxiliary_data_schema)) || auxiliary_data_schema
    u64le(len(oracle_data_pointer)) || oracle_data_pointer
    version_number (one byte)

Strings are UTF-8. Every field is length-prefixed and the order is fixed, so
the digest does not depend on how Cargo.toml orders its keys, and the same
binary declared with a different configuration gets a different hash. Package
name, version and build image do not take part.
"""

import hashlib
import logging
from pathlib import Path

from progmeta.errors import ArtifactNotFound
from progmeta.schemas import HASH_SIZE, ManifestInfo

logger = logging.getLogger(__name__)


def locate_artifact(output_dir: Path, extension: str = "wasm") -> Path:
    """
    Find the single artifact with the given extension in output_dir.

    Only the top level of output_dir is scanned.

    Raises:
        ArtifactNotFound: If there is no match, more than one match, or no output_dir
    """
    suffix = f".{extension}"
    try:
        matches = sorted(
            entry for entry in output_dir.iterdir()
            if entry.is_file() and entry.suffix == suffix
        )
    except (FileNotFoundError, NotADirectoryError):
        raise ArtifactNotFound(f"Build produced no output directory at {output_dir}")

    if not matches:
        raise ArtifactNotFound(f"Cannot find {suffix} binary after compiling")
    if len(matches) > 1:
        names = ", ".join(m.name for m in matches)
        raise ArtifactNotFound(f"Build produced more than one {suffix} binary: {names}")
    return matches[0]


def _length_prefixed(data: bytes) -> bytes:
    return len(data).to_bytes(8, "little") + data


def compute_program_hash(binary: bytes, manifest: ManifestInfo) -> bytes:
    """
    Compute the content hash a program is stored under.

    Args:
        binary: Artifact bytes
        manifest: Manifest whose program fields take part in the hash

    Returns:
        32-byte digest
    """
    hasher = hashlib.blake2b(digest_size=HASH_SIZE)
    hasher.update(_length_prefixed(binary))
    for value in (
        manifest.configuration_schema,
        manifest.auxiliary_data_schema,
        manifest.oracle_data_pointer,
    ):
        hasher.update(_length_prefixed(value.encode("utf-8")))
    hasher.update(bytes([manifest.version_number]))
    return hasher.digest()
