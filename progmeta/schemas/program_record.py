"""
ProgramRecord schema - what the store keeps for a committed build.

A ProgramRecord is created only at the commit stage, once the artifact has
been read and its content hash computed. It is never partially written.
"""

from dataclasses import dataclass
from typing import Any

from .manifest import ManifestInfo

HASH_SIZE = 32


@dataclass(frozen=True)
class ProgramRecord:
    """
    A stored program.

    Attributes:
        hash: 32-byte content hash (the store key)
        manifest_json: Serialized ManifestInfo (the store value)
    """
    hash: bytes
    manifest_json: bytes

    def __post_init__(self):
        if len(self.hash) != HASH_SIZE:
            raise ValueError(f"Program hash must be {HASH_SIZE} bytes, got {len(self.hash)}")

    @property
    def hash_hex(self) -> str:
        return self.hash.hex()

    def manifest(self) -> ManifestInfo:
        """Decode the stored manifest."""
        return ManifestInfo.from_json(self.manifest_json)

    def to_dict(self) -> dict[str, Any]:
        return {"hash": self.hash.hex(), "manifest": self.manifest().to_dict()}
