"""
Source references - what a caller asks progmeta to build.

A SourceRef is exactly one of:
- GitSource: a git URL, shallow-cloned at fetch time
- ArchiveSource: raw tar archive bytes, unpacked at fetch time
"""

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class GitSource:
    """A git repository URL."""
    url: str

    def describe(self) -> str:
        return f"git:{self.url}"


@dataclass(frozen=True)
class ArchiveSource:
    """A tar archive (optionally compressed) held in memory."""
    data: bytes

    def describe(self) -> str:
        return f"archive:{len(self.data)} bytes"

    def __repr__(self) -> str:
        return f"ArchiveSource(<{len(self.data)} bytes>)"


SourceRef = Union[GitSource, ArchiveSource]
