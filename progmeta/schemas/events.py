"""
Build events - what the caller receives while a build runs.

For every request the caller sees zero or more chunk events followed by
exactly one terminal event:

    StdOutChunk* / StdErrChunk*  ->  BuildSuccess | BuildFailure

On the wire each event is one JSON object per line with a "type" field:

    {"type": "stdout", "text": "..."}
    {"type": "stderr", "text": "..."}
    {"type": "success", "hash": "<hex>", "binary": "<base64>", "binary_filename": "x.wasm"}
    {"type": "error", "kind": "CompilationFailed", "detail": "...", "stage": "stream"}
"""

import base64
import json
from dataclasses import dataclass
from typing import Any, Optional, Union


@dataclass(frozen=True)
class StdOutChunk:
    """A decoded chunk of the build tool's stdout."""
    text: str
    terminal = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": "stdout", "text": self.text}


@dataclass(frozen=True)
class StdErrChunk:
    """A decoded chunk of the build tool's stderr."""
    text: str
    terminal = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": "stderr", "text": self.text}


@dataclass(frozen=True)
class BuildSuccess:
    """
    Terminal event for a committed build.

    Attributes:
        hash: Content hash the program metadata is stored under
        binary: The built artifact
        binary_filename: Artifact filename as produced by the build tool
    """
    hash: bytes
    binary: bytes
    binary_filename: str
    terminal = True

    @property
    def hash_hex(self) -> str:
        return self.hash.hex()

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "success",
            "hash": self.hash.hex(),
            "binary": base64.b64encode(self.binary).decode("ascii"),
            "binary_filename": self.binary_filename,
        }

    def __repr__(self) -> str:
        return (
            f"BuildSuccess(hash={self.hash.hex()}, binary=<{len(self.binary)} bytes>, "
            f"binary_filename={self.binary_filename!r})"
        )


@dataclass(frozen=True)
class BuildFailure:
    """
    Terminal event for a build that failed at some stage.

    Attributes:
        kind: Error kind (e.g. FetchFailed, CompilationFailed)
        detail: Human-readable description
        stage: Pipeline stage that failed, if known
    """
    kind: str
    detail: str = ""
    stage: Optional[str] = None
    terminal = True

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": "error", "kind": self.kind, "detail": self.detail}
        if self.stage is not None:
            result["stage"] = self.stage
        return result


BuildEvent = Union[StdOutChunk, StdErrChunk, BuildSuccess, BuildFailure]


def event_to_json(event: BuildEvent) -> str:
    """Encode an event as a single JSON line (without the newline)."""
    return json.dumps(event.to_dict())


def event_from_dict(data: dict[str, Any]) -> BuildEvent:
    """
    Decode an event from its wire dictionary.

    Raises:
        ValueError: If the event type is unknown or fields are missing
    """
    event_type = data.get("type")
    try:
        if event_type == "stdout":
            return StdOutChunk(text=data["text"])
        if event_type == "stderr":
            return StdErrChunk(text=data["text"])
        if event_type == "success":
            return BuildSuccess(
                hash=bytes.fromhex(data["hash"]),
                binary=base64.b64decode(data["binary"]),
                binary_filename=data["binary_filename"],
            )
        if event_type == "error":
            return BuildFailure(
                kind=data["kind"],
                detail=data.get("detail", ""),
                stage=data.get("stage"),
            )
    except KeyError as e:
        raise ValueError(f"Build event of type {event_type!r} is missing field {e}")
    raise ValueError(f"Unknown build event type: {event_type!r}")


def event_from_json(line: str) -> BuildEvent:
    return event_from_dict(json.loads(line))
