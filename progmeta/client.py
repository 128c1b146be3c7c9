"""
HTTP client for a running progmeta service.

Build calls return an iterator of BuildEvents that yields chunk events as the
server streams them and ends after the terminal event.
"""

from collections.abc import Iterator
from typing import Any, Optional

import httpx

from progmeta.errors import ProgmetaError, ProgramNotFoundError
from progmeta.schemas import BuildEvent, event_from_json

DEFAULT_ENDPOINT = "http://localhost:3000"
ENDPOINT_ENV_VAR = "PROGMETA_SERVICE_ENDPOINT"


class ServiceError(ProgmetaError):
    """The service answered with an unexpected status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


class ProgramServiceClient:
    """
    Client for the progmeta HTTP API.

    Args:
        endpoint: Base URL of the service
        timeout: httpx timeout for connecting and between reads (None for no limit)
        transport: Optional httpx transport (used by tests)
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self._client = httpx.Client(
            base_url=self.endpoint,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ProgramServiceClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def build_git(self, git_url: str) -> Iterator[BuildEvent]:
        """Build a program from a git repository URL."""
        return self._stream_build("/add-program-git", git_url.encode("utf-8"))

    def build_archive(self, raw_archive: bytes) -> Iterator[BuildEvent]:
        """Build a program from tar archive bytes."""
        return self._stream_build("/add-program-tar", raw_archive)

    def _stream_build(self, path: str, body: bytes) -> Iterator[BuildEvent]:
        with self._client.stream("POST", path, content=body) as response:
            if response.status_code != 200:
                response.read()
                raise ServiceError(response.status_code, response.text)
            for line in response.iter_lines():
                if not line.strip():
                    continue
                event = event_from_json(line)
                yield event
                if event.terminal:
                    return
        raise ProgmetaError("Build stream ended without a result")

    def list_programs(self) -> list[str]:
        """Hex-encoded hashes of all stored programs."""
        response = self._client.get("/programs")
        self._check(response)
        return response.json()

    def get_program(self, program_hash: str) -> dict[str, Any]:
        """
        Stored manifest of one program.

        Raises:
            ProgramNotFoundError: If no program is stored under the hash
        """
        response = self._client.get(f"/program/{program_hash}")
        if response.status_code == 404:
            raise ProgramNotFoundError(f"Program not found: {program_hash}")
        self._check(response)
        return response.json()

    @staticmethod
    def _check(response: httpx.Response) -> None:
        if response.status_code != 200:
            raise ServiceError(response.status_code, response.text)
