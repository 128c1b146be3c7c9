"""
Source materializer: turn a SourceRef into a request-scoped workspace.

Each build gets a fresh temporary directory laid out as:

    <workspace>/
        source/   fetched tree (git clone or unpacked archive)
        output/   where the build tool writes its artifact

The directory is removed when the build finishes, whatever the outcome.
"""

import io
import logging
import lzma
import subprocess
import tarfile
import tempfile
import zlib
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from progmeta.errors import FetchFailed
from progmeta.schemas import ArchiveSource, GitSource, SourceRef
from progmeta.utils import tail_text

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "progmeta-build-"


@dataclass(frozen=True)
class Workspace:
    """Directories owned by one in-flight build."""
    root: Path
    source_dir: Path
    output_dir: Path


class SourceMaterializer:
    """
    Fetch sources into isolated workspaces.

    Git sources are shallow-cloned (depth 1). Archive sources are unpacked
    with tarfile's "data" filter, which refuses absolute paths, links that
    escape the tree and special files.
    """

    def __init__(
        self,
        work_root: Optional[Path] = None,
        git_command: str = "git",
        fetch_timeout: Optional[float] = 300.0,
    ):
        self.work_root = work_root
        self.git_command = git_command
        self.fetch_timeout = fetch_timeout

    @contextmanager
    def materialize(self, source: SourceRef) -> Iterator[Workspace]:
        """
        Fetch a source into a fresh workspace for the duration of the block.

        Raises:
            FetchFailed: If the clone or the unpack fails
        """
        if self.work_root is not None:
            self.work_root.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(
            prefix=WORKSPACE_PREFIX,
            dir=self.work_root,
            ignore_cleanup_errors=True,
        ) as tmp:
            root = Path(tmp)
            workspace = Workspace(
                root=root,
                source_dir=root / "source",
                output_dir=root / "output",
            )

            if isinstance(source, GitSource):
                self._clone(source.url, workspace.source_dir)
            elif isinstance(source, ArchiveSource):
                self._unpack(source.data, workspace.source_dir)
            else:
                raise TypeError(f"Unsupported source type: {type(source).__name__}")

            workspace.output_dir.mkdir()
            yield workspace

    def _clone(self, url: str, target: Path) -> None:
        """Shallow-clone a git repository into target."""
        if not url:
            raise FetchFailed("Could not clone git repository: empty URL")

        command = [self.git_command, "clone", "--depth=1", "--", url, str(target)]
        logger.debug(f"Executing: {' '.join(command)}")

        try:
            result = subprocess.run(
                command,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.fetch_timeout,
                check=False,
            )
        except FileNotFoundError:
            raise FetchFailed(f"Could not clone git repository: {self.git_command} not found")
        except subprocess.TimeoutExpired:
            raise FetchFailed(
                f"Could not clone git repository: timed out after {self.fetch_timeout}s"
            )
        except OSError as e:
            raise FetchFailed(f"Could not clone git repository: {e}")

        if result.returncode != 0:
            stderr = tail_text(result.stderr.strip(), 2000)
            raise FetchFailed(f"Could not clone git repository: {stderr}")

    def _unpack(self, data: bytes, target: Path) -> None:
        """Unpack a (possibly compressed) tar archive into target."""
        target.mkdir()
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
                archive.extractall(target, filter="data")
        except (tarfile.TarError, EOFError, zlib.error, lzma.LZMAError) as e:
            raise FetchFailed(f"Cannot unpack archive: {e}")
        except OSError as e:
            raise FetchFailed(f"Cannot unpack archive: {e}")
