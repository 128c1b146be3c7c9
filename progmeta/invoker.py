"""
Build invoker: run the external build tool and stream its output.

The tool is spawned as:

    <build_command...> [--build-arg IMAGE=<image>] --output=<output_dir> <source_dir>

which for the default build command is a `docker build` of the source tree's
Dockerfile, exporting the final stage's files into the output directory.

stdout and stderr are drained concurrently, one reader thread per pipe, into a
local queue. The calling thread decodes each read and hands it to on_chunk as
it arrives, so the caller sees live progress. Draining continues until both
pipes hit end-of-data, even after on_chunk has stopped accepting chunks, so
the tool never blocks on a full pipe.
"""

import codecs
import logging
import queue
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Optional

from progmeta.errors import InvocationFailed
from progmeta.schemas import BuildEvent, StdErrChunk, StdOutChunk
from progmeta.utils import tail_text

logger = logging.getLogger(__name__)

DEFAULT_BUILD_COMMAND = ("docker", "build")
READ_SIZE = 4096

ChunkCallback = Callable[[BuildEvent], bool]


@dataclass
class InvocationResult:
    """
    Outcome of one build tool run.

    Attributes:
        returncode: Exit status of the tool
        stderr_tail: Last characters of decoded stderr
        forwarded: Number of chunks the callback accepted
        dropped: Number of chunks decoded but not forwarded
        malformed: Number of reads dropped because they were not valid UTF-8
    """
    returncode: int
    stderr_tail: str = ""
    forwarded: int = 0
    dropped: int = 0
    malformed: int = 0

    @property
    def success(self) -> bool:
        return self.returncode == 0


def _pump(name: str, stream: IO[bytes], chunks: queue.Queue) -> None:
    """Copy raw reads from a pipe into the chunk queue, then post end-of-data."""
    try:
        for data in iter(lambda: stream.read1(READ_SIZE), b""):
            chunks.put((name, data))
    except (OSError, ValueError) as e:
        logger.warning(f"Error reading build tool {name}: {e}")
    finally:
        stream.close()
        chunks.put((name, None))


class BuildInvoker:
    """
    Runs the build tool for one workspace at a time.

    Decoding uses an incremental UTF-8 decoder per stream, so a multi-byte
    character split across two reads is reassembled. A read that is not valid
    UTF-8 at all is logged and dropped, and the decoder is reset.
    """

    def __init__(
        self,
        build_command: tuple[str, ...] | list[str] = DEFAULT_BUILD_COMMAND,
        stderr_tail_chars: int = 4096,
    ):
        self.build_command = list(build_command)
        self.stderr_tail_chars = stderr_tail_chars

    def command_for(
        self,
        source_dir: Path,
        output_dir: Path,
        build_image: Optional[str] = None,
    ) -> list[str]:
        """Build the argv for one invocation."""
        command = list(self.build_command)
        if build_image:
            command.extend(["--build-arg", f"IMAGE={build_image}"])
        command.append(f"--output={output_dir}")
        command.append(str(source_dir))
        return command

    def run(
        self,
        source_dir: Path,
        output_dir: Path,
        on_chunk: ChunkCallback,
        build_image: Optional[str] = None,
    ) -> InvocationResult:
        """
        Run the build tool to completion, streaming its output.

        Args:
            source_dir: Fetched source tree (build context)
            output_dir: Directory the tool writes artifacts into
            on_chunk: Receives StdOutChunk/StdErrChunk events; returning False
                stops further forwarding (draining continues)
            build_image: Optional build image override

        Returns:
            InvocationResult (a non-zero returncode is not raised here)

        Raises:
            InvocationFailed: If the tool cannot be spawned
        """
        command = self.command_for(source_dir, output_dir, build_image)
        logger.info(f"Executing: {' '.join(command)}")

        try:
            process = subprocess.Popen(
                command,
                cwd=source_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise InvocationFailed(f"Cannot start build tool {command[0]}: {e}")

        if process.stdout is None or process.stderr is None:
            process.kill()
            process.wait()
            raise InvocationFailed("Build tool output streams are unavailable")

        chunks: queue.Queue = queue.Queue()
        readers = [
            threading.Thread(target=_pump, args=("stdout", process.stdout, chunks), daemon=True),
            threading.Thread(target=_pump, args=("stderr", process.stderr, chunks), daemon=True),
        ]
        for reader in readers:
            reader.start()

        decoders = {
            "stdout": codecs.getincrementaldecoder("utf-8")(),
            "stderr": codecs.getincrementaldecoder("utf-8")(),
        }
        result = InvocationResult(returncode=-1)
        stderr_text = ""
        forwarding = True
        open_streams = len(readers)

        while open_streams:
            name, data = chunks.get()
            final = data is None
            if final:
                open_streams -= 1

            try:
                text = decoders[name].decode(data or b"", final=final)
            except UnicodeDecodeError as e:
                result.malformed += 1
                decoders[name].reset()
                logger.warning(f"Dropped undecodable build tool {name} output: {e}")
                continue

            if not text:
                continue

            if name == "stderr":
                stderr_text = tail_text(stderr_text + text, self.stderr_tail_chars)

            if not forwarding:
                result.dropped += 1
                continue

            event = StdOutChunk(text) if name == "stdout" else StdErrChunk(text)
            if on_chunk(event):
                result.forwarded += 1
            else:
                # Caller stopped listening; the tool keeps running to completion
                forwarding = False
                result.dropped += 1

        result.returncode = process.wait()
        for reader in readers:
            reader.join()

        result.stderr_tail = stderr_text
        logger.info(
            f"Build tool exited with status {result.returncode}",
            extra={
                "event": "build_tool_exited",
                "metadata": {
                    "returncode": result.returncode,
                    "forwarded": result.forwarded,
                    "dropped": result.dropped,
                },
            },
        )
        return result
