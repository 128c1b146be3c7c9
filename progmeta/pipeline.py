"""Build pipeline: one source in, one committed program out.

The pipeline runs the stages of a single build strictly in order:

    fetch -> read_manifest -> invoke -> stream -> locate -> hash -> commit

Any stage may fail by raising a BuildError, which is tagged with the stage it
failed in and propagates to the orchestrator. Commit is the last stage and the
only one that touches the store, so a build that fails anywhere leaves the
store unchanged.

The pipeline does not send the terminal event itself. It returns the
BuildSuccess event (or raises) and the orchestrator delivers exactly one
terminal event to the caller.
"""

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Optional

from progmeta.artifacts import compute_program_hash, locate_artifact
from progmeta.errors import ArtifactNotFound, BuildError, CompilationFailed
from progmeta.invoker import BuildInvoker
from progmeta.materializer import SourceMaterializer, Workspace
from progmeta.responder import Responder
from progmeta.schemas import (
    DEFAULT_METADATA_NAMESPACE,
    BuildSuccess,
    ProgramRecord,
    SourceRef,
    read_manifest,
)
from progmeta.store import ProgramStore

logger = logging.getLogger(__name__)


class BuildStage(str, Enum):
    """Pipeline stages, in execution order."""
    FETCH = "fetch"
    READ_MANIFEST = "read_manifest"
    INVOKE = "invoke"
    STREAM = "stream"
    LOCATE = "locate"
    HASH = "hash"
    COMMIT = "commit"


@contextmanager
def _stage(stage: BuildStage, request_id: Optional[str]) -> Iterator[None]:
    """Log stage entry and tag any BuildError raised inside with the stage."""
    logger.debug(
        f"Entering stage {stage.value}",
        extra={"request_id": request_id, "stage": stage.value, "event": "stage_started"},
    )
    try:
        yield
    except BuildError as e:
        if e.stage is None:
            e.stage = stage.value
        raise


class BuildPipeline:
    """
    Builds a source and commits its metadata under the content hash.

    Args:
        store: Program store written at the commit stage
        materializer: Fetches sources into workspaces
        invoker: Runs the build tool
        artifact_extension: Extension of the binary to look for
        metadata_namespace: Table under [package.metadata] with program fields
    """

    def __init__(
        self,
        store: ProgramStore,
        materializer: SourceMaterializer,
        invoker: BuildInvoker,
        artifact_extension: str = "wasm",
        metadata_namespace: str = DEFAULT_METADATA_NAMESPACE,
    ):
        self.store = store
        self.materializer = materializer
        self.invoker = invoker
        self.artifact_extension = artifact_extension
        self.metadata_namespace = metadata_namespace

    def run(
        self,
        source: SourceRef,
        responder: Responder,
        request_id: Optional[str] = None,
    ) -> BuildSuccess:
        """
        Run every stage for one source.

        Args:
            source: What to build
            responder: Receives stdout/stderr chunks while the tool runs
            request_id: Identifier used in log records

        Returns:
            The BuildSuccess terminal event

        Raises:
            BuildError: If any stage fails (e.stage names the stage)
        """
        start_time = time.monotonic()
        logger.debug(
            f"Entering stage {BuildStage.FETCH.value}",
            extra={"request_id": request_id, "stage": BuildStage.FETCH.value, "event": "stage_started"},
        )

        try:
            with self.materializer.materialize(source) as workspace:
                success = self._build(workspace, source, responder, request_id)
        except BuildError as e:
            # Only errors raised while fetching reach here untagged
            if e.stage is None:
                e.stage = BuildStage.FETCH.value
            raise

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            f"Committed program {success.hash_hex}",
            extra={
                "request_id": request_id,
                "stage": BuildStage.COMMIT.value,
                "event": "program_committed",
                "metadata": {"duration_ms": duration_ms, "binary_size": len(success.binary)},
            },
        )
        return success

    def _build(
        self,
        workspace: Workspace,
        source: SourceRef,
        responder: Responder,
        request_id: Optional[str],
    ) -> BuildSuccess:
        """Run the stages after fetch inside a materialized workspace."""
        with _stage(BuildStage.READ_MANIFEST, request_id):
            manifest = read_manifest(workspace.source_dir, self.metadata_namespace)
        logger.info(
            f"Building package {manifest.name} {manifest.version}".rstrip(),
            extra={
                "request_id": request_id,
                "event": "build_started",
                "metadata": {"source": source.describe()},
            },
        )

        with _stage(BuildStage.INVOKE, request_id):
            # Spawn failures raise here; a running tool is drained to completion
            invocation = self.invoker.run(
                workspace.source_dir,
                workspace.output_dir,
                on_chunk=responder.send_chunk,
                build_image=manifest.build_image,
            )

        with _stage(BuildStage.STREAM, request_id):
            if not invocation.success:
                raise CompilationFailed(
                    f"Compilation failed (exit status {invocation.returncode}): "
                    f"{invocation.stderr_tail}"
                )

        with _stage(BuildStage.LOCATE, request_id):
            artifact_path = locate_artifact(workspace.output_dir, self.artifact_extension)

        with _stage(BuildStage.HASH, request_id):
            try:
                binary = artifact_path.read_bytes()
            except OSError as e:
                raise ArtifactNotFound(f"Cannot read {artifact_path.name}: {e}")
            program_hash = compute_program_hash(binary, manifest)
        logger.info(f"Hashed binary {program_hash.hex()}", extra={"request_id": request_id})

        with _stage(BuildStage.COMMIT, request_id):
            record = ProgramRecord(hash=program_hash, manifest_json=manifest.to_json())
            self.store.put(record.hash, record.manifest_json)

        return BuildSuccess(
            hash=program_hash,
            binary=binary,
            binary_filename=artifact_path.name,
        )
