"""
Orchestrator - serialized build queue with a single worker.

Builds share external resources (the build tool's image cache, the workspace
directory) so they run one at a time. Callers submit from any thread; a bounded
FIFO mailbox holds requests until the worker takes them in arrival order.

Submission policy: blocking with bound. submit() waits up to submit_timeout
seconds for mailbox space and then raises QueueFullError. A submit_timeout of
None waits indefinitely, 0 fails fast.

For every request taken off the mailbox the worker delivers exactly one
terminal event:
- BuildSuccess returned by the pipeline
- BuildFailure carrying the BuildError's kind, detail and stage
- BuildFailure(InternalError) for anything unexpected (logged with traceback)

There is no cancellation. A caller that disconnects only stops receiving
events; its build still runs to completion and may still commit.
"""

import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from typing import Optional, Protocol

from progmeta.errors import (
    BuildError,
    OrchestratorClosedError,
    QueueFullError,
    ResponderGoneError,
)
from progmeta.responder import Responder
from progmeta.schemas import BuildEvent, BuildFailure, BuildSuccess, SourceRef

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000
DEFAULT_SUBMIT_TIMEOUT = 30.0
INTERNAL_ERROR = "InternalError"
CLOSED_ERROR = "OrchestratorClosed"

# Placed on the mailbox by shutdown() to stop the worker
_STOP = object()


def _new_request_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class BuildRequest:
    """
    A queued build.

    Attributes:
        source: What to build
        responder: Channel back to the caller
        request_id: Short identifier for log records
    """
    source: SourceRef
    responder: Responder
    request_id: str = field(default_factory=_new_request_id)


class Pipeline(Protocol):
    def run(
        self,
        source: SourceRef,
        responder: Responder,
        request_id: Optional[str] = None,
    ) -> BuildSuccess:
        ...


class BuildOrchestrator:
    """
    Runs queued builds one at a time on a dedicated worker thread.

    Args:
        pipeline: Runs one build end to end
        capacity: Maximum number of waiting requests
        submit_timeout: Seconds submit() waits for space (None: forever, 0: fail fast)
    """

    def __init__(
        self,
        pipeline: Pipeline,
        capacity: int = DEFAULT_CAPACITY,
        submit_timeout: Optional[float] = DEFAULT_SUBMIT_TIMEOUT,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.pipeline = pipeline
        self.capacity = capacity
        self.submit_timeout = submit_timeout
        # Capacity is counted by _slots so the stop marker never waits for room
        self._mailbox: queue.Queue = queue.Queue()
        self._slots = threading.BoundedSemaphore(capacity)
        self._worker: Optional[threading.Thread] = None
        self._closed = False
        self._lock = threading.Lock()
        self.processed = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def pending(self) -> int:
        """Approximate number of requests waiting in the mailbox."""
        return self._mailbox.qsize()

    def start(self) -> None:
        """Start the worker thread."""
        with self._lock:
            if self._closed:
                raise OrchestratorClosedError("Orchestrator has been shut down")
            if self._worker is not None:
                return
            self._worker = threading.Thread(
                target=self._work,
                name="progmeta-build-worker",
                daemon=True,
            )
            self._worker.start()
        logger.info(f"Build worker started (mailbox capacity {self.capacity})")

    def submit(self, request: BuildRequest, timeout: Optional[float] = None) -> None:
        """
        Queue a build request.

        Args:
            request: The request to queue
            timeout: Override for submit_timeout

        Raises:
            QueueFullError: If the mailbox stays full for the whole timeout
            OrchestratorClosedError: If shutdown() has been called
        """
        if self._closed:
            raise OrchestratorClosedError("Orchestrator has been shut down")

        wait = self.submit_timeout if timeout is None else timeout
        if wait == 0:
            acquired = self._slots.acquire(blocking=False)
        else:
            acquired = self._slots.acquire(timeout=wait)
        if not acquired:
            logger.warning(
                f"Rejected build request {request.request_id}: queue is full",
                extra={"request_id": request.request_id, "event": "queue_full"},
            )
            raise QueueFullError(f"Queue is full ({self.capacity} builds waiting)")

        # Checked again under the lock: nothing may follow the stop marker
        with self._lock:
            if self._closed:
                self._slots.release()
                raise OrchestratorClosedError("Orchestrator has been shut down")
            self._mailbox.put(request)

        logger.info(
            f"Queued build request {request.request_id} ({request.source.describe()})",
            extra={"request_id": request.request_id, "event": "request_queued"},
        )

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop accepting requests and stop the worker after the queued ones.

        Requests queued before a worker was ever started are answered with a
        BuildFailure(OrchestratorClosed).

        Args:
            wait: Join the worker thread before returning
            timeout: Maximum seconds to wait for the join
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker
            if worker is not None:
                self._mailbox.put(_STOP)

        if worker is None:
            self._fail_pending()
            return
        if wait:
            worker.join(timeout)

    def _work(self) -> None:
        """Worker loop: take requests in order and process each to completion."""
        while True:
            request = self._mailbox.get()
            try:
                if request is _STOP:
                    logger.info("Build worker stopped")
                    return
                self._slots.release()
                self.process(request)
            finally:
                self._mailbox.task_done()

    def _fail_pending(self) -> None:
        """Answer every request still in the mailbox with a shutdown failure."""
        while True:
            try:
                request = self._mailbox.get_nowait()
            except queue.Empty:
                return
            try:
                if request is _STOP:
                    continue
                self._slots.release()
                logger.warning(
                    f"Dropping build request {request.request_id}: orchestrator shut down",
                    extra={"request_id": request.request_id, "event": "request_dropped"},
                )
                try:
                    request.responder.finish(
                        BuildFailure(kind=CLOSED_ERROR, detail="Orchestrator has been shut down")
                    )
                except ResponderGoneError as e:
                    logger.error(
                        f"Response channel has been dropped for {request.request_id}: {e}",
                        extra={"request_id": request.request_id, "event": "responder_gone"},
                    )
            finally:
                self._mailbox.task_done()

    def process(self, request: BuildRequest) -> BuildEvent:
        """
        Run one request through the pipeline and deliver its terminal event.

        Returns:
            The terminal event (delivered or not)
        """
        log_extra = {"request_id": request.request_id}
        event: BuildEvent
        try:
            event = self.pipeline.run(
                request.source,
                request.responder,
                request_id=request.request_id,
            )
        except BuildError as e:
            logger.error(
                f"Build {request.request_id} failed at {e.stage}: {e.kind}: {e.detail}",
                extra={**log_extra, "stage": e.stage, "event": "build_failed"},
            )
            event = BuildFailure(kind=e.kind, detail=e.detail, stage=e.stage)
        except Exception as e:
            logger.exception(
                f"Unexpected error while building {request.request_id}",
                extra={**log_extra, "event": "build_crashed"},
            )
            event = BuildFailure(kind=INTERNAL_ERROR, detail=str(e))

        self.processed += 1

        try:
            request.responder.finish(event)
        except ResponderGoneError as e:
            logger.error(
                f"Response channel has been dropped while building {request.request_id}: {e}",
                extra={**log_extra, "event": "responder_gone"},
            )
        return event

    def join(self) -> None:
        """Block until every queued request has been processed."""
        self._mailbox.join()
