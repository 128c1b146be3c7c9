"""
Responder - per-request channel from the build worker to the caller.

The worker is the only writer and the caller's connection is the only reader.
For each request the caller sees zero or more chunk events followed by exactly
one terminal event.

Overflow policy:
- Chunk events are best-effort. If the channel is full or the caller has
  disconnected, chunk forwarding stops for the rest of the request. The build
  itself keeps running.
- The terminal event waits up to terminal_timeout for space. If it cannot be
  delivered, ResponderGoneError is raised for the worker to log; the build's
  result is already committed by then.
"""

import logging
import queue
import threading
import time
from collections.abc import Iterator
from typing import Optional

from progmeta.errors import ResponderGoneError
from progmeta.schemas import BuildEvent

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 256
DEFAULT_TERMINAL_TIMEOUT = 30.0

# How often a blocked terminal send rechecks for a disconnected caller
_POLL_INTERVAL = 0.1


class Responder:
    """A bounded, single-writer single-reader stream of BuildEvents."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        terminal_timeout: float = DEFAULT_TERMINAL_TIMEOUT,
    ):
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._terminal_timeout = terminal_timeout
        self._disconnected = threading.Event()
        self._finished = False
        self._forwarding = True
        self.dropped_chunks = 0

    @property
    def finished(self) -> bool:
        """True once the terminal event has been handed to finish()."""
        return self._finished

    @property
    def disconnected(self) -> bool:
        return self._disconnected.is_set()

    @property
    def forwarding(self) -> bool:
        """False once chunk forwarding has been abandoned for this request."""
        return self._forwarding

    # Worker side

    def send_chunk(self, event: BuildEvent) -> bool:
        """
        Forward a progress chunk without blocking.

        Returns:
            True if the chunk was queued, False if forwarding is abandoned
        """
        if event.terminal:
            raise ValueError("Terminal events must be sent with finish()")
        if self._finished:
            raise RuntimeError("Responder already finished")

        if not self._forwarding:
            self.dropped_chunks += 1
            return False

        if self._disconnected.is_set():
            self._abandon("caller disconnected")
            return False

        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._abandon("channel is full")
            return False
        return True

    def finish(self, event: BuildEvent) -> None:
        """
        Deliver the terminal event. May be called exactly once.

        Raises:
            RuntimeError: If a terminal event was already sent
            ResponderGoneError: If the caller is gone or never made room
        """
        if not event.terminal:
            raise ValueError("finish() requires a terminal event")
        if self._finished:
            raise RuntimeError("Responder already finished")
        self._finished = True

        deadline = time.monotonic() + self._terminal_timeout
        while True:
            if self._disconnected.is_set():
                raise ResponderGoneError("Caller disconnected before the build finished")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ResponderGoneError(
                    f"Caller did not read the result within {self._terminal_timeout}s"
                )
            try:
                self._queue.put(event, timeout=min(remaining, _POLL_INTERVAL))
                return
            except queue.Full:
                continue

    def _abandon(self, reason: str) -> None:
        self._forwarding = False
        self.dropped_chunks += 1
        logger.warning(f"Stopped forwarding build output: {reason}")

    # Caller side

    def events(self, timeout: Optional[float] = None) -> Iterator[BuildEvent]:
        """
        Yield events until and including the terminal event.

        Args:
            timeout: Maximum seconds to wait for each event (None waits forever)

        Raises:
            queue.Empty: If no event arrives within timeout
        """
        while True:
            event = self._queue.get(timeout=timeout)
            yield event
            if event.terminal:
                return

    def disconnect(self) -> None:
        """Signal that the caller stopped listening."""
        self._disconnected.set()
