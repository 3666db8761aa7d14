"""Batch queue and flush scheduler.

Producers put LabeledEntries on a bounded BatchQueue from any thread. A
single FlushScheduler thread owns the consuming end: it buffers entries and
hands them to ``on_flush`` when either the batch size is reached or the
batch-wait timer fires, whichever comes first.
"""

import logging
import queue
import threading
import time
from typing import Optional

from loki_shipper.errors import ClientClosedError, LokiError, QueueFullError

logger = logging.getLogger(__name__)

# Poison pill: everything queued before it is flushed, then the thread exits.
_STOP = object()


class _FlushRequest:
    """Asks the scheduler thread to flush now and report the outcome."""

    def __init__(self):
        self.done = threading.Event()
        self.error: Optional[BaseException] = None


class BatchQueue:
    """Bounded multi-producer, single-consumer queue.

    ``put`` blocks while the queue is full (backpressure). With a
    ``put_timeout`` it gives up after that many seconds instead.
    """

    def __init__(self, maxsize: int, put_timeout: Optional[float] = None):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._closed = False
        self._lock = threading.Lock()

    def put(self, item):
        # The lock keeps an item from slipping in behind the stop sentinel.
        with self._lock:
            if self._closed:
                raise ClientClosedError("batch queue is closed")
            try:
                self._queue.put(item, timeout=self._put_timeout)
            except queue.Full:
                raise QueueFullError(
                    f"batch queue full ({self._queue.maxsize} entries) for {self._put_timeout}s"
                ) from None

    def get(self, timeout: float):
        """Next item, or None if nothing arrived within *timeout* seconds."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list:
        """Remove and return everything currently queued."""
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def close(self):
        """Refuse new items and queue the stop sentinel."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_STOP)

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()


class FlushScheduler:
    """Background thread that drains a BatchQueue into ``on_flush`` calls.

    ``on_flush(batch, trigger)`` receives the buffered entries in arrival
    order and the reason for the flush: ``"size"``, ``"timer"``,
    ``"manual"`` or ``"shutdown"``.
    """

    def __init__(self, batch_queue: BatchQueue, batch_size: int, batch_wait: float, on_flush):
        self._queue = batch_queue
        self._batch_size = batch_size
        self._batch_wait = batch_wait
        self._on_flush = on_flush
        self._buffer: list = []
        self._in_flight: list = []
        self._abandoned = False
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    # Public API

    def start(self):
        """Start the scheduler thread. Calling it twice is a no-op."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, daemon=True, name="loki-flush")
        self._thread.start()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def flush(self, timeout: Optional[float] = None):
        """Flush buffered and already-queued entries, re-raising a send error."""
        if not self.running:
            raise LokiError("flush scheduler is not running")
        request = _FlushRequest()
        self._queue.put(request)
        if not request.done.wait(timeout):
            raise LokiError(f"flush did not complete within {timeout}s")
        if request.error is not None:
            raise request.error

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Flush everything queued so far, then end the scheduler thread.

        Waits without limit by default. Returns False if the thread was
        still running when *timeout* expired; ``abandon()`` then accounts
        for whatever it had not sent.
        """
        if self._thread is None:
            self.start()
        self._queue.close()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Flush scheduler still running after %.1fs", timeout)
            return False
        return True

    def abandon(self) -> int:
        """Give up on unsent entries and return how many there were.

        Counts the batch being sent, the buffer and the queued entries.
        The thread exits once its current send returns. Pending manual
        flushes are released with an error.
        """
        with self._state_lock:
            self._abandoned = True
            lost = len(self._in_flight) + len(self._buffer)
            self._buffer = []
        for item in self._queue.drain():
            if isinstance(item, _FlushRequest):
                item.error = LokiError("flush scheduler was abandoned")
                item.done.set()
            elif item is not _STOP:
                lost += 1
        return lost

    # Internal helpers

    def _run(self):
        next_tick = time.monotonic() + self._batch_wait
        while not self._abandoned:
            item = self._queue.get(timeout=max(0.0, next_tick - time.monotonic()))

            if item is _STOP:
                self._safe_flush("shutdown")
                return

            if isinstance(item, _FlushRequest):
                try:
                    self._flush("manual")
                except Exception as exc:
                    item.error = exc
                finally:
                    item.done.set()
            elif item is not None:
                with self._state_lock:
                    if self._abandoned:
                        return
                    self._buffer.append(item)
                if len(self._buffer) >= self._batch_size:
                    self._safe_flush("size")

            now = time.monotonic()
            if now >= next_tick:
                self._safe_flush("timer")
                next_tick = now + self._batch_wait

    def _flush(self, trigger: str):
        if not self._buffer:
            return
        with self._state_lock:
            batch = self._in_flight = self._buffer
            self._buffer = []
        try:
            self._on_flush(batch, trigger)
        finally:
            with self._state_lock:
                self._in_flight = []

    def _safe_flush(self, trigger: str):
        """Flush without letting a failing callback kill the scheduler."""
        count = len(self._buffer)
        try:
            self._flush(trigger)
        except LokiError as exc:
            logger.error("Dropped batch of %d entries (%s flush): %s", count, trigger, exc)
        except Exception:
            logger.exception("on_flush callback failed for batch of %d entries", count)
