"""Loki client — wires the encoder, batch queue, flush scheduler, sender and resume queries."""

import json
import logging
import time
from typing import Iterable, Optional

import requests

from loki_shipper.batch_buffer import BatchQueue, FlushScheduler
from loki_shipper.config import LokiConfig
from loki_shipper.encoder import make_labeled_entry
from loki_shipper.errors import (
    LokiError,
    PushRejectedError,
    RecordError,
    ShutdownTimeoutError,
    TransportError,
)
from loki_shipper.labels import build_labels
from loki_shipper.metrics import MetricsCollector
from loki_shipper.models import LabeledEntry, LogRecord
from loki_shipper.query import ResumeQuery
from loki_shipper.sender import HTTPSender

logger = logging.getLogger(__name__)


class LokiClient:
    """Process-wide handle for shipping parsed CDN log records to Loki.

    Create it once, call ``start()`` to launch the flush thread, feed it
    with ``push_logs``/``push_entry``, and call ``stop()`` to drain the
    queue before exit.
    """

    def __init__(self, config: Optional[LokiConfig] = None, session: Optional[requests.Session] = None):
        self._config = config or LokiConfig()
        self._session = session or requests.Session()
        self._metrics = MetricsCollector()
        self._sender = HTTPSender(
            self._config.push_url,
            timeout=self._config.timeout,
            compress=self._config.compress,
            session=self._session,
        )
        self._query = ResumeQuery(
            self._config.query_url,
            self._config.labels,
            timeout=self._config.timeout,
            lookback_hours=self._config.query_lookback,
            session=self._session,
        )
        self._queue = BatchQueue(self._config.queue_size, put_timeout=self._config.enqueue_timeout)
        self._scheduler = FlushScheduler(
            self._queue,
            batch_size=self._config.batch_size,
            batch_wait=self._config.batch_wait,
            on_flush=self._handle_flush,
        )
        self._last_error: Optional[LokiError] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the background flush thread."""
        self._scheduler.start()
        logger.info(
            "Loki client started: push=%s, batch_size=%d, batch_wait=%.1fs",
            self._config.push_url,
            self._config.batch_size,
            self._config.batch_wait,
        )

    def stop(self, timeout: Optional[float] = None):
        """Flush everything queued, stop the flush thread and close the session.

        Waits for the drain without limit unless *timeout* is given. If the
        flush thread is still sending when it expires, the entries not yet
        confirmed are counted as dropped, ``last_error`` is set to a
        ShutdownTimeoutError and the session is left open for that thread.
        """
        if self._scheduler.stop(timeout=timeout):
            self._session.close()
        else:
            lost = self._scheduler.abandon()
            if lost:
                self._metrics.record_dropped(lost)
                self._last_error = ShutdownTimeoutError(
                    f"{lost} entries not sent within the {timeout}s shutdown timeout"
                )
                logger.error("Gave up on %d unsent entries at shutdown", lost)
        logger.info("Client metrics: %s", self._metrics.snapshot())

    def flush(self, timeout: Optional[float] = None):
        """Send buffered entries now. Raises the send error if the batch was dropped."""
        self._scheduler.flush(timeout=timeout)

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    def new_labels(self, record: LogRecord) -> str:
        """Label set for *record*: base labels plus the configured fields."""
        return build_labels(self._config.labels, self._config.add_fields, record)

    def push_entry(self, record: LogRecord, payload: str):
        """Queue one record with its serialized payload.

        Raises:
            TimestampParseError: the record's Date/Time does not parse.
            LabelFormatError: a promoted field cannot be written as a label.
            ClientClosedError: the client was stopped.
            QueueFullError: the queue stayed full past ``enqueue_timeout``.
        """
        labeled = make_labeled_entry(record, payload, self._config.labels, self._config.add_fields)
        self._queue.put(labeled)

    def push_logs(self, records: Iterable[LogRecord]) -> list[RecordError]:
        """Queue each record with its JSON form as the payload.

        Records whose timestamp or labels are invalid are skipped and returned
        so the caller can report them; every other record is queued.
        """
        rejected = []
        for record in records:
            payload = json.dumps(record.to_dict())
            try:
                self.push_entry(record, payload)
            except RecordError as exc:
                logger.warning("Skipping record from %s: %s", record.filename, exc)
                self._metrics.record_rejected_record()
                rejected.append(exc)
        return rejected

    # ------------------------------------------------------------------
    # Resume queries
    # ------------------------------------------------------------------

    def is_log_in_loki(self, identifier: str) -> bool:
        return self._query.is_log_in_loki(identifier)

    def get_latest_log(self, selector: Optional[str] = None) -> str:
        return self._query.get_latest_log(selector or self._config.labels)

    # ------------------------------------------------------------------
    # Flush callback (called by FlushScheduler)
    # ------------------------------------------------------------------

    def _handle_flush(self, batch: list[LabeledEntry], trigger: str):
        """Send one batch, retrying transient failures with backoff.

        A batch that still fails after ``max_retries`` is dropped and the
        last error is raised to the scheduler.
        """
        attempts = self._config.max_retries + 1
        for attempt in range(attempts):
            start = time.monotonic()
            try:
                bytes_sent = self._sender.send(batch)
            except LokiError as exc:
                self._metrics.record_failed_attempt()
                if self._scheduler.abandoned:
                    # stop() already counted this batch as dropped
                    raise
                self._last_error = exc
                retryable = isinstance(exc, TransportError) or (
                    isinstance(exc, PushRejectedError) and exc.retryable
                )
                if not retryable or attempt == attempts - 1:
                    self._metrics.record_dropped(len(batch))
                    raise

                delay = HTTPSender.backoff_delay(
                    attempt, self._config.retry_backoff, self._config.retry_backoff_max
                )
                logger.warning(
                    "Push failed (attempt %d/%d), retrying in %.2fs: %s",
                    attempt + 1,
                    attempts,
                    delay,
                    exc,
                )
                self._metrics.record_retry()
                time.sleep(delay)
                continue

            if self._scheduler.abandoned:
                logger.warning("Batch of %d entries arrived after the shutdown timeout", len(batch))
                return

            elapsed_ms = (time.monotonic() - start) * 1000
            streams = len({labeled.labels for labeled in batch})
            self._metrics.record_batch(
                entries=len(batch),
                streams=streams,
                bytes_sent=bytes_sent,
                send_time_ms=elapsed_ms,
                trigger=trigger,
            )
            logger.info(
                "Sent %d entries in %d stream(s) (%s flush, %d bytes)",
                len(batch),
                streams,
                trigger,
                bytes_sent,
            )
            return

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> LokiConfig:
        return self._config

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def last_error(self) -> Optional[LokiError]:
        """Most recent send error, kept after the batch was dropped."""
        return self._last_error

    @property
    def pending_count(self) -> int:
        """Entries waiting in the queue (not yet picked up by the scheduler)."""
        return self._queue.qsize()
