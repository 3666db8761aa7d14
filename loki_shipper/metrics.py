"""Metrics collector — thread-safe counters for Loki batch shipping."""

import threading
import time


class MetricsCollector:
    """Collects counters and latency samples about pushes to Loki."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._batches_sent: int = 0
        self._entries_sent: int = 0
        self._bytes_sent: int = 0
        self._streams_sent: int = 0
        self._send_times: list[float] = []
        self._flush_triggers: dict = {"size": 0, "timer": 0, "manual": 0, "shutdown": 0}
        self._retries: int = 0
        self._failed_attempts: int = 0
        self._dropped_batches: int = 0
        self._dropped_entries: int = 0
        self._rejected_records: int = 0
        self._start_time = time.monotonic()

    def record_batch(
        self,
        entries: int,
        streams: int,
        bytes_sent: int,
        send_time_ms: float,
        trigger: str = "size",
    ) -> None:
        """Record a batch the backend accepted.

        Args:
            entries: Number of log entries in the batch.
            streams: Number of label-grouped streams in the push.
            bytes_sent: Request body size in bytes.
            send_time_ms: Time taken by the successful attempt, in milliseconds.
            trigger: What caused the flush.
        """
        with self._lock:
            self._batches_sent += 1
            self._entries_sent += entries
            self._streams_sent += streams
            self._bytes_sent += bytes_sent
            self._send_times.append(send_time_ms)
            self._flush_triggers[trigger] = self._flush_triggers.get(trigger, 0) + 1

    def record_retry(self) -> None:
        with self._lock:
            self._retries += 1

    def record_failed_attempt(self) -> None:
        with self._lock:
            self._failed_attempts += 1

    def record_dropped(self, entries: int) -> None:
        with self._lock:
            self._dropped_batches += 1
            self._dropped_entries += entries

    def record_rejected_record(self) -> None:
        with self._lock:
            self._rejected_records += 1

    def snapshot(self) -> dict:
        """Return a point-in-time copy of all counters."""
        with self._lock:
            send_times = list(self._send_times)
            avg_send = sum(send_times) / len(send_times) if send_times else 0.0

            return {
                "batches_sent": self._batches_sent,
                "entries_sent": self._entries_sent,
                "streams_sent": self._streams_sent,
                "bytes_sent": self._bytes_sent,
                "avg_send_time_ms": avg_send,
                "p95_send_time_ms": self._percentile(send_times, 95),
                "flush_triggers": dict(self._flush_triggers),
                "retries": self._retries,
                "failed_attempts": self._failed_attempts,
                "dropped_batches": self._dropped_batches,
                "dropped_entries": self._dropped_entries,
                "rejected_records": self._rejected_records,
                "uptime_seconds": time.monotonic() - self._start_time,
            }

    @staticmethod
    def _percentile(data: list, pct: float) -> float:
        """Interpolated percentile of *data*, 0.0 when empty."""
        if not data:
            return 0.0

        sorted_data = sorted(data)
        n = len(sorted_data)

        if n == 1:
            return float(sorted_data[0])

        idx = (pct / 100) * (n - 1)
        lower = int(idx)
        upper = lower + 1
        fraction = idx - lower

        if upper >= n:
            return float(sorted_data[-1])

        return float(sorted_data[lower] + fraction * (sorted_data[upper] - sorted_data[lower]))
