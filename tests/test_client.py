"""Tests for the LokiClient orchestrator against a stub Loki backend."""

import json
import time

import pytest

from loki_shipper.client import LokiClient
from loki_shipper.errors import (
    ClientClosedError,
    LabelFormatError,
    PushRejectedError,
    ShutdownTimeoutError,
    TimestampParseError,
    TransportError,
)

from conftest import closed_port, make_config, make_record


@pytest.fixture
def client_factory(stub_loki):
    """Build started clients aimed at the stub; stop them after the test."""
    clients = []

    def factory(**overrides):
        client = LokiClient(make_config(stub_loki.address, **overrides))
        client.start()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.stop()


def _wait_for_batches(client, count, timeout=3.0):
    """Metrics are recorded after the response arrives; poll for them."""
    deadline = time.monotonic() + timeout
    while client.metrics.snapshot()["batches_sent"] < count and time.monotonic() < deadline:
        time.sleep(0.02)


class TestConstruction:
    def test_new(self):
        client = LokiClient(make_config("bogus", batch_size=1, batch_wait=1.0,
                                        labels='{k1="v1",k2="v2"}',
                                        add_fields=["Date", "Filename"]))
        assert client.config.add_fields == ("Date", "Filename")
        assert client.config.push_url == "http://bogus/loki/api/v1/push"
        client.stop()

    def test_new_labels(self):
        client = LokiClient(make_config("bogus", labels='{k1="v1",k2="v2"}',
                                        add_fields=["Date", "Time", "Filename"]))
        labels = client.new_labels(make_record())
        assert labels == (
            '{k1="v1",k2="v2",Date="2021-01-08",Time="11:50:00",Filename="testfilename"}'
        )
        client.stop()


class TestPushEntry:
    def test_entry_delivered_after_flush(self, stub_loki, client_factory):
        client = client_factory()
        client.push_entry(make_record(), '{"key":"value"}')
        client.flush(timeout=5.0)

        assert stub_loki.pushed_values() == [["1610106600000000000", '{"key":"value"}']]
        stream = stub_loki.pushes()[0]["streams"][0]["stream"]
        assert stream == {"source": "cloudfront", "job": "cloudfront2loki"}

    def test_bad_timestamp_raises_synchronously(self, stub_loki, client_factory):
        client = client_factory()
        with pytest.raises(TimestampParseError):
            client.push_entry(make_record(date="not-a-date"), "{}")
        assert client.pending_count == 0

    def test_push_after_stop(self):
        client = LokiClient(make_config("bogus"))
        client.stop()
        with pytest.raises(ClientClosedError):
            client.push_entry(make_record(), "{}")


class TestPushLogs:
    def test_push_logs_serializes_records(self, stub_loki, client_factory):
        client = client_factory(add_fields=["Filename"])
        records = [
            make_record("bogus-file1", EdgeResultType="Hit"),
            make_record("bogus-file1", EdgeResultType="Hit"),
            make_record("bogus-file2", EdgeResultType="Miss"),
        ]
        assert client.push_logs(records) == []
        client.flush(timeout=5.0)

        push = stub_loki.pushes()[0]
        by_file = {s["stream"]["Filename"]: s["values"] for s in push["streams"]}
        assert len(by_file["bogus-file1"]) == 2
        assert len(by_file["bogus-file2"]) == 1
        assert json.loads(by_file["bogus-file2"][0][1]) == {
            "Date": "2021-01-08",
            "Time": "11:50:00",
            "Filename": "bogus-file2",
            "EdgeResultType": "Miss",
        }

    def test_bad_records_are_reported_and_skipped(self, stub_loki, client_factory):
        client = client_factory()
        records = [make_record("good"), make_record("bad", time_="xx"), make_record("good2")]

        rejected = client.push_logs(records)
        client.flush(timeout=5.0)

        assert [err.record.filename for err in rejected] == ["bad"]
        assert len(stub_loki.pushed_values()) == 2
        assert client.metrics.snapshot()["rejected_records"] == 1

    def test_unlabelable_records_are_reported_and_skipped(self, stub_loki, client_factory):
        client = client_factory(add_fields=["Filename"])
        records = [make_record("good"), make_record('say "hi".gz'), make_record("good2")]

        rejected = client.push_logs(records)
        client.flush(timeout=5.0)

        assert len(rejected) == 1
        assert isinstance(rejected[0], LabelFormatError)
        assert rejected[0].record.filename == 'say "hi".gz'
        streams = [s["stream"]["Filename"] for p in stub_loki.pushes() for s in p["streams"]]
        assert streams == ["good", "good2"]

    def test_hyphenated_field_raises_synchronously(self, stub_loki, client_factory):
        client = client_factory(add_fields=["cs-uri-stem"])
        with pytest.raises(LabelFormatError):
            client.push_entry(make_record(**{"cs-uri-stem": "/index.html"}), "{}")
        assert client.pending_count == 0


class TestBatching:
    def test_size_and_timer_flushes(self, stub_loki, client_factory):
        client = client_factory(batch_size=2, batch_wait=0.3)
        for i in range(3):
            client.push_entry(make_record(), json.dumps({"n": i}))

        assert stub_loki.wait_for_pushes(2, timeout=5.0)
        lines = [json.loads(line)["n"] for _, line in stub_loki.pushed_values()]
        assert lines == [0, 1, 2]
        sizes = [sum(len(s["values"]) for s in p["streams"]) for p in stub_loki.pushes()]
        assert sizes == [2, 1]

        _wait_for_batches(client, 2)
        triggers = client.metrics.snapshot()["flush_triggers"]
        assert triggers["size"] == 1
        assert triggers["timer"] == 1

    def test_stop_drains_remaining(self, stub_loki):
        client = LokiClient(make_config(stub_loki.address, batch_size=100))
        client.start()
        for i in range(5):
            client.push_entry(make_record(), str(i))

        client.stop()

        assert [line for _, line in stub_loki.pushed_values()] == ["0", "1", "2", "3", "4"]
        assert client.metrics.snapshot()["flush_triggers"]["shutdown"] == 1

    def test_order_preserved_per_stream(self, stub_loki, client_factory):
        client = client_factory(batch_size=3, add_fields=["Filename"])
        for i in range(9):
            client.push_entry(make_record(f"file-{i % 2}"), str(i))
        client.flush(timeout=5.0)

        per_file: dict = {}
        for push in stub_loki.pushes():
            for stream in push["streams"]:
                per_file.setdefault(stream["stream"]["Filename"], []).extend(
                    line for _, line in stream["values"]
                )
        assert per_file == {"file-0": ["0", "2", "4", "6", "8"], "file-1": ["1", "3", "5", "7"]}


class TestShutdown:
    def test_stop_waits_for_slow_backend(self, stub_loki):
        stub_loki.delay = 0.5
        client = LokiClient(make_config(stub_loki.address, batch_size=100))
        client.start()
        client.push_entry(make_record(), "slow")

        client.stop()

        assert [line for _, line in stub_loki.pushed_values()] == ["slow"]
        assert client.last_error is None
        assert client.metrics.snapshot()["dropped_entries"] == 0

    def test_stop_timeout_counts_unsent_entries(self, stub_loki):
        stub_loki.delay = 1.0
        client = LokiClient(make_config(stub_loki.address, batch_size=1, timeout=5.0))
        client.start()
        client.push_entry(make_record(), "in-flight")
        assert stub_loki.wait_for_pushes(1)
        client.push_entry(make_record(), "queued-1")
        client.push_entry(make_record(), "queued-2")

        start = time.monotonic()
        client.stop(timeout=0.2)

        assert time.monotonic() - start < 1.0
        assert isinstance(client.last_error, ShutdownTimeoutError)
        snap = client.metrics.snapshot()
        assert snap["dropped_entries"] == 3
        assert snap["batches_sent"] == 0

        # The in-flight request still completes on the open session.
        time.sleep(1.2)
        assert client.metrics.snapshot()["dropped_entries"] == 3
        assert isinstance(client.last_error, ShutdownTimeoutError)


class TestRetry:
    def test_retries_transient_failure(self, stub_loki, client_factory):
        stub_loki.queue_responses((500, "busy"), (503, "busy"))
        client = client_factory(max_retries=3)
        client.push_entry(make_record(), "retry-me")
        client.flush(timeout=5.0)

        assert len(stub_loki.pushes()) == 3
        snap = client.metrics.snapshot()
        assert snap["retries"] == 2
        assert snap["failed_attempts"] == 2
        assert snap["batches_sent"] == 1
        assert snap["dropped_batches"] == 0

    def test_drops_after_retries_exhausted(self, stub_loki, client_factory):
        stub_loki.respond(500, "down")
        client = client_factory(max_retries=2)
        client.push_entry(make_record(), "lost")

        with pytest.raises(PushRejectedError):
            client.flush(timeout=5.0)

        assert len(stub_loki.pushes()) == 3
        assert isinstance(client.last_error, PushRejectedError)
        snap = client.metrics.snapshot()
        assert snap["dropped_batches"] == 1
        assert snap["dropped_entries"] == 1

    def test_client_error_not_retried(self, stub_loki, client_factory):
        stub_loki.respond(400, "entry too far behind")
        client = client_factory(max_retries=3)
        client.push_entry(make_record(), "bad")

        with pytest.raises(PushRejectedError):
            client.flush(timeout=5.0)
        assert len(stub_loki.pushes()) == 1

    def test_background_failure_is_not_fatal(self, stub_loki, client_factory):
        stub_loki.queue_responses((500, "down"))
        client = client_factory(batch_size=1)
        client.push_entry(make_record(), "first")
        assert stub_loki.wait_for_pushes(1)
        client.push_entry(make_record(), "second")
        assert stub_loki.wait_for_pushes(2)

        _wait_for_batches(client, 1)
        snap = client.metrics.snapshot()
        assert snap["dropped_batches"] == 1
        assert snap["batches_sent"] == 1

    def test_unreachable_backend(self):
        client = LokiClient(make_config(f"127.0.0.1:{closed_port()}", timeout=1.0))
        client.start()
        client.push_entry(make_record(), "nowhere")
        try:
            with pytest.raises(TransportError):
                client.flush(timeout=5.0)
        finally:
            client.stop()


class TestResume:
    def test_is_log_in_loki(self, stub_loki):
        stub_loki.respond(200, '{"data":{"stats": {"ingester":{"totalChunksMatched":1}}}}\n')
        client = LokiClient(make_config(stub_loki.address))
        try:
            assert client.is_log_in_loki("Testlog") is True
        finally:
            client.stop()

    def test_get_latest_log_defaults_to_base_labels(self, stub_loki):
        stub_loki.respond(200, "{}")
        client = LokiClient(make_config(stub_loki.address))
        try:
            assert client.get_latest_log() == ""
        finally:
            client.stop()
        assert stub_loki.requests[0]["params"]["query"] == client.config.labels
