"""Entry point: ship pre-parsed CloudFront records (JSON lines) to Loki."""

import json
import logging
import signal
import sys
import threading

from loki_shipper.client import LokiClient
from loki_shipper.config import load_config
from loki_shipper.errors import LokiError
from loki_shipper.models import LogRecord

logger = logging.getLogger(__name__)


def read_records(stream):
    """Yield LogRecords from a JSON-lines stream, skipping blank and bad lines."""
    for lineno, line in enumerate(stream, 1):
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except ValueError as exc:
            logger.warning("Line %d is not JSON: %s", lineno, exc)
            continue
        if not isinstance(data, dict):
            logger.warning("Line %d is not a JSON object", lineno)
            continue
        yield LogRecord.from_dict(data)


def ship(client: LokiClient, records, shutdown_event: threading.Event) -> int:
    """Push records whose file is not yet in Loki. Returns the number queued."""
    seen: dict[str, bool] = {}
    queued = 0
    batch = []
    for record in records:
        if shutdown_event.is_set():
            break
        if record.filename not in seen:
            seen[record.filename] = client.is_log_in_loki(record.filename)
            if seen[record.filename]:
                logger.info("Skipping %s, already ingested", record.filename)
        if seen[record.filename]:
            continue
        batch.append(record)
        if len(batch) >= client.config.batch_size:
            queued += len(batch) - len(client.push_logs(batch))
            batch = []
    if batch:
        queued += len(batch) - len(client.push_logs(batch))
    return queued


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config, args = load_config(argv)
    client = LokiClient(config)

    if args.latest:
        try:
            print(client.get_latest_log())
        finally:
            client.stop()
        return 0

    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    client.start()
    queued = 0
    try:
        if args.files:
            for path in args.files:
                with open(path, "r", encoding="utf-8") as f:
                    queued += ship(client, read_records(f), shutdown_event)
        else:
            queued += ship(client, read_records(sys.stdin), shutdown_event)
    except LokiError as exc:
        logger.error("Shipping stopped: %s", exc)
        return 1
    finally:
        client.stop()
        logger.info("Queued %d record(s)", queued)

    return 0 if client.last_error is None else 1


if __name__ == "__main__":
    sys.exit(main())
