"""Configuration — frozen dataclass loaded from YAML, env vars and CLI args."""

import argparse
import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

import yaml

from loki_shipper.errors import ConfigError
from loki_shipper.labels import is_label_set

logger = logging.getLogger(__name__)

DEFAULT_LABELS = '{source="cloudfront",job="cloudfront2loki"}'


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def _parse_fields(value: str) -> tuple:
    return tuple(name.strip() for name in value.split(",") if name.strip())


@dataclass(frozen=True)
class LokiConfig:
    """Client settings, immutable once built.

    Attributes:
        address: Backend ``host:port`` or a full ``http(s)://`` base URL.
        batch_size: Entry count that triggers an immediate flush.
        batch_wait: Seconds between timer-driven flushes.
        labels: Base label set, rendered ``{k="v",...}``.
        add_fields: Record fields promoted to labels, in this order.
        queue_size: Capacity of the queue between producers and the flusher.
        enqueue_timeout: Seconds a producer waits for queue space; None blocks.
        timeout: Per-request HTTP timeout in seconds.
        max_retries: Extra send attempts for a failed batch.
        retry_backoff: Base delay of the exponential retry backoff.
        retry_backoff_max: Cap on a single retry delay.
        compress: Gzip push bodies.
        push_path: Ingestion endpoint path.
        query_path: Range query endpoint path.
        query_lookback: Hours of history searched by resume queries.
    """

    address: str = "localhost:3100"
    batch_size: int = 500
    batch_wait: float = 5.0
    labels: str = DEFAULT_LABELS
    add_fields: tuple = ()
    queue_size: int = 10000
    enqueue_timeout: Optional[float] = None
    timeout: float = 10.0
    max_retries: int = 3
    retry_backoff: float = 0.5
    retry_backoff_max: float = 10.0
    compress: bool = False
    push_path: str = "/loki/api/v1/push"
    query_path: str = "/loki/api/v1/query_range"
    query_lookback: float = 720.0

    def __post_init__(self):
        # Lists from YAML/kwargs are normalized so the config stays hashable.
        object.__setattr__(self, "add_fields", tuple(self.add_fields))
        self.validate()

    def validate(self):
        """Raise ConfigError if any setting is out of range."""
        if not self.address:
            raise ConfigError("address must not be empty")
        if self.batch_size < 1:
            raise ConfigError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.batch_wait <= 0:
            raise ConfigError(f"batch_wait must be > 0, got {self.batch_wait}")
        if self.queue_size < 1:
            raise ConfigError(f"queue_size must be >= 1, got {self.queue_size}")
        if self.enqueue_timeout is not None and self.enqueue_timeout < 0:
            raise ConfigError("enqueue_timeout must be >= 0")
        if self.timeout <= 0:
            raise ConfigError(f"timeout must be > 0, got {self.timeout}")
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_backoff < 0 or self.retry_backoff_max < 0:
            raise ConfigError("retry backoff values must be >= 0")
        if not is_label_set(self.labels):
            raise ConfigError(f'labels must look like {{k="v"}}, got {self.labels!r}')

    @property
    def base_url(self) -> str:
        if self.address.startswith(("http://", "https://")):
            return self.address.rstrip("/")
        return f"http://{self.address}"

    @property
    def push_url(self) -> str:
        return self.base_url + self.push_path

    @property
    def query_url(self) -> str:
        return self.base_url + self.query_path


def load_yaml_config(path: Optional[str]) -> dict:
    """Load settings from a YAML file. Returns an empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    known = {f.name for f in fields(LokiConfig)}
    unknown = set(data) - known
    if unknown:
        logger.warning("Ignoring unknown config keys in %s: %s", path, sorted(unknown))
    logger.info("Loaded YAML config from %s", path)
    return {k: v for k, v in data.items() if k in known}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ship parsed CloudFront logs to Loki")
    parser.add_argument("--config", type=str, default=None, help="YAML config file")
    parser.add_argument("--address", type=str, default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--batch-wait", type=float, default=None)
    parser.add_argument("--labels", type=str, default=None)
    parser.add_argument("--add-fields", type=str, default=None,
                        help="comma-separated record fields to promote to labels")
    parser.add_argument("--queue-size", type=int, default=None)
    parser.add_argument("--timeout", type=float, default=None)
    parser.add_argument("--max-retries", type=int, default=None)
    parser.add_argument("--compress", action="store_true", default=False)
    parser.add_argument("--latest", action="store_true", default=False,
                        help="print the latest ingested filename and exit")
    parser.add_argument("files", nargs="*", help="JSON-lines record files (default: stdin)")
    return parser


def load_config(argv=None) -> tuple:
    """Build a LokiConfig: defaults <- YAML <- env vars <- CLI args.

    Pass argv for testability; when None, argparse reads sys.argv.
    Returns ``(config, args)`` so the entry point can read its own flags.
    """
    args = build_parser().parse_args(argv)
    settings = load_yaml_config(args.config or os.environ.get("LOKI_CONFIG"))

    env = os.environ
    if "LOKI_ADDRESS" in env:
        settings["address"] = env["LOKI_ADDRESS"]
    if "BATCH_SIZE" in env:
        settings["batch_size"] = int(env["BATCH_SIZE"])
    if "BATCH_WAIT" in env:
        settings["batch_wait"] = float(env["BATCH_WAIT"])
    if "LOKI_LABELS" in env:
        settings["labels"] = env["LOKI_LABELS"]
    if "ADD_FIELDS" in env:
        settings["add_fields"] = _parse_fields(env["ADD_FIELDS"])
    if "QUEUE_SIZE" in env:
        settings["queue_size"] = int(env["QUEUE_SIZE"])
    if "HTTP_TIMEOUT" in env:
        settings["timeout"] = float(env["HTTP_TIMEOUT"])
    if "MAX_RETRIES" in env:
        settings["max_retries"] = int(env["MAX_RETRIES"])
    if "COMPRESS" in env:
        settings["compress"] = _parse_bool(env["COMPRESS"])

    # CLI flags override env vars
    overrides = {
        "address": args.address,
        "batch_size": args.batch_size,
        "batch_wait": args.batch_wait,
        "labels": args.labels,
        "add_fields": _parse_fields(args.add_fields) if args.add_fields is not None else None,
        "queue_size": args.queue_size,
        "timeout": args.timeout,
        "max_retries": args.max_retries,
        "compress": True if args.compress else None,
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return LokiConfig(**settings), args
    except TypeError as exc:
        raise ConfigError(str(exc)) from exc
