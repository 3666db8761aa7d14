"""Exception hierarchy for the Loki shipping client."""


class LokiError(Exception):
    """Base class for every error raised by the client."""


class ConfigError(LokiError, ValueError):
    """Raised when a LokiConfig fails validation."""


class RecordError(LokiError):
    """A single record could not be encoded; it is skipped, not sent."""

    def __init__(self, message: str, record=None):
        super().__init__(message)
        self.record = record


class TimestampParseError(RecordError):
    """Raised when a record's Date + Time cannot be parsed."""

    def __init__(self, record, value: str):
        super().__init__(f"cannot parse timestamp {value!r} for {record.filename!r}", record)
        self.value = value


class LabelFormatError(RecordError, ValueError):
    """Raised when a label name or value cannot be written as a label set."""


class PushRejectedError(LokiError):
    """Raised when the push endpoint answers with a non-2xx status."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"push rejected: status {status_code}: {body.strip()}")
        self.status_code = status_code
        self.body = body

    @property
    def retryable(self) -> bool:
        # 4xx means the batch itself is bad; resending it will not help.
        return self.status_code == 429 or self.status_code >= 500


class TransportError(LokiError):
    """Raised when the backend cannot be reached (refused, timeout, ...)."""


class QueryError(LokiError):
    """Raised on a non-2xx or undecodable response from the query endpoint."""


class QueryTransportError(QueryError, TransportError):
    """Network failure while talking to the query endpoint."""


class PayloadFormatError(LokiError):
    """Raised when a query result's embedded JSON lacks the expected field."""


class ClientClosedError(LokiError):
    """Raised when entries are pushed after the client was stopped."""


class QueueFullError(LokiError):
    """Raised when the batch queue stays full past the enqueue timeout."""


class ShutdownTimeoutError(LokiError):
    """Kept as last_error when stop() gives up on entries not yet sent."""
