"""Record, entry and stream models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class LogRecord:
    """One pre-parsed CDN access-log record."""

    date: str
    time: str
    filename: str
    fields: dict = field(default_factory=dict)

    def get(self, name: str) -> Optional[str]:
        """Look up a field by its configured name, None when absent."""
        if name == "Date":
            return self.date
        if name == "Time":
            return self.time
        if name == "Filename":
            return self.filename
        value = self.fields.get(name)
        return None if value is None else str(value)

    def to_dict(self) -> dict:
        """Default JSON payload for the record."""
        data = {"Date": self.date, "Time": self.time, "Filename": self.filename}
        data.update(self.fields)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LogRecord":
        extra = {k: v for k, v in data.items() if k not in ("Date", "Time", "Filename")}
        return cls(
            date=data.get("Date", ""),
            time=data.get("Time", ""),
            filename=data.get("Filename", ""),
            fields=extra,
        )


@dataclass(frozen=True)
class Entry:
    timestamp: datetime
    line: str

    @property
    def timestamp_ns(self) -> int:
        delta = self.timestamp - _EPOCH
        return (delta.days * 86400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1000


@dataclass(frozen=True)
class LabeledEntry:
    entry: Entry
    labels: str


@dataclass(frozen=True)
class Stream:
    """Entries sharing one label set, in arrival order."""

    labels: str
    entries: tuple = ()
