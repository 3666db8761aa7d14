"""Entry encoder — turns a parsed record plus payload into a labeled entry."""

import re
from datetime import datetime, timezone
from typing import Sequence

from loki_shipper.errors import TimestampParseError
from loki_shipper.labels import build_labels
from loki_shipper.models import Entry, LabeledEntry, LogRecord

# CloudFront writes Date and Time in UTC; joined they form an RFC 3339 stamp.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# strptime accepts unpadded fields, so the shape is checked first.
_DATE_SHAPE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")
_TIME_SHAPE = re.compile(r"[0-9]{2}:[0-9]{2}:[0-9]{2}")


def parse_timestamp(record: LogRecord) -> datetime:
    """Combine ``record.date`` and ``record.time`` into an aware UTC datetime.

    Raises:
        TimestampParseError: if the combined value does not match
            ``YYYY-MM-DDTHH:MM:SSZ``.
    """
    value = f"{record.date}T{record.time}Z"
    if not (
        isinstance(record.date, str)
        and isinstance(record.time, str)
        and _DATE_SHAPE.fullmatch(record.date)
        and _TIME_SHAPE.fullmatch(record.time)
    ):
        raise TimestampParseError(record, value)
    try:
        parsed = datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError as exc:
        raise TimestampParseError(record, value) from exc
    return parsed.replace(tzinfo=timezone.utc)


def make_labeled_entry(
    record: LogRecord,
    payload: str,
    base_labels: str,
    add_fields: Sequence[str],
) -> LabeledEntry:
    """Build the LabeledEntry for one record; the payload is used verbatim.

    Raises:
        TimestampParseError: the record's Date/Time does not parse.
        LabelFormatError: a promoted field cannot be written as a label.
    """
    entry = Entry(timestamp=parse_timestamp(record), line=payload)
    return LabeledEntry(entry=entry, labels=build_labels(base_labels, add_fields, record))
