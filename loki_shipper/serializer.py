"""Push serializer — groups entries into streams and encodes Loki's JSON push body."""

import gzip
import json
from typing import Iterable

from loki_shipper.labels import parse_labels
from loki_shipper.models import LabeledEntry, Stream


def group_streams(labeled_entries: Iterable[LabeledEntry]) -> list[Stream]:
    """Group entries by identical label string.

    Groups appear in the order their first entry arrived, and entries inside
    a group keep their arrival order.
    """
    groups: dict[str, list] = {}
    for labeled in labeled_entries:
        groups.setdefault(labeled.labels, []).append(labeled.entry)
    return [Stream(labels=labels, entries=tuple(entries)) for labels, entries in groups.items()]


def serialize_push(streams: list[Stream], compress: bool = False) -> bytes:
    """Encode *streams* as a Loki push request body.

    When *compress* is True the JSON is gzip-compressed; the caller must then
    send ``Content-Encoding: gzip``.

    Raises:
        LabelFormatError: a stream's label string is not a label set.
    """
    body = {
        "streams": [
            {
                "stream": parse_labels(stream.labels),
                "values": [[str(e.timestamp_ns), e.line] for e in stream.entries],
            }
            for stream in streams
        ]
    }
    payload = json.dumps(body).encode("utf-8")

    if compress:
        return gzip.compress(payload)

    return payload
