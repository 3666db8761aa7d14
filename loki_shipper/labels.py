"""Label-set construction for Loki streams.

Label sets travel through the client as their canonical string form,
``{k1="v1",k2="v2"}``. Values are inserted verbatim, without escaping, which
keeps the strings identical to the ones already stored in the backend. Names
and values that cannot be written that way raise LabelFormatError instead of
being rewritten.
"""

import re
from typing import Sequence

from loki_shipper.errors import LabelFormatError
from loki_shipper.models import LogRecord

_LABEL_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_LABEL_PAIR = re.compile(r'\s*([A-Za-z_][A-Za-z0-9_]*)\s*=\s*"([^"]*)"\s*')


def build_labels(base: str, add_fields: Sequence[str], record: LogRecord) -> str:
    """Append ``name="value"`` for each configured field present on *record*.

    Fields keep their configuration order and follow the base labels.
    Unknown or absent fields are skipped.

    Raises:
        LabelFormatError: a field name is not a valid label name, a value
            contains a double quote, or a name repeats a base label.
    """
    names = set(parse_labels(base))
    pairs = []
    for name in add_fields:
        value = record.get(name)
        if value is None:
            continue
        if not _LABEL_NAME.fullmatch(name):
            raise LabelFormatError(f"field {name!r} is not a valid label name", record)
        value = str(value)
        if '"' in value:
            raise LabelFormatError(f"value of {name!r} contains a double quote: {value!r}", record)
        if name in names:
            raise LabelFormatError(f"label {name!r} is already set", record)
        names.add(name)
        pairs.append(f'{name}="{value}"')

    if not pairs:
        return base

    inner = base.strip()[1:-1].strip()
    if inner:
        pairs.insert(0, inner)
    return "{" + ",".join(pairs) + "}"


def parse_labels(labels: str) -> dict[str, str]:
    """Turn a ``{k="v",...}`` string into an ordered mapping.

    The whole string must be a label set; anything else raises
    LabelFormatError.
    """
    text = labels.strip()
    if not (text.startswith("{") and text.endswith("}")):
        raise LabelFormatError(f"not a label set: {labels!r}")

    inner = text[1:-1]
    result: dict[str, str] = {}
    if not inner.strip():
        return result

    pos = 0
    while True:
        match = _LABEL_PAIR.match(inner, pos)
        if match is None:
            raise LabelFormatError(f"malformed label set: {labels!r}")
        name, value = match.groups()
        if name in result:
            raise LabelFormatError(f"duplicate label {name!r} in {labels!r}")
        result[name] = value
        pos = match.end()
        if pos == len(inner):
            return result
        if inner[pos] != ",":
            raise LabelFormatError(f"malformed label set: {labels!r}")
        pos += 1


def is_label_set(labels: str) -> bool:
    """True when *labels* parses as a label-set string."""
    try:
        parse_labels(labels)
    except LabelFormatError:
        return False
    return True
