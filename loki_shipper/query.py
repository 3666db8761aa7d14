"""Resume queries — ask Loki what has already been ingested.

Both queries are read-only range queries. Selectors are built by plain
string concatenation, matching the label strings used when pushing.
"""

import json
import logging
import time
from typing import Optional

import requests

from loki_shipper.errors import PayloadFormatError, QueryError, QueryTransportError

logger = logging.getLogger(__name__)

FILENAME_FIELD = "Filename"


class ResumeQuery:
    """Queries used to skip log files that were shipped by an earlier run."""

    def __init__(
        self,
        query_url: str,
        labels: str,
        timeout: float = 10.0,
        lookback_hours: float = 720.0,
        session: Optional[requests.Session] = None,
    ):
        self._query_url = query_url
        self._labels = labels
        self._timeout = timeout
        self._lookback_ns = int(lookback_hours * 3600 * 1_000_000_000)
        self._session = session or requests.Session()

    def is_log_in_loki(self, identifier: str) -> bool:
        """True when any chunk under our labels mentions *identifier*."""
        query = f'{self._labels} |= "{identifier}"'
        body = self._get(query, limit=1)

        try:
            matched = body.get("data", {}).get("stats", {}).get("ingester", {}).get(
                "totalChunksMatched", 0
            )
            matched = int(matched or 0)
        except (AttributeError, TypeError, ValueError) as exc:
            raise QueryError(f"unexpected stats in response for {query!r}") from exc

        logger.debug("%s: %d chunk(s) matched", identifier, matched)
        return matched > 0

    def get_latest_log(self, selector: str) -> str:
        """Filename recorded in the newest line matching *selector*.

        Returns an empty string when nothing matches.
        """
        body = self._get(selector, limit=1, direction="backward")
        latest = self._latest_value(body)
        if latest is None:
            return ""
        return self._extract_filename(latest)

    def _get(self, query: str, **params) -> dict:
        end = time.time_ns()
        params.update(query=query, start=end - self._lookback_ns, end=end)
        try:
            resp = self._session.get(self._query_url, params=params, timeout=self._timeout)
        except requests.RequestException as exc:
            raise QueryTransportError(f"query to {self._query_url} failed: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise QueryError(f"query {query!r} failed: status {resp.status_code}: {resp.text.strip()}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise QueryError(f"query {query!r} returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise QueryError(f"query {query!r} returned {type(body).__name__}, expected object")
        return body

    @staticmethod
    def _latest_value(body: dict) -> Optional[str]:
        """Line with the greatest timestamp across every returned stream."""
        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise QueryError("response 'data' is not an object")

        latest_ts = None
        latest_line = None
        try:
            for stream in data.get("result") or []:
                for value in stream.get("values") or []:
                    ts, line = int(value[0]), value[1]
                    if latest_ts is None or ts >= latest_ts:
                        latest_ts, latest_line = ts, line
        except (AttributeError, IndexError, TypeError, ValueError) as exc:
            raise QueryError("malformed query result") from exc
        return latest_line

    @staticmethod
    def _extract_filename(line: str) -> str:
        start = line.find("{")
        end = line.rfind("}")
        if start < 0 or end < start:
            raise PayloadFormatError(f"no JSON object in log line: {line!r}")

        try:
            payload = json.loads(line[start:end + 1])
        except ValueError as exc:
            raise PayloadFormatError(f"invalid JSON in log line: {line!r}") from exc

        if not isinstance(payload, dict) or FILENAME_FIELD not in payload:
            raise PayloadFormatError(f"log line has no {FILENAME_FIELD} field: {line!r}")
        return str(payload[FILENAME_FIELD])

    def close(self):
        self._session.close()
