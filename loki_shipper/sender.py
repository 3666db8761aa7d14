"""HTTP sender — encodes label-grouped streams and POSTs them to Loki."""

import logging
import random
from typing import Optional

import requests

from loki_shipper.errors import PushRejectedError, TransportError
from loki_shipper.models import LabeledEntry
from loki_shipper.serializer import group_streams, serialize_push

logger = logging.getLogger(__name__)


class HTTPSender:
    """Performs one push request per call and classifies the response.

    Retrying is left to the caller; see ``backoff_delay``.
    """

    def __init__(
        self,
        push_url: str,
        timeout: float = 10.0,
        compress: bool = False,
        session: Optional[requests.Session] = None,
    ):
        self._push_url = push_url
        self._timeout = timeout
        self._compress = compress
        self._session = session or requests.Session()

    def send(self, labeled_entries: list[LabeledEntry]) -> int:
        """Push *labeled_entries* as one request. Returns the body size in bytes.

        Raises:
            PushRejectedError: the backend answered with a non-2xx status.
            TransportError: the backend could not be reached.
        """
        streams = group_streams(labeled_entries)
        body = serialize_push(streams, compress=self._compress)

        headers = {"Content-Type": "application/json"}
        if self._compress:
            headers["Content-Encoding"] = "gzip"

        try:
            resp = self._session.post(
                self._push_url, data=body, headers=headers, timeout=self._timeout
            )
        except requests.RequestException as exc:
            raise TransportError(f"push to {self._push_url} failed: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise PushRejectedError(resp.status_code, resp.text)

        logger.debug(
            "Pushed %d entries in %d stream(s), %d bytes",
            len(labeled_entries),
            len(streams),
            len(body),
        )
        return len(body)

    @staticmethod
    def backoff_delay(attempt: int, base: float = 0.5, cap: float = 10.0) -> float:
        """Exponential backoff with jitter.

        ``base`` doubles each attempt, is capped at ``cap``, then multiplied
        by a random jitter factor between 0.8 and 1.2.
        """
        capped = min(base * (2 ** attempt), cap)
        return capped * random.uniform(0.8, 1.2)

    def close(self):
        """Close the underlying HTTP session."""
        self._session.close()
