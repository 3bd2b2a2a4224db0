"""
RequestTracker - cancellation tokens for in-flight requests, keyed by id.

The id -> token map is the only state shared between concurrent
operations. Every insert/remove runs under one lock; tokens are signalled
after they have been removed, so an id is never signalled twice and a
signalled token is never left behind in the map.

cancel() and cancel_all() may be called from threads other than the
event loop running the requests; see CancellationToken.cancel.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from obrew_client.cancellation import CancellationToken

logger = logging.getLogger(__name__)


def new_request_id() -> str:
    return uuid.uuid4().hex


class RequestTracker:
    """
    Issues and revokes cancellation tokens for logical requests.

    None of the operations raise: an unknown id is treated as already
    resolved.
    """

    def __init__(self) -> None:
        self._requests: dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)

    def __contains__(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._requests

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._requests)

    def get(self, request_id: str) -> Optional[CancellationToken]:
        with self._lock:
            return self._requests.get(request_id)

    def begin(self, request_id: Optional[str] = None) -> tuple[str, CancellationToken]:
        """
        Register a new request and return (id, token).

        Reusing an id that is still live supersedes the old request: its
        token is signalled and replaced.
        """
        request_id = request_id or new_request_id()
        token = CancellationToken()
        with self._lock:
            previous = self._requests.get(request_id)
            self._requests[request_id] = token
        if previous is not None:
            logger.debug(f"Request {request_id} superseded by a new request")
            previous.cancel(f"Request {request_id} was superseded")
        return request_id, token

    def cancel(self, request_id: str, reason: Optional[str] = None) -> bool:
        """Signal and remove one request. Returns False if it was not tracked."""
        with self._lock:
            token = self._requests.pop(request_id, None)
        if token is None:
            return False
        logger.info(f"Cancelling request {request_id}")
        token.cancel(reason)
        return True

    def cancel_all(self, reason: Optional[str] = None) -> int:
        """Signal and remove every tracked request. Returns how many."""
        with self._lock:
            tokens = list(self._requests.values())
            self._requests.clear()
        if tokens:
            logger.info(f"Cancelling {len(tokens)} request(s)")
        for token in tokens:
            token.cancel(reason)
        return len(tokens)

    def end(self, request_id: str, token: Optional[CancellationToken] = None) -> None:
        """
        Remove a finished request without signalling it.

        When `token` is given the entry is only removed if it still maps to
        that token, so a finishing request cannot evict the request that
        superseded it.
        """
        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                return
            if token is not None and current is not token:
                return
            del self._requests[request_id]
        current.dispose()

    @contextmanager
    def track(self, request_id: Optional[str] = None) -> Iterator[tuple[str, CancellationToken]]:
        """begin() on entry, end() on every exit path."""
        request_id, token = self.begin(request_id)
        try:
            yield request_id, token
        finally:
            self.end(request_id, token)
