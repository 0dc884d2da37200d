"""A WSGI application that runs a dispatch round per request."""

from __future__ import annotations

import threading
from typing import Any, Callable, Iterable

from .dispatcher import Callback, handle_async
from .interface import Interface


class DispatchHandler:
    """Dispatches work on each request, coalescing requests that pile up."""

    def __init__(
        self, wq: Interface, concurrency: int, callback: Callback, max_retry: int = 0
    ) -> None:
        self.wq = wq
        self.concurrency = concurrency
        self.callback = callback
        self.max_retry = max_retry
        self._work = threading.Lock()
        self._waiting = threading.Lock()

    def dispatch(self) -> bool:
        """Run a dispatch round; return False if it was folded into a waiting one."""
        if not self._work.acquire(blocking=False):
            # Someone already waits to dispatch next; let them cover this request.
            if not self._waiting.acquire(blocking=False):
                return False
            self._work.acquire()
            self._waiting.release()

        try:
            future = handle_async(self.wq, self.concurrency, self.callback, self.max_retry)
        finally:
            self._work.release()

        future.result()
        return True

    def __call__(
        self, environ: dict[str, Any], start_response: Callable[..., Any]
    ) -> Iterable[bytes]:
        try:
            self.dispatch()
        except Exception as err:
            body = f"{err}\n".encode()
            start_response(
                "500 Internal Server Error",
                [
                    ("Content-Type", "text/plain; charset=utf-8"),
                    ("X-Content-Type-Options", "nosniff"),
                    ("Content-Length", str(len(body))),
                ],
            )
            return [body]
        start_response("200 OK", [("Content-Length", "0")])
        return [b""]