"""One round of dispatching queued keys to a callback."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from datetime import timedelta
from functools import partial
from typing import Any, Callable, Optional

from .errors import get_non_retriable_details, get_requeue_delay, requeue_after
from .interface import Interface, Options, OwnedInProgressKey, ProcessRequest, QueuedKey

log = logging.getLogger(__name__)

# Processes one key; raising marks the attempt as failed.
Callback = Callable[[str, Options], None]


def service_callback(client: Any) -> Callback:
    """Return a callback that sends each key to ``client.process``."""

    def callback(key: str, opts: Options) -> None:
        resp = client.process(ProcessRequest(key=key, priority=opts.priority))
        if resp.requeue_after_seconds > 0:
            raise requeue_after(timedelta(seconds=resp.requeue_after_seconds))

    return callback


class _TaskGroup:
    """Runs tasks on threads and resolves a future with the first failure."""

    def __init__(self) -> None:
        self._future: Future[None] = Future()
        self._lock = threading.Lock()
        self._pending = 0
        self._closed = False
        self._error: Optional[BaseException] = None

    def go(self, task: Callable[[], None]) -> None:
        with self._lock:
            self._pending += 1
        threading.Thread(target=self._run, args=(task,), daemon=True).start()

    def _run(self, task: Callable[[], None]) -> None:
        try:
            task()
        except BaseException as err:  # noqa: BLE001 - reported through the future
            with self._lock:
                if self._error is None:
                    self._error = err
        finally:
            with self._lock:
                self._pending -= 1
                finished = self._closed and self._pending == 0
            if finished:
                self._finish()

    def close(self) -> Future[None]:
        with self._lock:
            self._closed = True
            finished = self._pending == 0
        if finished:
            self._finish()
        return self._future

    def _finish(self) -> None:
        if self._error is not None:
            self._future.set_exception(self._error)
        else:
            self._future.set_result(None)


def _step(label: str, action: Callable[[], None]) -> None:
    try:
        action()
    except Exception as err:
        raise RuntimeError(f"{label} = {err}") from err


def _process(key: QueuedKey, callback: Callback, max_retry: int) -> None:
    try:
        oip: OwnedInProgressKey = key.start()
    except Exception as err:
        # Someone else got there first.
        log.debug("Failed to start key %r: %s", key.name, err)
        return

    try:
        callback(oip.name, Options(priority=oip.priority))
    except Exception as err:
        delay = get_requeue_delay(err)
        if delay is not None:
            log.info("Key %r requested requeue after %s", oip.name, delay)
            _step(
                "requeue(after delay request)",
                lambda: oip.requeue_with_options(Options(priority=oip.priority, delay=delay)),
            )
            return

        log.warning("Failed callback for key %r: %s", oip.name, err)
        attempts = oip.attempts
        details = get_non_retriable_details(err)
        if max_retry > 0 and attempts >= max_retry:
            log.info(
                "Key %r has reached max retry limit (%d/%d), failing permanently",
                oip.name,
                attempts,
                max_retry,
            )
            _step("fail(after reaching max retries)", oip.deadletter)
        elif details is not None:
            log.info(
                "Key %r is marked as non-retriable - reason: %s, err: %s",
                oip.name,
                details.message,
                err,
            )
            _step("complete(after non-retriable error)", oip.complete)
        else:
            _step("requeue(after failed callback)", oip.requeue)
        return

    _step("complete()", oip.complete)


def handle_async(
    wq: Interface, concurrency: int, callback: Callback, max_retry: int = 0
) -> Future[None]:
    """Start one dispatch round and return a future for its outcome."""
    try:
        wip, upcoming = wq.enumerate()
    except Exception as err:
        failed: Future[None] = Future()
        failure = RuntimeError(f"enumerate() = {err}")
        failure.__cause__ = err
        failed.set_exception(failure)
        return failed

    group = _TaskGroup()

    active: set[str] = set()
    for key in wip:
        if not key.is_orphaned():
            active.add(key.name)
            continue
        group.go(key.requeue)

    n_wip = len(active)
    if n_wip >= concurrency:
        return group.close()

    open_slots = concurrency - n_wip
    launched = 0
    for candidate in upcoming:
        if launched >= open_slots:
            break
        if candidate.name in active:
            continue
        # Count it now so racing starts cannot overlaunch.
        launched += 1
        group.go(partial(_process, candidate, callback, max_retry))

    log.info("Launched %d new keys (wip: %d)", launched, n_wip)
    return group.close()


def handle(wq: Interface, concurrency: int, callback: Callback) -> None:
    """Run one dispatch round and wait for it to finish."""
    handle_async(wq, concurrency, callback, 0).result()