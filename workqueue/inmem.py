"""An in-memory workqueue, meant for tests rather than production use."""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from .interface import (
    BACKOFF,
    Interface,
    ObservedInProgressKey,
    Options,
    OwnedInProgressKey,
    QueuedKey,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _QueueItem:
    options: Options
    attempts: int
    queued: datetime
    order: int


class InMemoryWorkQueue(Interface):
    """A workqueue that keeps its backlog and in-progress set in memory."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._lock = threading.Lock()
        self._wip: set[str] = set()
        self._backlog: dict[str, _QueueItem] = {}
        self._order = itertools.count()

    def queue(self, key: str, opts: Options = Options()) -> None:
        """Add ``key`` to the backlog, merging with an existing entry."""
        with self._lock:
            item = self._backlog.get(key)
            if item is None:
                self._backlog[key] = _QueueItem(opts, 0, _now(), next(self._order))
            elif item.options.priority < opts.priority:
                item.options = replace(item.options, priority=opts.priority)
            elif item.options.not_before < opts.not_before:
                item.options = replace(item.options, not_before=opts.not_before)

    def enumerate(self) -> tuple[list[ObservedInProgressKey], list[QueuedKey]]:
        """Return the in-progress keys and up to ``limit`` ready queued keys."""
        now = _now()
        with self._lock:
            wip: list[ObservedInProgressKey] = [
                _InProgressKey(self, key) for key in sorted(self._wip)
            ]
            ready = [
                (key, item)
                for key, item in self._backlog.items()
                if now >= item.options.not_before
            ]
        ready.sort(key=lambda entry: (-entry[1].options.priority, entry[1].queued, entry[1].order))
        queued: list[QueuedKey] = [
            _QueuedKey(self, key, item.options, item.attempts)
            for key, item in ready[: max(self.limit, 0)]
        ]
        return wip, queued

    def _start(self, key: str) -> None:
        with self._lock:
            if key in self._wip:
                raise RuntimeError(f"key {key!r} already in progress")
            if key not in self._backlog:
                raise RuntimeError(f"key {key!r} has disappeared from the backlog")
            del self._backlog[key]
            self._wip.add(key)

    def _requeue(self, key: str, opts: Options, attempts: int) -> None:
        with self._lock:
            item = self._backlog.get(key)
            if item is None:
                self._backlog[key] = _QueueItem(opts, attempts, _now(), next(self._order))
            else:
                if item.options.priority < opts.priority:
                    item.options = replace(item.options, priority=opts.priority)
                if opts.not_before > item.options.not_before:
                    item.options = replace(item.options, not_before=opts.not_before)
            self._wip.discard(key)

    def _release(self, key: str) -> None:
        with self._lock:
            self._wip.discard(key)


class _QueuedKey(QueuedKey):
    def __init__(self, wq: InMemoryWorkQueue, key: str, options: Options, attempts: int) -> None:
        self._wq = wq
        self._key = key
        self._options = options
        self._attempts = attempts

    @property
    def name(self) -> str:
        return self._key

    @property
    def priority(self) -> int:
        return self._options.priority

    def start(self) -> OwnedInProgressKey:
        self._wq._start(self._key)
        return _InProgressKey(
            self._wq,
            self._key,
            options=self._options,
            attempts=self._attempts + 1,
        )


class _InProgressKey(ObservedInProgressKey, OwnedInProgressKey):
    def __init__(
        self,
        wq: InMemoryWorkQueue,
        key: str,
        options: Options = Options(),
        attempts: int = 0,
        context: Optional[threading.Event] = None,
    ) -> None:
        self._wq = wq
        self._key = key
        self._options = options
        self._attempts = attempts
        self._context = context if context is not None else threading.Event()

    @property
    def name(self) -> str:
        return self._key

    @property
    def priority(self) -> int:
        return self._options.priority

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def context(self) -> threading.Event:
        return self._context

    def is_orphaned(self) -> bool:
        return False

    def requeue_with_options(self, opts: Options) -> None:
        self._context.set()
        if opts.priority == 0:
            opts = replace(opts, priority=self.priority)
        if opts.delay.total_seconds() > 0:
            opts = replace(opts, not_before=_now() + opts.delay)
        elif opts.priority > 0:
            opts = replace(opts, not_before=_now() + BACKOFF.delay_for(self._attempts))
        self._wq._requeue(self._key, opts, self._attempts)

    def complete(self) -> None:
        self._context.set()
        self._wq._release(self._key)

    def deadletter(self) -> None:
        self._context.set()
        self._wq._release(self._key)