"""A workqueue kept as objects in a bucket-like store."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from ..interface import Interface, ObservedInProgressKey, Options
from ..interface import QueuedKey as QueuedKeyBase
from .keys import InProgressKey, QueuedKey
from .metrics import (
    ADDED_KEYS,
    DEAD_LETTERED_KEYS,
    DEDUPED_KEYS,
    IN_PROGRESS_KEYS,
    MAX_ATTEMPTS,
    NOT_BEFORE_KEYS,
    QUEUED_KEYS,
    TASK_MAX_ATTEMPTS,
    service_labels,
)
from .store import (
    ATTEMPTS_KEY,
    DEAD_LETTER_PREFIX,
    IN_PROGRESS_PREFIX,
    NOT_BEFORE_KEY,
    PRIORITY_KEY,
    QUEUED_PREFIX,
    SETTINGS,
    ObjectAttrs,
    ObjectNotFoundError,
    ObjectStore,
    PreconditionFailedError,
    _format_priority,
    _format_time,
    _parse_time,
    update_metadata,
)

log = logging.getLogger(__name__)

_INTEGER = re.compile(r"[+-]?[0-9]+")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_int(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"invalid integer {text!r}")
    return int(text)


class GCSWorkQueue(Interface):
    """A workqueue whose keys live under the queued, in-progress and dead-letter prefixes."""

    def __init__(self, client: ObjectStore, limit: int) -> None:
        self.client = client
        self.limit = limit

    def queue(self, key: str, opts: Options = Options()) -> None:
        """Add ``key`` to the queue, merging priority and not-before with a queued duplicate."""
        metadata = {
            PRIORITY_KEY: _format_priority(opts.priority),
            NOT_BEFORE_KEY: _format_time(opts.not_before),
        }
        labels = service_labels()
        ADDED_KEYS.inc(labels)
        try:
            self.client.write(QUEUED_PREFIX + key, metadata, if_not_exists=True)
        except PreconditionFailedError:
            log.debug("Key %r already exists", key)
            DEDUPED_KEYS.inc(labels)
            try:
                update_metadata(self.client, key, metadata)
            except ObjectNotFoundError:
                log.info("Key %r was deleted before we could fetch the duplicate, recursing.", key)
                self.queue(key, opts)

    def enumerate(self) -> tuple[list[ObservedInProgressKey], list[QueuedKeyBase]]:
        """Return every in-progress key and up to ``limit`` ready queued keys."""
        labels = service_labels()
        wip: list[ObservedInProgressKey] = []
        ready: list[tuple[int, ObjectAttrs]] = []
        queued = not_before_count = dead_lettered = 0
        max_attempts = 0

        for attrs in self.client.list():
            priority = self._priority_of(attrs)

            if not attrs.name.startswith(DEAD_LETTER_PREFIX):
                attempts = self._attempts_of(attrs)
                if attempts is not None:
                    max_attempts = max(max_attempts, attempts)
                    if attempts > SETTINGS.track_work_attempt_min_threshold:
                        TASK_MAX_ATTEMPTS.set({**labels, "task_id": attrs.name}, attempts)
            # Keep the per-task metric populated.
            TASK_MAX_ATTEMPTS.set({**labels, "task_id": "placeholder"}, 0)

            if attrs.name.startswith(IN_PROGRESS_PREFIX):
                wip.append(InProgressKey(self.client, attrs, priority))
            elif attrs.name.startswith(QUEUED_PREFIX):
                not_before = self._not_before_of(attrs)
                if not_before is not None and _now() < not_before:
                    log.info("Skipping key %r until %s", attrs.name, not_before)
                    not_before_count += 1
                    continue
                ready.append((priority, attrs))
                queued += 1
            elif attrs.name.startswith(DEAD_LETTER_PREFIX):
                dead_lettered += 1

        ready.sort(key=lambda entry: (-entry[0], entry[1].created, entry[1].name))
        keys: list[QueuedKeyBase] = [
            QueuedKey(self.client, attrs, priority)
            for priority, attrs in ready[: max(self.limit, 0)]
        ]

        IN_PROGRESS_KEYS.set(labels, len(wip))
        QUEUED_KEYS.set(labels, queued)
        NOT_BEFORE_KEYS.set(labels, not_before_count)
        DEAD_LETTERED_KEYS.set(labels, dead_lettered)
        MAX_ATTEMPTS.set(labels, max_attempts)
        return wip, keys

    @staticmethod
    def _priority_of(attrs: ObjectAttrs) -> int:
        raw = attrs.metadata.get(PRIORITY_KEY)
        if raw is None:
            return 0
        try:
            return _parse_int(raw)
        except ValueError as err:
            log.warning("Failed to parse priority: %s", err)
            return 0

    @staticmethod
    def _attempts_of(attrs: ObjectAttrs) -> Optional[int]:
        raw = attrs.metadata.get(ATTEMPTS_KEY, "")
        if not raw:
            return None
        try:
            return _parse_int(raw)
        except ValueError as err:
            log.warning("Failed to parse attempts: %s", err)
            return None

    @staticmethod
    def _not_before_of(attrs: ObjectAttrs) -> Optional[datetime]:
        raw = attrs.metadata.get(NOT_BEFORE_KEY, "")
        if not raw:
            return None
        try:
            return _parse_time(raw)
        except ValueError as err:
            log.warning("Failed to parse not-before: %s", err)
            return None