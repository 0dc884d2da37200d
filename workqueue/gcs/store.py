"""A bucket-like object store and the metadata conventions the queue keeps in it."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional

from ..interface import ZERO_TIME

log = logging.getLogger(__name__)

QUEUED_PREFIX = "queued/"
IN_PROGRESS_PREFIX = "in-progress/"
DEAD_LETTER_PREFIX = "dead-letter/"
EXPIRATION_KEY = "lease-expiration"
ATTEMPTS_KEY = "attempts"
PRIORITY_KEY = "priority"
NOT_BEFORE_KEY = "not-before"
FAILED_TIME_KEY = "failed-time"
LAST_ATTEMPTED_KEY = "last-attempted"


@dataclass
class Settings:
    """Tunables shared by queue ingress and dispatchers."""

    # Period on which owned keys have their lease refreshed.
    refresh_interval: timedelta = field(default_factory=lambda: timedelta(minutes=5))
    # Attempts above which a per-task attempts metric is reported.
    track_work_attempt_min_threshold: int = 20


SETTINGS = Settings()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _format_priority(priority: int) -> str:
    # Zero-padded so priorities order lexicographically.
    return f"{priority:08d}"


def _format_time(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    return (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}Z"
    )


def _parse_time(text: str) -> datetime:
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        raise ValueError(f"timestamp {text!r} has no offset")
    return moment.astimezone(timezone.utc)


NO_PRIORITY = _format_priority(0)
NO_NOT_BEFORE = _format_time(ZERO_TIME)


class PreconditionFailedError(Exception):
    """A conditional write found the object in an unexpected state."""


class ObjectNotFoundError(Exception):
    """The named object does not exist."""


@dataclass
class ObjectAttrs:
    """The attributes of a stored object."""

    name: str
    metadata: dict[str, str] = field(default_factory=dict)
    created: datetime = ZERO_TIME
    metageneration: int = 1


class ObjectStore:
    """A thread-safe, in-memory bucket of empty objects carrying metadata."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _now
        self._lock = threading.Lock()
        self._objects: dict[str, ObjectAttrs] = {}

    @staticmethod
    def _snapshot(attrs: ObjectAttrs) -> ObjectAttrs:
        return replace(attrs, metadata=dict(attrs.metadata))

    def _get(self, name: str) -> ObjectAttrs:
        try:
            return self._objects[name]
        except KeyError:
            raise ObjectNotFoundError(f"object {name!r} does not exist") from None

    def write(
        self,
        name: str,
        metadata: Optional[Mapping[str, str]] = None,
        if_not_exists: bool = False,
    ) -> ObjectAttrs:
        """Create or overwrite ``name``; with ``if_not_exists`` never overwrite."""
        with self._lock:
            if if_not_exists and name in self._objects:
                raise PreconditionFailedError(f"object {name!r} already exists")
            attrs = ObjectAttrs(name, dict(metadata or {}), self._clock())
            self._objects[name] = attrs
            return self._snapshot(attrs)

    def attrs(self, name: str) -> ObjectAttrs:
        """Return the attributes of ``name``."""
        with self._lock:
            return self._snapshot(self._get(name))

    def update(
        self,
        name: str,
        metadata: Mapping[str, str],
        metageneration_match: Optional[int] = None,
    ) -> ObjectAttrs:
        """Merge ``metadata`` into the object's metadata and bump its metageneration."""
        with self._lock:
            current = self._get(name)
            if metageneration_match is not None and current.metageneration != metageneration_match:
                raise PreconditionFailedError(
                    f"object {name!r} is at metageneration {current.metageneration}, "
                    f"not {metageneration_match}"
                )
            current.metadata.update(metadata)
            current.metageneration += 1
            return self._snapshot(current)

    def copy(
        self,
        src: str,
        dst: str,
        metadata: Optional[Mapping[str, str]] = None,
        if_not_exists: bool = False,
    ) -> ObjectAttrs:
        """Copy ``src`` to a new object ``dst``, replacing its metadata if given."""
        with self._lock:
            source = self._get(src)
            if if_not_exists and dst in self._objects:
                raise PreconditionFailedError(f"object {dst!r} already exists")
            new_metadata = dict(source.metadata if metadata is None else metadata)
            attrs = ObjectAttrs(dst, new_metadata, self._clock())
            self._objects[dst] = attrs
            return self._snapshot(attrs)

    def delete(self, name: str) -> None:
        """Remove ``name``."""
        with self._lock:
            self._get(name)
            del self._objects[name]

    def list(self) -> list[ObjectAttrs]:
        """Return every object's attributes in name order."""
        with self._lock:
            return [self._snapshot(self._objects[name]) for name in sorted(self._objects)]


def update_metadata(client: ObjectStore, key: str, metadata: Mapping[str, str]) -> None:
    """Merge priority and not-before from ``metadata`` into the queued object for ``key``."""
    wanted_priority = metadata.get(PRIORITY_KEY, "")
    wanted_not_before = metadata.get(NOT_BEFORE_KEY, "")
    if wanted_priority == NO_PRIORITY and wanted_not_before == NO_NOT_BEFORE:
        # Nothing to merge, so don't bother fetching the queued object.
        return

    name = QUEUED_PREFIX + key
    current = dict(client.attrs(name).metadata)
    changed = False

    priority = current.get(PRIORITY_KEY)
    if priority is None or priority < wanted_priority:
        log.info("Updating %s priority from %r to %r", key, priority, wanted_priority)
        current[PRIORITY_KEY] = wanted_priority
        changed = True

    not_before = current.get(NOT_BEFORE_KEY)
    if not_before is not None and not_before < wanted_not_before:
        log.info("Updating %s not-before from %r to %r", key, not_before, wanted_not_before)
        current[NOT_BEFORE_KEY] = wanted_not_before
        changed = True

    if changed:
        client.update(name, current)