"""Queued and in-progress keys stored as objects under name prefixes."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone

from .. import interface as wq
from ..interface import BACKOFF, Options
from .metrics import WAIT_LATENCY, WORK_LATENCY, service_labels
from .store import (
    ATTEMPTS_KEY,
    DEAD_LETTER_PREFIX,
    EXPIRATION_KEY,
    FAILED_TIME_KEY,
    IN_PROGRESS_PREFIX,
    LAST_ATTEMPTED_KEY,
    NO_NOT_BEFORE,
    NO_PRIORITY,
    NOT_BEFORE_KEY,
    PRIORITY_KEY,
    QUEUED_PREFIX,
    SETTINGS,
    ObjectAttrs,
    ObjectNotFoundError,
    ObjectStore,
    PreconditionFailedError,
    _format_time,
    _parse_time,
    update_metadata,
)

log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class QueuedKey(wq.QueuedKey):
    """A key waiting under the queued prefix."""

    def __init__(self, client: ObjectStore, attrs: ObjectAttrs, priority: int) -> None:
        self._client = client
        self._attrs = attrs
        self._priority = priority

    @property
    def attrs(self) -> ObjectAttrs:
        return self._attrs

    @property
    def name(self) -> str:
        return self._attrs.name.removeprefix(QUEUED_PREFIX)

    @property
    def priority(self) -> int:
        return self._priority

    def start(self) -> "InProgressKey":
        """Move the key to the in-progress prefix and start heartbeating its lease."""
        source = self._attrs.name
        key = source.removeprefix(QUEUED_PREFIX)
        target = IN_PROGRESS_PREFIX + key

        wait_start = self._attrs.created
        last_attempted = self._attrs.metadata.get(LAST_ATTEMPTED_KEY, "")
        if last_attempted:
            try:
                wait_start = datetime.fromtimestamp(int(last_attempted), timezone.utc)
            except (ValueError, OverflowError, OSError):
                pass
        WAIT_LATENCY.observe(service_labels(), (_now() - wait_start).total_seconds())

        metadata = dict(self._attrs.metadata)
        metadata[EXPIRATION_KEY] = _format_time(_now() + 3 * SETTINGS.refresh_interval)
        previous = metadata.get(ATTEMPTS_KEY)
        if previous is None:
            metadata[ATTEMPTS_KEY] = "1"
        else:
            try:
                metadata[ATTEMPTS_KEY] = str(int(previous) + 1)
            except ValueError as err:
                log.error("Malformed attempts on %s: %s", source, err)
                metadata[ATTEMPTS_KEY] = "1"
        # Kept present and date-formatted, but never binding on a running key.
        metadata[NOT_BEFORE_KEY] = NO_NOT_BEFORE

        attrs = self._client.copy(source, target, metadata, if_not_exists=True)
        self._client.delete(source)

        owned = InProgressKey(self._client, attrs, self._priority)
        owned._start_heartbeat()
        return owned


class InProgressKey(wq.ObservedInProgressKey, wq.OwnedInProgressKey):
    """A key under the in-progress prefix, observed or owned."""

    def __init__(self, client: ObjectStore, attrs: ObjectAttrs, priority: int) -> None:
        self._client = client
        self._attrs = attrs
        self._priority = priority
        # Guards attrs, which the heartbeat replaces.
        self._lock = threading.RLock()
        self._context = threading.Event()

    @property
    def attrs(self) -> ObjectAttrs:
        with self._lock:
            return self._attrs

    @property
    def name(self) -> str:
        with self._lock:
            return self._attrs.name.removeprefix(IN_PROGRESS_PREFIX)

    @property
    def priority(self) -> int:
        return self._priority

    @property
    def attempts(self) -> int:
        with self._lock:
            try:
                return int(self._attrs.metadata.get(ATTEMPTS_KEY, ""))
            except ValueError as err:
                log.warning("Malformed attempts on %s: %s", self.name, err)
                return 0

    @property
    def context(self) -> threading.Event:
        return self._context

    def requeue(self) -> None:
        """Return the key to the queue with default options."""
        self.requeue_with_options(Options())

    def requeue_with_options(self, opts: Options) -> None:
        """Move the key back to the queued prefix, applying backoff or a custom delay."""
        self._context.set()
        with self._lock:
            source = self._attrs.name
            key = source.removeprefix(IN_PROGRESS_PREFIX)
            now = _now()

            metadata = dict(self._attrs.metadata)
            metadata.pop(EXPIRATION_KEY, None)
            metadata[LAST_ATTEMPTED_KEY] = str(int(now.timestamp()))

            if opts.delay > timedelta(0):
                metadata[NOT_BEFORE_KEY] = _format_time(now + opts.delay)
            elif metadata.get(PRIORITY_KEY, NO_PRIORITY) != NO_PRIORITY:
                try:
                    attempts = int(metadata.get(ATTEMPTS_KEY, ""))
                except ValueError as err:
                    log.warning("Malformed attempts on %s: %s", key, err)
                    attempts = 1
                metadata[NOT_BEFORE_KEY] = _format_time(now + BACKOFF.delay_for(attempts))

            if opts.priority != 0:
                metadata[PRIORITY_KEY] = str(opts.priority)

            try:
                self._client.copy(source, QUEUED_PREFIX + key, metadata, if_not_exists=True)
            except PreconditionFailedError:
                try:
                    update_metadata(self._client, key, metadata)
                except ObjectNotFoundError:
                    log.info(
                        "Key %r was deleted before we could fetch the duplicate, recursing.", key
                    )
                    self.requeue_with_options(opts)
                    return
            self._client.delete(source)

    def is_orphaned(self) -> bool:
        """Whether the lease is missing, malformed or expired."""
        with self._lock:
            expiration = self._attrs.metadata.get(EXPIRATION_KEY)
        if expiration is None:
            return True
        try:
            expiry = _parse_time(expiration)
        except ValueError:
            return True
        return _now() > expiry

    def dead_letter_key(self) -> str:
        """The object name this key takes in the dead-letter prefix."""
        return DEAD_LETTER_PREFIX + self._attrs.name.removeprefix(IN_PROGRESS_PREFIX)

    def complete(self) -> None:
        """Remove the key, along with any dead-letter entry for it."""
        self._context.set()
        with self._lock:
            WORK_LATENCY.observe(
                service_labels(), (_now() - self._attrs.created).total_seconds()
            )
            dead_letter = self.dead_letter_key()
            try:
                self._client.delete(dead_letter)
            except ObjectNotFoundError:
                pass
            except Exception as err:  # best effort
                log.warning("Failed to delete dead-letter object %r: %s", dead_letter, err)
            self._client.delete(self._attrs.name)

    def deadletter(self) -> None:
        """Move the key to the dead-letter prefix for good."""
        self._context.set()
        with self._lock:
            source = self._attrs.name
            dead_letter = self.dead_letter_key()
            log.info(
                "Moving key %r to dead letter queue as %r",
                source.removeprefix(IN_PROGRESS_PREFIX),
                dead_letter,
            )
            metadata = dict(self._attrs.metadata)
            metadata.pop(EXPIRATION_KEY, None)
            metadata[FAILED_TIME_KEY] = _format_time(_now())
            try:
                self._client.copy(source, dead_letter, metadata)
            except Exception as err:
                raise RuntimeError(f"failed to create dead letter entry: {err}") from err
            self._client.delete(source)

    def _start_heartbeat(self) -> None:
        thread = threading.Thread(
            target=self._heartbeat,
            args=(SETTINGS.refresh_interval,),
            name=f"heartbeat-{self.name}",
            daemon=True,
        )
        thread.start()

    def _heartbeat(self, interval: timedelta) -> None:
        try:
            while not self._context.wait(interval.total_seconds()):
                with self._lock:
                    if self._context.is_set():
                        return
                    try:
                        # Anyone else touching the object means we lost ownership.
                        self._attrs = self._client.update(
                            self._attrs.name,
                            {EXPIRATION_KEY: _format_time(_now() + 3 * interval)},
                            metageneration_match=self._attrs.metageneration,
                        )
                    except Exception as err:
                        log.error("Failed to update expiration: %s", err)
                        return
        finally:
            self._context.set()