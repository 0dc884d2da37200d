"""A simple key workqueue abstraction: options, key roles and the queue interface."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

# The earliest representable time; a ``not_before`` equal to it means "no constraint".
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


@dataclass
class BackoffSettings:
    """How long a requeued key waits before it is processed again."""

    # Unit of backoff, multiplied by the number of attempts.
    backoff_period: timedelta = field(default_factory=lambda: timedelta(seconds=30))
    # Cap on the wait before a key is retried.
    maximum_backoff_period: timedelta = field(default_factory=lambda: timedelta(minutes=10))

    def delay_for(self, attempts: int) -> timedelta:
        """Return the backoff for a key that has been attempted ``attempts`` times."""
        return min(self.backoff_period * attempts, self.maximum_backoff_period)


# Shared settings; tests and entry points may adjust them.
BACKOFF = BackoffSettings()


@dataclass(frozen=True)
class Options:
    """Options passed when queueing a key."""

    # Higher values are processed first.
    priority: int = 0
    # Earliest time the key should be processed.
    not_before: datetime = ZERO_TIME
    # Wait before processing, used when requeueing with a custom delay.
    delay: timedelta = timedelta(0)


@dataclass
class ProcessRequest:
    """A request to process one key."""

    key: str = ""
    priority: int = 0
    delay_seconds: int = 0

    def log_attrs(self) -> dict[str, Any]:
        """Return structured attributes describing this request for logging."""
        return {
            "key": self.key,
            "priority": self.priority,
            "delay": timedelta(seconds=self.delay_seconds),
        }


@dataclass
class ProcessResponse:
    """The answer to a process request."""

    requeue_after_seconds: int = 0


class Key(ABC):
    """Common behaviour of every key."""

    @property
    @abstractmethod
    def name(self) -> str:
        """The name of the key."""

    @property
    @abstractmethod
    def priority(self) -> int:
        """The priority of the key."""


class QueuedKey(Key):
    """A key waiting in the queue."""

    @abstractmethod
    def start(self) -> "OwnedInProgressKey":
        """Begin processing the key and take ownership of it."""


class InProgressKey(Key):
    """A key that is being processed."""

    def requeue(self) -> None:
        """Return the key to the queue with default options."""
        self.requeue_with_options(Options())

    @abstractmethod
    def requeue_with_options(self, opts: Options) -> None:
        """Return the key to the queue with the given options."""


class ObservedInProgressKey(InProgressKey):
    """An in-progress key owned by someone else."""

    @abstractmethod
    def is_orphaned(self) -> bool:
        """Whether the key's owner has abandoned it."""


class OwnedInProgressKey(InProgressKey):
    """An in-progress key owned by this process until it completes or is requeued."""

    @abstractmethod
    def complete(self) -> None:
        """Mark the key as done and remove it from the in-progress set."""

    @abstractmethod
    def deadletter(self) -> None:
        """Remove the key for good after it exhausted its retries."""

    @property
    @abstractmethod
    def attempts(self) -> int:
        """How many times the key has been attempted."""

    @property
    @abstractmethod
    def context(self) -> threading.Event:
        """An event that is set once ownership of the key ends."""


class Interface(ABC):
    """What every workqueue implementation provides."""

    @abstractmethod
    def queue(self, key: str, opts: Options) -> None:
        """Add a key to the queue."""

    @abstractmethod
    def enumerate(self) -> tuple[list[ObservedInProgressKey], list[QueuedKey]]:
        """Return all in-progress keys and the next queued keys in processing order."""