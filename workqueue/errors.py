"""Errors that callbacks return to steer how the dispatcher handles a key."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Iterator, Optional


@dataclass(frozen=True)
class NoRetryDetails:
    """Why a failed key must not be retried."""

    message: str = ""


class NonRetriableError(Exception):
    """A failure after which the dispatcher completes the key instead of requeueing it."""

    def __init__(self, error: BaseException, details: NoRetryDetails) -> None:
        super().__init__(str(error))
        self.error = error
        self.details = details
        self.__cause__ = error


class RequeueError(Exception):
    """Asks the dispatcher to requeue the key after a given delay."""

    def __init__(self, delay: timedelta) -> None:
        super().__init__("requeue requested")
        self.delay = delay


def _chain(err: Optional[BaseException]) -> Iterator[BaseException]:
    """Yield the error and every error it wraps, outermost first."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        if err.__cause__ is not None:
            err = err.__cause__
        elif not err.__suppress_context__:
            err = err.__context__
        else:
            err = None


def non_retriable_error(
    err: Optional[BaseException], reason: str
) -> Optional[NonRetriableError]:
    """Mark ``err`` as non-retriable for ``reason``; ``None`` stays ``None``."""
    if err is None:
        return None
    return NonRetriableError(err, NoRetryDetails(message=reason))


def get_non_retriable_details(err: Optional[BaseException]) -> Optional[NoRetryDetails]:
    """Return the no-retry details carried by ``err`` or anything it wraps."""
    for e in _chain(err):
        if isinstance(e, NonRetriableError):
            return e.details
    return None


def requeue_after(delay: timedelta) -> RequeueError:
    """Return an error asking for the key to be requeued after ``delay``."""
    return RequeueError(delay)


def get_requeue_delay(err: Optional[BaseException]) -> Optional[timedelta]:
    """Return the requested requeue delay, or ``None`` if ``err`` is no requeue request."""
    for e in _chain(err):
        if isinstance(e, RequeueError):
            return e.delay
    return None