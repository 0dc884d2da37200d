import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from workqueue.interface import (
    BACKOFF,
    ZERO_TIME,
    BackoffSettings,
    InProgressKey,
    Interface,
    Key,
    ObservedInProgressKey,
    Options,
    OwnedInProgressKey,
    ProcessRequest,
    ProcessResponse,
    QueuedKey,
)

_CAPPED = BackoffSettings(
    backoff_period=timedelta(seconds=1), maximum_backoff_period=timedelta(seconds=2)
)


class _Recorder:
    name = property(lambda self: "foo")
    priority = property(lambda self: 0)

    def __init__(self):
        self.seen = []
        self.event = threading.Event()

    def requeue_with_options(self, opts):
        self.seen.append(opts)
        self.event.set()


class _RecordingKey(_Recorder, InProgressKey):
    pass


class _OwnedKey(_Recorder, OwnedInProgressKey):
    attempts = property(lambda self: 1)
    context = property(lambda self: self.event)

    def complete(self):
        self.event.set()

    def deadletter(self):
        self.event.set()


def test_default_backoff_settings():
    settings = BackoffSettings()
    assert settings.backoff_period == timedelta(seconds=30)
    assert settings.maximum_backoff_period == timedelta(minutes=10)


@pytest.mark.parametrize(
    "settings, attempts, expected",
    [
        (BACKOFF, 1, timedelta(seconds=30)),
        (BACKOFF, 1000, timedelta(minutes=10)),
        (BackoffSettings(), 1, timedelta(seconds=30)),
        (BackoffSettings(), 2, timedelta(seconds=60)),
        (_CAPPED, 3, timedelta(seconds=2)),
        (_CAPPED, 1000, timedelta(seconds=2)),
    ],
)
def test_delay_for(settings, attempts, expected):
    assert settings.delay_for(attempts) == expected


def test_delay_for_is_monotonic():
    settings = BackoffSettings()
    delays = [settings.delay_for(n) for n in range(50)]
    assert delays == sorted(delays)
    assert max(delays) == settings.maximum_backoff_period


def test_options_defaults():
    opts = Options()
    assert (opts.priority, opts.not_before, opts.delay) == (0, ZERO_TIME, timedelta(0))


def test_options_are_immutable_values():
    opts = Options(priority=1000)
    raised = replace(opts, priority=1001)
    assert (opts.priority, raised.priority) == (1000, 1001)
    with pytest.raises(AttributeError):
        opts.priority = 5


def test_process_request_log_attrs():
    req = ProcessRequest(key="success", priority=7, delay_seconds=300)
    assert req.log_attrs() == {
        "key": "success",
        "priority": 7,
        "delay": timedelta(seconds=300),
    }


@pytest.mark.parametrize("seconds", [0, 300])
def test_process_response_requeue_after(seconds):
    response = ProcessResponse(requeue_after_seconds=seconds) if seconds else ProcessResponse()
    assert response.requeue_after_seconds == seconds


@pytest.mark.parametrize(
    "cls", [Key, QueuedKey, InProgressKey, ObservedInProgressKey, OwnedInProgressKey, Interface]
)
def test_abstract_roles_cannot_be_instantiated(cls):
    with pytest.raises(TypeError):
        cls()


@pytest.mark.parametrize("cls", [_RecordingKey, _OwnedKey])
def test_requeue_goes_through_default_options(cls):
    key = cls()
    assert not key.event.is_set()
    assert key.requeue() is None
    assert key.seen == [Options()]
    assert key.event.is_set()