import threading
import time
from datetime import timedelta

import pytest

from workqueue.dispatcher import handle, handle_async, service_callback
from workqueue.errors import get_requeue_delay, non_retriable_error, requeue_after
from workqueue.inmem import InMemoryWorkQueue
from workqueue.interface import (
    Interface,
    ObservedInProgressKey,
    Options,
    OwnedInProgressKey,
    ProcessResponse,
    QueuedKey,
)


class MockKey(QueuedKey, ObservedInProgressKey):
    priority = property(lambda self: 0)

    def __init__(self, name, orphaned=False, start_error=None, attempts=0):
        self._name = name
        self.orphaned = orphaned
        self.start_error = start_error
        self.attempts = attempts
        self.requeues = 0
        self.dead = 0
        self.completes = 0
        self.last_opts = None
        self.lock = threading.Lock()

    @property
    def name(self):
        return self._name

    def counts(self):
        return self.requeues, self.dead, self.completes

    def bump(self, field):
        with self.lock:
            setattr(self, field, getattr(self, field) + 1)

    def is_orphaned(self):
        return self.orphaned

    def start(self):
        if self.start_error is not None:
            raise self.start_error
        return MockInProgressKey(self)

    def requeue_with_options(self, opts):
        self.bump("requeues")
        self.last_opts = opts


class MockInProgressKey(ObservedInProgressKey, OwnedInProgressKey):
    priority = property(lambda self: 0)
    name = property(lambda self: self.key.name)
    attempts = property(lambda self: self.key.attempts)
    context = property(lambda self: self._context)

    def __init__(self, key):
        self.key = key
        self._context = threading.Event()

    def is_orphaned(self):
        return self.key.is_orphaned()

    def requeue_with_options(self, opts):
        self.key.requeue_with_options(opts)

    def complete(self):
        self.key.bump("completes")

    def deadletter(self):
        self.key.bump("dead")


class MockQueue(Interface):
    def __init__(self, wip=(), upcoming=(), err=None):
        self.wip = list(wip)
        self.upcoming = list(upcoming)
        self.err = err

    def enumerate(self):
        if self.err is not None:
            raise self.err
        return self.wip, self.upcoming

    def queue(self, key, opts):
        self.upcoming.append(MockKey(key))


def noop(key, opts):
    return None


def fail(key, opts):
    raise RuntimeError("fail")


def _raise(err):
    def callback(key, opts):
        raise err

    return callback


def recorder():
    called = []
    return called, lambda key, opts: called.append(key)


def dispatch(callback=noop, wip=(), upcoming=(), concurrency=1, max_retry=0):
    return handle_async(MockQueue(wip=wip, upcoming=upcoming), concurrency, callback, max_retry).result()


def test_enumerate_error():
    future = handle_async(MockQueue(err=RuntimeError("fail")), 1, noop, 0)
    with pytest.raises(RuntimeError, match=r"^enumerate\(\) = fail$"):
        future.result()


def test_handle_raises_enumerate_error():
    with pytest.raises(RuntimeError, match=r"^enumerate\(\) = fail$"):
        handle(MockQueue(err=RuntimeError("fail")), 1, noop)


def test_orphaned_work_is_requeued():
    orphan = MockKey("orphan", orphaned=True)
    called, callback = recorder()
    assert dispatch(callback, wip=[MockInProgressKey(orphan)]) is None
    assert orphan.requeues == 1
    assert called == []


def test_no_open_slots():
    upcoming = MockKey("next")
    called, callback = recorder()
    assert dispatch(callback, wip=[MockKey("active")], upcoming=[upcoming]) is None
    assert called == []
    assert upcoming.completes == 0


def test_launches_new_work():
    upcoming = MockKey("next")
    called, callback = recorder()
    assert dispatch(callback, upcoming=[upcoming]) is None
    assert called == ["next"]
    assert upcoming.completes == 1


@pytest.mark.parametrize(
    "attempts, max_retry, callback, expected",
    [
        (0, 0, noop, (0, 0, 1)),
        (0, 0, fail, (1, 0, 0)),
        (3, 3, fail, (0, 1, 0)),
        (1, 3, fail, (1, 0, 0)),
        (0, 0, _raise(non_retriable_error(RuntimeError("non-retriable"), "no retry")), (0, 0, 1)),
        (0, 0, _raise(requeue_after(timedelta(seconds=5))), (1, 0, 0)),
    ],
)
def test_callback_outcomes(attempts, max_retry, callback, expected):
    upcoming = MockKey("key", attempts=attempts)
    assert dispatch(callback, upcoming=[upcoming], max_retry=max_retry) is None
    assert upcoming.counts() == expected


def test_requeue_request_uses_delay():
    upcoming = MockKey("later")
    dispatch(_raise(requeue_after(timedelta(seconds=5))), upcoming=[upcoming])
    assert upcoming.last_opts.delay == timedelta(seconds=5)


def test_start_failure_is_skipped():
    called, callback = recorder()
    assert dispatch(callback, upcoming=[MockKey("taken", start_error=RuntimeError("lost race"))]) is None
    assert called == []


def test_active_keys_are_not_launched_again():
    busy_again = MockKey("busy")
    called, callback = recorder()
    result = dispatch(
        callback, wip=[MockKey("busy")], upcoming=[busy_again, MockKey("other")], concurrency=2
    )
    assert result is None
    assert called == ["other"]
    assert busy_again.completes == 0


def _queue_with(*keys, priority=0, limit=10):
    wq = InMemoryWorkQueue(limit)
    for key in keys:
        wq.queue(key, Options(priority=priority))
    return wq


def test_concurrency_is_bounded():
    wq = _queue_with(*(f"key-{i}" for i in range(10)))
    lock = threading.Lock()
    inflight = [0]
    peak = [0]
    seen = []

    def callback(key, opts):
        with lock:
            inflight[0] += 1
            peak[0] = max(peak[0], inflight[0])
            seen.append(key)
        time.sleep(0.05)
        with lock:
            inflight[0] -= 1

    handle(wq, 3, callback)
    assert peak[0] <= 3
    assert len(seen) == 3
    assert len(wq.enumerate()[1]) == 7


def test_callback_receives_priority():
    wq = _queue_with("key", priority=7)
    seen = []
    handle(wq, 1, lambda key, opts: seen.append((key, opts.priority)))
    assert seen == [("key", 7)]


@pytest.mark.parametrize(
    "callback, pause",
    [
        (noop, 0),
        (_raise(non_retriable_error(RuntimeError("canceled"), "test non-retriable")), 0),
        (_raise(requeue_after(timedelta(seconds=5))), 0.01),
        (_raise(requeue_after(timedelta(minutes=1))), 0.01),
    ],
)
def test_processed_keys_leave_the_visible_queue(callback, pause):
    wq = _queue_with("test-key", priority=1)
    handle(wq, 1, callback)
    assert wq.enumerate() == ([], [])
    time.sleep(pause)
    assert wq.enumerate() == ([], [])


def test_requeue_with_delay_reappears():
    wq = _queue_with("test-key", priority=1)
    handle(wq, 1, _raise(requeue_after(timedelta(seconds=0.1))))
    assert wq.enumerate() == ([], [])
    time.sleep(0.2)
    assert [k.name for k in wq.enumerate()[1]] == ["test-key"]


class MockClient:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def process(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response


def test_service_callback_with_delay():
    callback = service_callback(MockClient(ProcessResponse(requeue_after_seconds=30)))
    with pytest.raises(Exception) as excinfo:
        callback("test-key", Options())
    assert get_requeue_delay(excinfo.value) == timedelta(seconds=30)


def test_service_callback_sends_key_and_priority():
    client = MockClient(ProcessResponse())
    assert service_callback(client)("test-key", Options(priority=4)) is None
    assert [(r.key, r.priority) for r in client.requests] == [("test-key", 4)]


def test_service_callback_propagates_errors():
    callback = service_callback(MockClient(error=ValueError("processing failed")))
    with pytest.raises(ValueError, match="^processing failed$"):
        callback("error", Options())