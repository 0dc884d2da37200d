# workqueue

A small library for a keyed workqueue. It deduplicates keys, orders them by
priority, can hold them back until a "not before" time, and backs off when a
key is requeued. A dispatcher takes keys from the queue and runs them through
your callback, with a cap on how many run at once. It has no dependencies
outside the standard library.

## Pieces

- `workqueue.interface`: the abstract queue and key types (`Interface`,
  `Key`, `QueuedKey`, `InProgressKey`, `ObservedInProgressKey`,
  `OwnedInProgressKey`), queuing `Options` (`priority`, `not_before`,
  `delay`), and the `ProcessRequest` / `ProcessResponse` messages used with
  remote workers. `BACKOFF`, a shared `BackoffSettings`, holds
  `backoff_period` (30 seconds) and `maximum_backoff_period` (10 minutes);
  a requeued key waits `backoff_period * attempts`, capped at the maximum.
- `workqueue.inmem`: `InMemoryWorkQueue`, a process-local queue meant for
  tests and small tools.
- `workqueue.gcs.store`: `ObjectStore`, a thread-safe in-memory bucket of
  objects with metadata, conditional writes (`PreconditionFailedError`) and
  `ObjectNotFoundError`; `SETTINGS` holds the lease `refresh_interval`
  (5 minutes).
- `workqueue.gcs.queue`: `GCSWorkQueue`, a queue kept as objects in an
  `ObjectStore`. Keys live under `queued/`, `in-progress/` and
  `dead-letter/` prefixes, with priority, attempt count, lease expiry and
  not-before time kept in object metadata. Started keys renew their lease on a
  background thread while work runs; a key whose lease has lapsed is reported
  as orphaned.
- `workqueue.gcs.keys`: the queued and in-progress key types of that queue.
- `workqueue.gcs.metrics`: in-process `Gauge`, `Counter` and `Histogram`
  values the object-store queue keeps up to date, labelled with the service
  and revision names from `K_SERVICE` and `K_REVISION` (default `unknown`).
- `workqueue.dispatcher`: `handle` and `handle_async` run one round of
  dispatch. `service_callback` turns a worker client (any object with a
  `process(request)` method returning a `ProcessResponse`) into a callback.
- `workqueue.handler`: `DispatchHandler`, a WSGI application that starts a
  round of dispatch for each request and folds bursts of requests into at most
  one waiting round.
- `workqueue.errors`: errors a callback can raise to steer the dispatcher.

## Queueing and dispatching

```python
from workqueue.inmem import InMemoryWorkQueue
from workqueue.interface import Options
from workqueue.dispatcher import handle

wq = InMemoryWorkQueue(5)

wq.queue("foo", Options())
wq.queue("bar", Options(priority=1000))

in_progress, queued = wq.enumerate()
print([k.name for k in queued])   # ['bar', 'foo']


def reconcile(key, opts):
    print("processing", key, "with priority", opts.priority)


handle(wq, 5, reconcile)
```

If the same key is queued twice, it is stored once and the higher priority is
kept; a later not-before time is kept too. Keys with a higher priority come
out first; keys with equal priority come out in the order they were queued.
`enumerate` returns every in-progress key and at most `limit` queued keys
whose not-before time has passed.

Working with keys directly:

```python
owned = queued[0].start()       # moves the key to in progress
print(owned.attempts)           # 1
owned.complete()                # or owned.requeue() / owned.deadletter()
print(owned.context.is_set())   # True once ownership has ended
```

`handle_async(wq, concurrency, callback, max_retry)` returns a
`concurrent.futures.Future` that resolves when the round's work is done and
holds the first error the round itself ran into.

## Telling the dispatcher what to do next

When a callback returns normally, its key is completed. When it raises:

- `requeue_after(delay)`: the key goes back on the queue and is held until
  `delay` has passed.
- `non_retriable_error(err, reason)`: the key is completed and not retried.
  `get_non_retriable_details` returns the `NoRetryDetails` with the reason.
- Any other error: the key is requeued with backoff. If `max_retry` is above
  zero and the key's attempts have reached it, the key is dead-lettered
  instead.

Both markers are also found when wrapped as the cause of another exception.

```python
from datetime import timedelta
from workqueue.errors import requeue_after, get_requeue_delay

err = requeue_after(timedelta(seconds=30))
print(get_requeue_delay(err))                 # 0:00:30
print(get_requeue_delay(ValueError("boom")))  # None
```

## Serving dispatch over HTTP

`DispatchHandler` is a plain WSGI application. Mount it in any WSGI server and
send it a request whenever new work may be waiting:

```python
from workqueue.handler import DispatchHandler

app = DispatchHandler(wq, 5, reconcile, 3)
```

A round that fails answers with status 500 and the error text; every other
request answers with status 200. `app.dispatch()` runs a round without HTTP.

## What this package does not do

- `ObjectStore` keeps its objects in memory. `GCSWorkQueue` instances that
  share one store see the same queue, but nothing survives the process, and
  there is no client for a real cloud storage bucket.
- There is no network client or server for remote workers; `service_callback`
  works with any object you supply that has a `process` method.
- There is no command-line program, and no ready-made suite of behavioural
  checks for queue implementations; `workqueue.conformance` holds no modules.