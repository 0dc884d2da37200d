"""Metrics reported by the object-store backed workqueue."""

from __future__ import annotations

import os
import threading
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Iterable, Mapping

LATENCY_BUCKETS = (0.25, 0.5, 1, 2.5, 5, 10, 20, 30, 45, 60, 120, 240, 480, 960)


def service_labels() -> dict[str, str]:
    """Return the labels naming the running service and revision."""
    return {
        "service_name": os.environ.get("K_SERVICE") or "unknown",
        "revision_name": os.environ.get("K_REVISION") or "unknown",
    }


class _Metric:
    def __init__(self, name: str, help: str, label_names: Iterable[str]) -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()

    def _key(self, labels: Mapping[str, str]) -> tuple[str, ...]:
        if set(labels) != set(self.label_names):
            raise ValueError(
                f"{self.name}: expected labels {sorted(self.label_names)}, got {sorted(labels)}"
            )
        return tuple(labels[label] for label in self.label_names)


class Gauge(_Metric):
    """A value that can go up and down, per label set."""

    def __init__(self, name: str, help: str, label_names: Iterable[str]) -> None:
        super().__init__(name, help, label_names)
        self._values: dict[tuple[str, ...], float] = {}

    def set(self, labels: Mapping[str, str], value: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def get(self, labels: Mapping[str, str]) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)


class Counter(_Metric):
    """A monotonically increasing total, per label set."""

    def __init__(self, name: str, help: str, label_names: Iterable[str]) -> None:
        super().__init__(name, help, label_names)
        self._values: dict[tuple[str, ...], float] = {}

    def inc(self, labels: Mapping[str, str], amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"{self.name}: counters cannot decrease")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def get(self, labels: Mapping[str, str]) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)


@dataclass
class _Series:
    buckets: list[int]
    total: float = 0.0
    count: int = 0


@dataclass
class _Buckets:
    bounds: tuple[float, ...] = field(default=LATENCY_BUCKETS)


class Histogram(_Metric):
    """Observations sorted into buckets, per label set."""

    def __init__(
        self,
        name: str,
        help: str,
        label_names: Iterable[str],
        buckets: Iterable[float] = LATENCY_BUCKETS,
    ) -> None:
        super().__init__(name, help, label_names)
        self.buckets = tuple(sorted(buckets))
        self._series: dict[tuple[str, ...], _Series] = {}

    def observe(self, labels: Mapping[str, str], value: float) -> None:
        key = self._key(labels)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = _Series(buckets=[0] * (len(self.buckets) + 1))
                self._series[key] = series
            series.buckets[bisect_left(self.buckets, value)] += 1
            series.total += value
            series.count += 1

    def count(self, labels: Mapping[str, str]) -> int:
        key = self._key(labels)
        with self._lock:
            series = self._series.get(key)
            return series.count if series else 0


_SERVICE = ("service_name", "revision_name")

IN_PROGRESS_KEYS = Gauge(
    "workqueue_in_progress_keys",
    "The number of keys currently being processed by this workqueue.",
    _SERVICE,
)
QUEUED_KEYS = Gauge(
    "workqueue_queued_keys",
    "The number of keys currently in the backlog of this workqueue.",
    _SERVICE,
)
NOT_BEFORE_KEYS = Gauge(
    "workqueue_notbefore_keys",
    "The number of keys waiting on a 'not before' in the backlog of this workqueue.",
    _SERVICE,
)
MAX_ATTEMPTS = Gauge(
    "workqueue_max_attempts",
    "The maximum number of attempts for any queued or in-progress task.",
    _SERVICE,
)
TASK_MAX_ATTEMPTS = Gauge(
    "workqueue_task_max_attempts",
    "The maximum number of attempts for a given task above 20.",
    _SERVICE + ("task_id",),
)
WORK_LATENCY = Histogram(
    "workqueue_process_latency_seconds",
    "The duration taken to process a key.",
    _SERVICE,
)
WAIT_LATENCY = Histogram(
    "workqueue_wait_latency_seconds",
    "The duration the key waited to start.",
    _SERVICE,
)
ADDED_KEYS = Counter(
    "workqueue_added_keys",
    "The total number of queue requests.",
    _SERVICE,
)
DEDUPED_KEYS = Counter(
    "workqueue_deduped_keys",
    "The total number of keys that were deduped.",
    _SERVICE,
)
DEAD_LETTERED_KEYS = Gauge(
    "workqueue_dead_lettered_keys",
    "The number of keys currently in the dead letter queue",
    _SERVICE,
)