"""A keyed workqueue with priorities, delayed keys, backoff and a concurrent dispatcher."""

__version__ = "0.1.0"