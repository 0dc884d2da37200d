"""A workqueue kept as objects and metadata in an in-memory object store, with its metrics."""