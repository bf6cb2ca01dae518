"""Execution graphs: scheduling, versioned storage, gates, and the runtime loop.

The scheduler (``scheduler.tick``) is a pure function over immutable graph
snapshots. Everything with side effects sits around it: the store enforces
optimistic versioning, the runtime retries lost races from a fresh read, and
executors only ever see nodes whose transition to ``running`` was persisted.
"""
