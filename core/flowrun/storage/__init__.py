"""Persistent sinks for run traces."""

from flowrun.storage.run_store import FileRunStore

__all__ = ["FileRunStore"]
