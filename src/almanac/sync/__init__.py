"""Sync engine and its write-once run log."""

from almanac.sync.engine import SyncEngine
from almanac.sync.log import SyncLog, SyncLogClosedError

__all__ = ["SyncEngine", "SyncLog", "SyncLogClosedError"]
