"""
Outbox module.
Contains the durable offline outbox and the backend it syncs against.
"""

from memorymesh.outbox.agent import OutboxSyncAgent, memory_type_for
from memorymesh.outbox.backend import HttpSyncBackend, SyncBackend
from memorymesh.outbox.store import OutboxStore

__all__ = [
    "OutboxSyncAgent",
    "OutboxStore",
    "SyncBackend",
    "HttpSyncBackend",
    "memory_type_for",
]
