"""
MemoryMesh Dispatch

Durable task dispatch and tiered caching for the family-memory backend:
named job queues with retry/backoff and stalled-job recovery, a two-tier
cache that survives losing its shared store, and an offline outbox that
replays client mutations once connectivity returns.
"""

__version__ = "1.0.0"
