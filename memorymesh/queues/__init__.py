"""
Queues module.
Contains the queue contract, its memory and Redis backends, and the registry.
"""

from memorymesh.queues.base import Queue, default_job_options
from memorymesh.queues.memory import MemoryQueue
from memorymesh.queues.redis_backend import RedisQueue
from memorymesh.queues.registry import QueueRegistry

__all__ = [
    "Queue",
    "MemoryQueue",
    "RedisQueue",
    "QueueRegistry",
    "default_job_options",
]
