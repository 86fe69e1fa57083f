"""
Cache module.
Contains the two-tier cache and its shared Redis tier.
"""

from memorymesh.cache.shared import RedisSharedStore, SharedStore
from memorymesh.cache.store import (
    TieredCache,
    build_cache,
    get_cache,
    reset_cache,
    setup_cache,
)

__all__ = [
    "TieredCache",
    "SharedStore",
    "RedisSharedStore",
    "build_cache",
    "setup_cache",
    "get_cache",
    "reset_cache",
]
