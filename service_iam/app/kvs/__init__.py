"""
Key-value store adapters for short-lived state.
"""

from .store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore

__all__ = ["InMemoryKeyValueStore", "KeyValueStore", "RedisKeyValueStore"]
