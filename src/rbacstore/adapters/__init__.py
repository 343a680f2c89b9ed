"""
Storage adapters for rbac-store.

Adapters persist the rules of a PolicyModel:
    - SQLAdapter: one SQLite table, one row per rule
    - RedisAdapter: one Redis key per rule below a namespace

Use create_adapter() to build the adapter a StoreConfig describes.
"""

from rbacstore.adapters.base import Adapter
from rbacstore.adapters.kv import RedisAdapter
from rbacstore.adapters.sql import SQLAdapter
from rbacstore.schema import BackendKind, StoreConfig


def create_adapter(config: StoreConfig) -> Adapter:
    """Build and connect the adapter for a configuration."""
    if config.backend == BackendKind.REDIS:
        return RedisAdapter(
            url=config.redis.url,
            namespace=config.redis.namespace,
            table_name=config.table_name,
            save_mode=config.save_mode,
            flush_every=config.flush_every,
        )
    return SQLAdapter(
        db_path=config.sql.path,
        table_prefix=config.sql.table_prefix,
        table_name=config.table_name,
        save_mode=config.save_mode,
        flush_every=config.flush_every,
    )


__all__ = [
    "Adapter",
    "RedisAdapter",
    "SQLAdapter",
    "create_adapter",
]
