"""
Storage Module

Graph store backends (Dgraph, local JSON), backend selection and the
Redis query cache.
"""

from ckg.storage.base import GraphStore
from ckg.storage.cache import QueryCache, cache_key
from ckg.storage.dgraph_store import DgraphStore
from ckg.storage.factory import select_store
from ckg.storage.local_store import LocalGraphStore


__all__ = [
    "DgraphStore",
    "GraphStore",
    "LocalGraphStore",
    "QueryCache",
    "cache_key",
    "select_store",
]
