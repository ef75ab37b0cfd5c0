"""Backend selection: probe Dgraph once, fall back to the local store."""

from __future__ import annotations

import asyncio

import structlog

from ckg.config import Settings
from ckg.exceptions import CKGError, ConfigurationError
from ckg.observability.metrics import ckg_backend_selected_total
from ckg.storage.base import GraphStore
from ckg.storage.dgraph_store import DgraphStore
from ckg.storage.local_store import LocalGraphStore


logger = structlog.get_logger(__name__)


async def select_store(settings: Settings) -> GraphStore:
    """
    Choose and connect the store used for an engine's lifetime.

    Dgraph is probed with ``backend_probe_timeout_seconds`` as an upper bound;
    if it is disabled, unreachable, or slow, the local store is used instead.

    Args:
        settings: Application settings

    Returns:
        A connected GraphStore

    Raises:
        ConfigurationError: If local_db_path exists but is not a directory
        StorageError: If the local store cannot load its documents
    """
    if settings.dgraph_enabled:
        native = DgraphStore(settings)
        try:
            await asyncio.wait_for(
                native.connect(), timeout=settings.backend_probe_timeout_seconds
            )
        except (TimeoutError, CKGError) as e:
            await native.close()
            logger.warning(
                "store.fallback_selected",
                url=settings.dgraph_url,
                reason=str(e) or type(e).__name__,
            )
        else:
            ckg_backend_selected_total.labels(backend=native.source).inc()
            logger.info("store.selected", backend=native.source, url=settings.dgraph_url)
            return native

    path = settings.local_db_path
    if path.exists() and not path.is_dir():
        raise ConfigurationError("local_db_path", f"{path} is not a directory")

    local = LocalGraphStore(path)
    await local.connect()
    ckg_backend_selected_total.labels(backend=local.source).inc()
    logger.info("store.selected", backend=local.source, path=str(path))
    return local
