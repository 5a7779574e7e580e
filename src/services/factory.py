"""Construct the service graph from an AppConfig.

One instance of each service is built at process start and handed to the
consumers that need it; nothing in the package keeps module-level state.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from src.models.config import AppConfig
from src.services.blob_store import BlobStore
from src.services.image_cache_service import ImageCacheService
from src.services.image_resolver import ImageResolver
from src.services.remote import HttpSessionBackend, RemoteSessionBackend
from src.services.session_store import SessionStore

logger = structlog.get_logger()


@dataclass
class Services:
    """Wired services sharing one lifecycle."""

    cache: ImageCacheService
    sessions: SessionStore
    resolver: ImageResolver
    backend: Optional[RemoteSessionBackend] = None

    async def close(self) -> None:
        await self.resolver.wait_pending()
        await self.cache.close()
        if self.backend is not None:
            await self.backend.close()


def build_services(
    config: AppConfig,
    backend: Optional[RemoteSessionBackend] = None,
) -> Services:
    """Build the cache, session store and resolver.

    Args:
        config: Application configuration.
        backend: Remote backend override; by default an HttpSessionBackend
            is created when the remote section is enabled and configured.
    """
    if backend is None and config.remote.is_configured:
        backend = HttpSessionBackend.from_config(config.remote)

    cache = ImageCacheService(
        config.cache,
        blob_store=BlobStore(
            download_timeout_seconds=config.cache.download_timeout_seconds
        ),
    )
    sessions = SessionStore(
        config.sessions,
        backend=backend,
        user_id=config.remote.user_id,
    )

    logger.debug(
        "services_built",
        remote=backend.name if backend else None,
        user_id=config.remote.user_id,
    )
    return Services(
        cache=cache,
        sessions=sessions,
        resolver=ImageResolver(cache),
        backend=backend,
    )
