# Process-level resources: the async Qdrant client and the shared concurrency pool

from typing import Optional

from qdrant_client import AsyncQdrantClient

from .concurrency import ConcurrencyLimiter, ScopedLimiter
from .config import Config, Settings, get_config, get_settings
from .observability import get_logger

logger = get_logger(__name__)


class ConnectionManager:
    """Owns the Qdrant client and the global concurrency limiter"""

    def __init__(
        self, settings: Optional[Settings] = None, config: Optional[Config] = None
    ):
        self.settings = settings or get_settings()
        self.config = config or get_config()
        self._qdrant_client: Optional[AsyncQdrantClient] = None
        self._limiter: Optional[ScopedLimiter] = None

    # Qdrant
    def get_qdrant_client(self) -> AsyncQdrantClient:
        """Get or create the async Qdrant client"""
        if self._qdrant_client is None:
            index_cfg = self.config.vector_index
            if self.settings.qdrant_url:
                logger.info("Initializing Qdrant client", url=self.settings.qdrant_url)
                self._qdrant_client = AsyncQdrantClient(
                    url=self.settings.qdrant_url,
                    api_key=self.settings.qdrant_api_key,
                    timeout=index_cfg.timeout,
                    prefer_grpc=index_cfg.use_grpc,
                )
            else:
                logger.info(
                    "Initializing Qdrant client",
                    host=self.settings.qdrant_host,
                    port=self.settings.qdrant_port,
                )
                self._qdrant_client = AsyncQdrantClient(
                    host=self.settings.qdrant_host,
                    port=self.settings.qdrant_port,
                    grpc_port=self.settings.qdrant_grpc_port,
                    api_key=self.settings.qdrant_api_key,
                    timeout=index_cfg.timeout,
                    prefer_grpc=index_cfg.use_grpc,
                )
            logger.info("Qdrant client initialized successfully")
        return self._qdrant_client

    async def close_qdrant(self) -> None:
        """Close Qdrant client"""
        if self._qdrant_client:
            logger.info("Closing Qdrant client")
            await self._qdrant_client.close()
            self._qdrant_client = None

    # Concurrency
    def get_limiter(self) -> ScopedLimiter:
        """Get or create the process-wide limiter shared by every subsystem"""
        if self._limiter is None:
            cfg = self.config.concurrency
            self._limiter = ScopedLimiter(
                ConcurrencyLimiter(cfg.global_limit, name="global"),
                per_key_limit=cfg.per_owner_limit,
            )
            logger.info(
                "Concurrency limiter initialized",
                global_limit=cfg.global_limit,
                per_owner_limit=cfg.per_owner_limit,
            )
        return self._limiter

    # Lifecycle management
    async def initialize_all(self) -> None:
        """Initialize all connections"""
        logger.info("Initializing all connections")
        self.get_qdrant_client()
        self.get_limiter()
        logger.info("All connections initialized")

    async def close_all(self) -> None:
        """Close all connections gracefully"""
        logger.info("Closing all connections")
        await self.close_qdrant()
        if self._limiter is not None and self._limiter.global_limiter.in_use:
            logger.warning(
                "Closing with slots still in use",
                **self._limiter.global_limiter.metrics(),
            )
        self._limiter = None
        logger.info("All connections closed")


# Global connection manager instance
_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Get the global ConnectionManager instance"""
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager()
    return _connection_manager


async def initialize_connections() -> ConnectionManager:
    """Initialize and return the global ConnectionManager"""
    manager = get_connection_manager()
    await manager.initialize_all()
    return manager


async def close_connections() -> None:
    """Close all connections in the global ConnectionManager"""
    global _connection_manager
    if _connection_manager:
        await _connection_manager.close_all()
        _connection_manager = None
