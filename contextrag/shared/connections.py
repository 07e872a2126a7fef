# Connection management for Redis (cache store) and Qdrant (vector store)

from typing import Optional

import redis
from qdrant_client import QdrantClient
from redis.connection import ConnectionPool

from .config import Settings, get_settings
from .errors import ConfigurationError
from .observability import get_logger

logger = get_logger(__name__)


class ConnectionManager:
    """Manages connections to Redis and Qdrant"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._qdrant_client: Optional[QdrantClient] = None
        self._redis_pool: Optional[ConnectionPool] = None
        self._redis_client: Optional[redis.Redis] = None

    # Qdrant
    def get_qdrant_client(self) -> QdrantClient:
        """Get or create the Qdrant client"""
        if self._qdrant_client is None:
            logger.info(
                "Initializing Qdrant client",
                host=self.settings.qdrant_host,
                port=self.settings.qdrant_port,
            )
            self._qdrant_client = QdrantClient(
                host=self.settings.qdrant_host,
                port=self.settings.qdrant_port,
            )
            logger.info("Qdrant client initialized successfully")
        return self._qdrant_client

    def close_qdrant(self) -> None:
        if self._qdrant_client:
            logger.info("Closing Qdrant client")
            self._qdrant_client.close()
            self._qdrant_client = None

    # Redis
    def get_redis_client(self) -> redis.Redis:
        """
        Get or create the Redis client.

        Raises:
            ConfigurationError: If Redis does not answer PING
        """
        if self._redis_client is None:
            logger.info(
                "Initializing Redis client",
                host=self.settings.redis_host,
                port=self.settings.redis_port,
            )
            self._redis_pool = ConnectionPool(
                host=self.settings.redis_host,
                port=self.settings.redis_port,
                password=self.settings.redis_password or None,
                db=self.settings.redis_db,
                decode_responses=True,
                max_connections=50,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
            client = redis.Redis(connection_pool=self._redis_pool)
            try:
                client.ping()
            except redis.RedisError as e:
                self._redis_pool.disconnect()
                self._redis_pool = None
                raise ConfigurationError(
                    f"Redis unreachable at {self.settings.redis_host}:"
                    f"{self.settings.redis_port}: {e}"
                ) from e
            self._redis_client = client
            logger.info("Redis client initialized successfully")
        return self._redis_client

    def close_redis(self) -> None:
        if self._redis_client:
            logger.info("Closing Redis client")
            self._redis_client.close()
            self._redis_client = None
        if self._redis_pool:
            self._redis_pool.disconnect()
            self._redis_pool = None

    def close_all(self) -> None:
        """Close all connections gracefully"""
        logger.info("Closing all connections")
        self.close_qdrant()
        self.close_redis()
        logger.info("All connections closed")


# Global connection manager instance
_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Get the global ConnectionManager instance"""
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager()
    return _connection_manager


def close_connections() -> None:
    """Close all connections in the global ConnectionManager"""
    global _connection_manager
    if _connection_manager:
        _connection_manager.close_all()
        _connection_manager = None
