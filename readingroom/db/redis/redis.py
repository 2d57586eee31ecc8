from typing import Optional

from redis import ConnectionPool, Redis

from readingroom.config import get_settings

_pool: ConnectionPool | None = None


def get_redis_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        settings = get_settings()
        if settings.redis_url:
            _pool = ConnectionPool.from_url(
                settings.redis_url, max_connections=settings.redis_max_connections
            )
        else:
            _pool = ConnectionPool(
                host=settings.redis_host,
                port=settings.redis_port,
                db=settings.redis_db,
                max_connections=settings.redis_max_connections,
            )
    return _pool


def get_redis_client(url: Optional[str] = None) -> Redis:
    """Client on the shared pool, or a dedicated one when url is given."""
    if url:
        return Redis.from_url(url)
    return Redis(connection_pool=get_redis_pool())
