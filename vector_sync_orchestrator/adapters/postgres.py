"""
PostgreSQL source adapter backed by asyncpg connection pools.
"""

import asyncio
from typing import Dict, Any, Optional, List, Sequence

import asyncpg

from .base import SourceAdapter, Record
from ..models.source import SourceDescriptor, SourceType
from ..core.exceptions import AdapterConnectionError, ConfigurationError
from ..utils.logger import get_logger

_CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
)


class PostgresSourceAdapter(SourceAdapter):
    """
    Reads source tables over asyncpg.

    One pool is created lazily per ``source_id`` and reused for every query
    against that source.
    """

    def __init__(self, min_pool_size: int = 1, max_pool_size: int = 10, command_timeout: float = 60.0):
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
        self._pools: Dict[str, asyncpg.Pool] = {}
        self._pool_lock = asyncio.Lock()
        self.logger = get_logger(__name__)

    async def _get_pool(self, source: SourceDescriptor) -> asyncpg.Pool:
        if source.source_type is not SourceType.POSTGRESQL:
            raise ConfigurationError("source_type", f"{source.source_type.value} is not served by the PostgreSQL adapter")

        pool = self._pools.get(source.source_id)
        if pool is not None:
            return pool

        async with self._pool_lock:
            pool = self._pools.get(source.source_id)
            if pool is None:
                try:
                    pool = await asyncpg.create_pool(
                        host=source.host,
                        port=source.port,
                        database=source.database,
                        user=source.username,
                        password=source.password,
                        min_size=self.min_pool_size,
                        max_size=self.max_pool_size,
                        command_timeout=self.command_timeout
                    )
                except _CONNECTION_ERRORS as e:
                    raise AdapterConnectionError(source.dsn(), str(e)) from e
                self._pools[source.source_id] = pool
                self.logger.info("Created source connection pool", extra={
                    "source_id": source.source_id,
                    "dsn": source.dsn()
                })
        return pool

    async def test_connection(self, source: SourceDescriptor) -> bool:
        try:
            pool = await self._get_pool(source)
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (AdapterConnectionError, *_CONNECTION_ERRORS):
            self.logger.warning("Source connection test failed", extra={"source_id": source.source_id}, exc_info=True)
            return False

    async def query(
        self,
        source: SourceDescriptor,
        sql: str,
        params: Optional[Sequence[Any]] = None
    ) -> List[Record]:
        pool = await self._get_pool(source)
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(sql, *(params or ()))
        except _CONNECTION_ERRORS as e:
            raise AdapterConnectionError(source.dsn(), str(e)) from e
        return [dict(row) for row in rows]

    async def count(self, source: SourceDescriptor, sql: str, params: Optional[Sequence[Any]] = None) -> int:
        pool = await self._get_pool(source)
        try:
            async with pool.acquire() as conn:
                value = await conn.fetchval(sql, *(params or ()))
        except _CONNECTION_ERRORS as e:
            raise AdapterConnectionError(source.dsn(), str(e)) from e
        return int(value or 0)

    async def close(self):
        pools, self._pools = self._pools, {}
        for source_id, pool in pools.items():
            await pool.close()
            self.logger.info("Closed source connection pool", extra={"source_id": source_id})
