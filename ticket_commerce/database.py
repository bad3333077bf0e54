import asyncpg
from contextlib import asynccontextmanager
from typing import Optional
from ticket_commerce.config import settings
import logging

logger = logging.getLogger(__name__)

# Postgres errors that mean "another transaction won the race, try again"
TRANSIENT_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)

class DatabasePool:
    _pool = None

    @classmethod
    async def create_pool(cls):
        if cls._pool is None:
            try:
                cls._pool = await asyncpg.create_pool(
                    **settings.db_connection_params,
                    min_size=settings.db_pool_min_size,
                    max_size=settings.db_pool_max_size,
                    max_queries=50000,
                    max_inactive_connection_lifetime=300,
                    command_timeout=60,
                    timeout=30
                )
                logger.info(f"Database pool created: {settings.db_name}@{settings.db_host}")
            except Exception as e:
                logger.error(f"Failed to create database pool: {e}")
                raise
        return cls._pool

    @classmethod
    async def close_pool(cls):
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            logger.info("Database pool closed")

@asynccontextmanager
async def get_db_connection(
    use_transaction: bool = True,
    isolation: Optional[str] = None,
    readonly: bool = False
):
    """
    Get database connection from pool.

    Args:
        use_transaction: If True, wraps operations in a transaction.
                        Set to False for single-statement reads.
        isolation: Transaction isolation level ('serializable',
                   'repeatable_read', 'read_committed'). None keeps the
                   server default.
        readonly: Open the transaction as READ ONLY.

    Usage:
    async with get_db_connection(isolation='serializable') as conn:
        await conn.execute("INSERT INTO order_items ...")

    Snapshot read usage:
    async with get_db_connection(isolation='repeatable_read', readonly=True) as conn:
        sales = await conn.fetch("SELECT ...")
        refunds = await conn.fetch("SELECT ...")
    """
    pool = await DatabasePool.create_pool()
    async with pool.acquire() as connection:
        if use_transaction:
            async with connection.transaction(isolation=isolation, readonly=readonly):
                yield connection
        else:
            yield connection
