"""
Connection handling helper for the PostgreSQL store.

Stores accept either an AsyncEngine or an AsyncConnection. With an engine
every call opens its own connection (and transaction for writes). With a
connection the caller owns the transaction, which lets a runner hold the
row lock taken by ``active_migration`` for a whole iteration.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection ready for execute() calls.

    Args:
        conn: Database connection or engine
        transactional: For an engine, run inside ``begin()`` (True) or a
            bare ``connect()`` (False). Ignored for a connection.

    Example:
        >>> async with execute_with_connection(self._conn) as conn:
        ...     await conn.execute(query, params)
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn
