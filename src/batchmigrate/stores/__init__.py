"""
Migration stores.

- MigrationStore: protocol every store implements
- InMemoryMigrationStore: dictionaries guarded by an asyncio.Lock
- PostgreSQLMigrationStore: SQLAlchemy async core over PostgreSQL
"""

from batchmigrate.stores.in_memory import InMemoryMigrationStore
from batchmigrate.stores.interface import MigrationStore
from batchmigrate.stores.postgresql import JOBS_TABLE, MIGRATIONS_TABLE, PostgreSQLMigrationStore

__all__ = [
    "MigrationStore",
    "InMemoryMigrationStore",
    "PostgreSQLMigrationStore",
    "MIGRATIONS_TABLE",
    "JOBS_TABLE",
]
