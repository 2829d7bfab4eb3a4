"""
SQL schema for the batched migration tables.

Tables:
    - batched_background_migrations: one row per migration
    - batched_background_migration_jobs: one row per batch job

Usage:
    from batchmigrate.schema import get_schema_statements

    async with engine.begin() as conn:
        for statement in get_schema_statements():
            await conn.execute(text(statement))
"""

from pathlib import Path
from typing import Literal

BackendName = Literal["postgresql"]

_PACKAGE_DIR = Path(__file__).parent


def get_schema_path(backend: BackendName = "postgresql") -> Path:
    """
    Get the path to the schema file for a backend.

    Raises:
        FileNotFoundError: If the schema file doesn't exist
    """
    path = _PACKAGE_DIR / f"{backend}.sql"
    if not path.exists():
        raise FileNotFoundError(f"Schema file not found: {path}")
    return path


def get_schema(backend: BackendName = "postgresql") -> str:
    """Get the DDL for the migration tables as a single SQL string."""
    return get_schema_path(backend).read_text(encoding="utf-8")


def get_schema_statements(backend: BackendName = "postgresql") -> list[str]:
    """
    Split the schema into individual statements.

    asyncpg executes one statement per call, so callers run these one by one.
    """
    lines = [
        line for line in get_schema(backend).splitlines() if not line.lstrip().startswith("--")
    ]
    return [statement.strip() for statement in "\n".join(lines).split(";") if statement.strip()]


__all__ = ["BackendName", "get_schema_path", "get_schema", "get_schema_statements"]
