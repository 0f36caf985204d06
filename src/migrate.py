"""
Database migration runner for asyncpg.

Applies forward-only SQL migrations from the migrations/ directory.
Each migration runs in its own transaction; a session advisory lock keeps
concurrently starting controller replicas from applying the same file twice.
"""

import logging
import re
from pathlib import Path
from typing import List, Set, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# Arbitrary but fixed key for pg_advisory_lock.
MIGRATION_LOCK_KEY = 7_414_201

Migration = Tuple[str, str, Path]


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            id SERIAL PRIMARY KEY,
            version VARCHAR(255) NOT NULL UNIQUE,
            filename VARCHAR(255) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations() -> List[Migration]:
    """
    Discover migration files in the migrations directory.

    Returns:
        Sorted list of (version, filename, path) tuples.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    if not MIGRATIONS_DIR.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    migrations = []
    for entry in sorted(MIGRATIONS_DIR.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            migrations.append((match.group(1), entry.name, entry))

    return migrations


async def get_applied_versions(conn: asyncpg.Connection) -> Set[str]:
    """Get the set of already-applied migration versions."""
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


def select_pending(migrations: List[Migration], applied: Set[str]) -> List[Migration]:
    """Filter discovered migrations down to those not yet applied, in order."""
    return [m for m in migrations if m[0] not in applied]


async def apply_migration(conn: asyncpg.Connection, migration: Migration) -> None:
    """
    Apply a single migration in its own transaction.

    Args:
        conn: A connection holding the migration lock.
        migration: (version, filename, path) tuple.
    """
    version, filename, path = migration
    sql = path.read_text(encoding="utf-8")

    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
            version,
            filename,
        )

    logger.info(f"Applied migration {filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Discover and apply all pending migrations in order.

    Args:
        pool: An asyncpg connection pool (must already be connected).

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            previously applied migrations remain).
    """
    all_migrations = discover_migrations()

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        try:
            await ensure_migration_table(conn)

            if not all_migrations:
                logger.info("No migration files found")
                return 0

            applied = await get_applied_versions(conn)
            pending = select_pending(all_migrations, applied)

            if not pending:
                logger.info("Database schema is up to date")
                return 0

            logger.info(f"Applying {len(pending)} pending migration(s)")
            for migration in pending:
                await apply_migration(conn, migration)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

    logger.info(f"Successfully applied {len(pending)} migration(s)")
    return len(pending)
