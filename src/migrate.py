"""
Database migration runner for asyncpg.

Applies forward-only SQL migrations from the migrations/ directory. Runs
under a PostgreSQL advisory lock so that several controller replicas
starting together apply each migration once.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# Arbitrary constant identifying the migration lock
MIGRATION_LOCK_ID = 727_411_001


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            id SERIAL PRIMARY KEY,
            version VARCHAR(255) NOT NULL UNIQUE,
            filename VARCHAR(255) NOT NULL,
            checksum VARCHAR(64) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def checksum(sql: str) -> str:
    """SHA-256 of a migration's text."""
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


def discover_migrations(
    migrations_dir: Optional[Path] = None,
) -> List[Tuple[str, str, Path]]:
    """
    Discover migration files, ordered by version.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
        ValueError: If two files share a version number.
    """
    directory = migrations_dir or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    migrations = []
    seen: Dict[str, str] = {}
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if not match or not entry.is_file():
            continue
        version = match.group(1)
        if version in seen:
            raise ValueError(
                f"Duplicate migration version {version}: {seen[version]}, {entry.name}"
            )
        seen[version] = entry.name
        migrations.append((version, entry.name, entry))

    return migrations


async def get_applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map of applied migration version to the checksum recorded for it."""
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_migration(
    conn: asyncpg.Connection, version: str, filename: str, sql: str
) -> None:
    """Apply a single migration in its own transaction."""
    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, filename, checksum) "
            "VALUES ($1, $2, $3)",
            version,
            filename,
            checksum(sql),
        )

    logger.info(f"Applied migration {filename}")


async def run_migrations(
    pool: asyncpg.Pool, migrations_dir: Optional[Path] = None
) -> int:
    """
    Apply all pending migrations in order.

    A migration whose file changed after it was applied is reported but
    not re-run.

    Args:
        pool: An asyncpg connection pool (must already be connected).
        migrations_dir: Override of the migrations directory.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            previously applied migrations remain).
    """
    all_migrations = discover_migrations(migrations_dir)

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_ID)
        try:
            await ensure_migration_table(conn)
            applied = await get_applied_checksums(conn)

            pending = []
            for version, filename, path in all_migrations:
                sql = path.read_text(encoding="utf-8")
                if version not in applied:
                    pending.append((version, filename, sql))
                elif applied[version] != checksum(sql):
                    logger.warning(
                        f"Migration {filename} changed after it was applied; "
                        f"ignoring the new contents"
                    )

            if not pending:
                logger.info("Database schema is up to date")
                return 0

            logger.info(f"Applying {len(pending)} pending migration(s)")
            for version, filename, sql in pending:
                await apply_migration(conn, version, filename, sql)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)

    logger.info(f"Successfully applied {len(pending)} migration(s)")
    return len(pending)
