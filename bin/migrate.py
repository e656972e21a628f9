#!/usr/bin/env python3
"""Apply the webhook-service SQL migrations to a PostgreSQL database."""
# pyright: reportMissingImports=false
from __future__ import annotations

import argparse
import asyncio
import hashlib
import os
from dataclasses import dataclass
from pathlib import Path

import asyncpg

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"

_SCHEMA_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version text PRIMARY KEY,
    checksum text NOT NULL,
    applied_at timestamptz NOT NULL DEFAULT now()
);
"""


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply webhook-service SQL migrations.")
    parser.add_argument(
        "--database-url",
        "-d",
        default=os.getenv("DATABASE_URL"),
        help="PostgreSQL connection string (default: DATABASE_URL).",
    )
    parser.add_argument(
        "--migrations-dir",
        "-m",
        type=Path,
        default=MIGRATIONS_DIR,
        help="Directory with *.sql files, applied in lexicographic order.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List pending migrations and exit.",
    )
    return parser.parse_args()


def load_migrations(directory: Path) -> list[Migration]:
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory does not exist: {directory}")
    migrations = [
        Migration(version=path.stem, path=path, sql=path.read_text(encoding="utf-8"))
        for path in sorted(directory.glob("*.sql"))
    ]
    if not migrations:
        raise ValueError(f"No *.sql files found in {directory}")
    return migrations


async def pending_migrations(conn: asyncpg.Connection, migrations: list[Migration]) -> list[Migration]:
    """Migrations not yet recorded; an edited applied file is an error."""
    await conn.execute(_SCHEMA_TABLE_SQL)
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    applied = {row["version"]: row["checksum"] for row in rows}
    pending: list[Migration] = []
    for migration in migrations:
        recorded = applied.get(migration.version)
        if recorded is None:
            pending.append(migration)
        elif recorded != migration.checksum:
            raise RuntimeError(
                f"Checksum mismatch for {migration.version}: "
                f"{recorded} (db) != {migration.checksum} (file)"
            )
    return pending


async def migrate(database_url: str, migrations_dir: Path, dry_run: bool = False) -> int:
    migrations = load_migrations(migrations_dir)
    conn = await asyncpg.connect(database_url)
    try:
        pending = await pending_migrations(conn, migrations)
        if not pending:
            print("No pending migrations.")
            return 0
        for migration in pending:
            if dry_run:
                print(f"[dry-run] pending: {migration.path.name}")
                continue
            print(f"Applying {migration.path.name}...")
            async with conn.transaction():
                await conn.execute(migration.sql)
                await conn.execute(
                    "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                    migration.version,
                    migration.checksum,
                )
        print(f"{len(pending)} migration(s) {'pending' if dry_run else 'applied'}.")
        return len(pending)
    finally:
        await conn.close()


def main() -> None:
    args = parse_args()
    if not args.database_url:
        raise SystemExit("Database URL must be provided via --database-url or DATABASE_URL env.")
    asyncio.run(migrate(args.database_url, args.migrations_dir, args.dry_run))


if __name__ == "__main__":
    main()
