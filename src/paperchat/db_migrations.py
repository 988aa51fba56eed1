"""
Schema version tracking for the two persistent stores:
the SQLite library catalog and the versioned JSON chat document.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Callable

from .models import utcnow_iso
from .observability import get_logger

logger = get_logger(__name__)


MigrationRunner = Callable[[sqlite3.Connection], None]
DocumentUpgrade = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class SqliteMigration:
    version: int
    name: str
    statements: tuple[str, ...] = ()
    runner: MigrationRunner | None = None


@dataclass(frozen=True)
class DocumentMigration:
    """Upgrades a JSON document from ``version - 1`` to ``version``."""

    version: int
    name: str
    upgrade: DocumentUpgrade


def apply_sqlite_migrations(
    conn: sqlite3.Connection,
    *,
    component: str,
    migrations: list[SqliteMigration],
):
    """Applies ordered migrations for a component and records applied versions."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            component TEXT NOT NULL,
            version INTEGER NOT NULL,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL,
            PRIMARY KEY(component, version)
        )
        """
    )

    applied_versions = {
        int(row[0])
        for row in conn.execute(
            "SELECT version FROM schema_migrations WHERE component = ?",
            (component,),
        )
    }

    for migration in sorted(migrations, key=lambda m: int(m.version)):
        if int(migration.version) in applied_versions:
            continue

        for statement in migration.statements:
            sql = str(statement or "").strip()
            if sql:
                conn.execute(sql)
        if callable(migration.runner):
            migration.runner(conn)

        conn.execute(
            "INSERT INTO schema_migrations (component, version, name, applied_at) VALUES (?, ?, ?, ?)",
            (component, int(migration.version), migration.name, utcnow_iso()),
        )
        logger.info(
            "db_migration_applied",
            component=component,
            version=int(migration.version),
            name=migration.name,
        )


def apply_document_migrations(
    document: dict[str, Any],
    *,
    component: str,
    migrations: list[DocumentMigration],
) -> tuple[dict[str, Any], bool]:
    """
    Upgrades ``document`` step by step from its ``version`` field.
    Returns the upgraded document and whether any migration ran.
    Documents newer than the latest known migration are rejected with ValueError.
    """
    ordered = sorted(migrations, key=lambda m: int(m.version))
    latest = int(ordered[-1].version) if ordered else 0
    try:
        current = int(document.get("version") or 1)
    except (TypeError, ValueError):
        raise ValueError(f"{component} document has a non-numeric version") from None
    if current > latest:
        raise ValueError(f"{component} document version {current} is newer than supported version {latest}")

    changed = False
    for migration in ordered:
        if int(migration.version) <= current:
            continue
        document = migration.upgrade(dict(document))
        document["version"] = int(migration.version)
        current = int(migration.version)
        changed = True
        logger.info(
            "document_migration_applied",
            component=component,
            version=current,
            name=migration.name,
        )
    return document, changed
