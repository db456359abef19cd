"""Forward-only SQL migrations for the proposal store.

Each namespace maps to a directory of ``NNNN_description.sql`` files next to
this module. Statements are split on ``;`` outside dollar-quoted bodies, so
PL/pgSQL functions may be declared with ``$$ ... $$``. Semicolons inside
ordinary string literals are not supported.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

MIGRATIONS_ROOT = Path(__file__).with_name("postgres_migrations")
MIGRATIONS_TABLE = "proposal_schema_migrations"
_DOLLAR_QUOTE = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")


class PostgresMigrationError(RuntimeError):
    pass


@dataclass(frozen=True)
class PostgresMigration:
    version: str
    sql_path: Path
    checksum: str


def apply_postgres_migrations(*, connection: Any, namespace: str) -> list[str]:
    lock_key = _migration_lock_key(namespace=namespace)
    connection.execute("SELECT pg_advisory_lock(%s::bigint)", (lock_key,))
    try:
        applied = _apply_migrations_locked(connection=connection, namespace=namespace)
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.execute("SELECT pg_advisory_unlock(%s::bigint)", (lock_key,))
    return applied


def pending_postgres_migrations(*, connection: Any, namespace: str) -> list[str]:
    _ensure_migrations_table(connection=connection)
    applied = _applied_checksums(connection=connection, namespace=namespace)
    pending: list[str] = []
    for migration in _load_migrations(namespace=namespace):
        _verify_checksum(namespace=namespace, migration=migration, applied=applied)
        if migration.version not in applied:
            pending.append(migration.version)
    return pending


def _apply_migrations_locked(*, connection: Any, namespace: str) -> list[str]:
    migrations = _load_migrations(namespace=namespace)
    _ensure_migrations_table(connection=connection)
    applied = _applied_checksums(connection=connection, namespace=namespace)
    newly_applied: list[str] = []
    for migration in migrations:
        _verify_checksum(namespace=namespace, migration=migration, applied=applied)
        if migration.version in applied:
            continue
        _execute_sql_statements(
            connection=connection, sql=migration.sql_path.read_text(encoding="utf-8")
        )
        connection.execute(
            f"""
            INSERT INTO {MIGRATIONS_TABLE} (
                version,
                namespace,
                checksum,
                applied_at
            ) VALUES (%s, %s, %s, %s)
            """,
            (
                _stored_version(namespace=namespace, version=migration.version),
                namespace,
                migration.checksum,
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        newly_applied.append(migration.version)
    connection.commit()
    return newly_applied


def _ensure_migrations_table(*, connection: Any) -> None:
    connection.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
            version TEXT PRIMARY KEY,
            namespace TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )


def _applied_checksums(*, connection: Any, namespace: str) -> dict[str, str]:
    rows = connection.execute(
        f"""
        SELECT version, checksum
        FROM {MIGRATIONS_TABLE}
        WHERE namespace = %s
        ORDER BY version ASC
        """,
        (namespace,),
    ).fetchall()
    applied: dict[str, str] = {}
    for row in rows:
        version = _extract_namespace_version(
            namespace=namespace, stored_version=str(row["version"])
        )
        checksum = str(row["checksum"])
        if applied.get(version, checksum) != checksum:
            raise PostgresMigrationError(
                f"POSTGRES_MIGRATION_CHECKSUM_MISMATCH:{namespace}:{version}"
            )
        applied[version] = checksum
    return applied


def _verify_checksum(
    *, namespace: str, migration: PostgresMigration, applied: dict[str, str]
) -> None:
    existing_checksum = applied.get(migration.version)
    if existing_checksum is not None and existing_checksum != migration.checksum:
        raise PostgresMigrationError(
            f"POSTGRES_MIGRATION_CHECKSUM_MISMATCH:{namespace}:{migration.version}"
        )


def _execute_sql_statements(*, connection: Any, sql: str) -> None:
    for statement in _split_sql_statements(sql):
        connection.execute(statement)


def _split_sql_statements(sql: str) -> list[str]:
    statements: list[str] = []
    open_tag: str | None = None
    start = 0
    index = 0
    while index < len(sql):
        char = sql[index]
        if char == "$":
            match = _DOLLAR_QUOTE.match(sql, index)
            if match is not None:
                tag = match.group(0)
                if open_tag is None:
                    open_tag = tag
                elif tag == open_tag:
                    open_tag = None
                index = match.end()
                continue
        elif char == ";" and open_tag is None:
            statements.append(sql[start:index])
            start = index + 1
        index += 1
    statements.append(sql[start:])
    return [statement.strip() for statement in statements if statement.strip()]


def _load_migrations(*, namespace: str) -> list[PostgresMigration]:
    namespace_path = MIGRATIONS_ROOT / namespace
    if not namespace_path.is_dir():
        raise PostgresMigrationError(f"POSTGRES_MIGRATIONS_NAMESPACE_NOT_FOUND:{namespace}")
    migrations: list[PostgresMigration] = []
    for sql_path in sorted(namespace_path.glob("*.sql")):
        sql = sql_path.read_text(encoding="utf-8")
        migrations.append(
            PostgresMigration(
                version=sql_path.stem.split("_", maxsplit=1)[0],
                sql_path=sql_path,
                checksum=hashlib.sha256(sql.encode("utf-8")).hexdigest(),
            )
        )
    return migrations


def _migration_lock_key(*, namespace: str) -> int:
    digest = hashlib.sha256(f"{MIGRATIONS_TABLE}:{namespace}".encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, byteorder="big", signed=True)


def _stored_version(*, namespace: str, version: str) -> str:
    return f"{namespace}:{version}"


def _extract_namespace_version(*, namespace: str, stored_version: str) -> str:
    prefix = f"{namespace}:"
    if stored_version.startswith(prefix):
        return stored_version[len(prefix) :]
    return stored_version
