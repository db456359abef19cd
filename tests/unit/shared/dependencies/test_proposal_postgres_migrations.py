from pathlib import Path

import pytest

import proposal_lifecycle.infrastructure.postgres_migrations as migrations_module
from proposal_lifecycle.infrastructure.postgres_migrations import (
    PostgresMigration,
    PostgresMigrationError,
    _migration_lock_key,
    _split_sql_statements,
    apply_postgres_migrations,
    pending_postgres_migrations,
)


class _FakeCursor:
    def __init__(self, rows=None):
        self._rows = rows or []

    def fetchall(self):
        return list(self._rows)


class _FakeConnection:
    def __init__(self):
        self.schema_migrations: dict[tuple[str, str], str] = {}
        self.applied_statements: list[str] = []
        self.commit_count = 0
        self.rollback_count = 0
        self.lock_calls: list[int] = []
        self.unlock_calls: list[int] = []

    def execute(self, query, args=None):
        sql = " ".join(str(query).split())
        if sql == "SELECT pg_advisory_lock(%s::bigint)":
            self.lock_calls.append(int(args[0]))
            return _FakeCursor()
        if sql == "SELECT pg_advisory_unlock(%s::bigint)":
            self.unlock_calls.append(int(args[0]))
            return _FakeCursor()
        if sql.startswith("CREATE TABLE IF NOT EXISTS proposal_schema_migrations"):
            return _FakeCursor()
        if "FROM proposal_schema_migrations" in sql:
            rows = [
                {"version": version, "checksum": checksum}
                for (stored_namespace, version), checksum in self.schema_migrations.items()
                if stored_namespace == args[0]
            ]
            return _FakeCursor(rows=sorted(rows, key=lambda row: row["version"]))
        if "INSERT INTO proposal_schema_migrations" in sql:
            self.schema_migrations[(args[1], args[0])] = args[2]
            return _FakeCursor()
        self.applied_statements.append(sql)
        return _FakeCursor()

    def commit(self):
        self.commit_count += 1

    def rollback(self):
        self.rollback_count += 1


def test_proposal_migrations_are_forward_only_and_idempotent():
    connection = _FakeConnection()

    assert pending_postgres_migrations(connection=connection, namespace="proposals") == [
        "0001",
        "0002",
    ]
    assert apply_postgres_migrations(connection=connection, namespace="proposals") == [
        "0001",
        "0002",
    ]
    first_count = len(connection.applied_statements)
    assert first_count > 0
    assert ("proposals", "proposals:0001") in connection.schema_migrations
    assert ("proposals", "proposals:0002") in connection.schema_migrations
    assert connection.commit_count == 1
    assert connection.lock_calls == [_migration_lock_key(namespace="proposals")]
    assert connection.unlock_calls == [_migration_lock_key(namespace="proposals")]

    assert apply_postgres_migrations(connection=connection, namespace="proposals") == []
    assert len(connection.applied_statements) == first_count
    assert connection.commit_count == 2
    assert pending_postgres_migrations(connection=connection, namespace="proposals") == []


def test_proposal_migration_statements_are_split_without_empty_fragments():
    connection = _FakeConnection()
    apply_postgres_migrations(connection=connection, namespace="proposals")

    assert all(statement for statement in connection.applied_statements)
    (function_body,) = [
        statement
        for statement in connection.applied_statements
        if statement.startswith("CREATE OR REPLACE FUNCTION proposal_audit_log_reject_mutation")
    ]
    assert "RAISE EXCEPTION 'proposal_audit_log is append-only'" in function_body
    assert function_body.endswith("END; $$")
    assert (
        "CREATE TRIGGER proposal_audit_log_append_only"
        " BEFORE UPDATE OR DELETE ON proposal_audit_log"
        " FOR EACH ROW EXECUTE FUNCTION proposal_audit_log_reject_mutation()"
    ) in connection.applied_statements


def test_dollar_quoted_bodies_keep_their_semicolons():
    sql = (
        "CREATE TABLE a (id INT);\n"
        "CREATE FUNCTION f() RETURNS trigger LANGUAGE plpgsql AS $body$\n"
        "BEGIN RAISE EXCEPTION 'no'; END;\n"
        "$body$;\n"
        ";\n"
        "SELECT $1::text;"
    )

    statements = _split_sql_statements(sql)

    assert statements == [
        "CREATE TABLE a (id INT)",
        "CREATE FUNCTION f() RETURNS trigger LANGUAGE plpgsql AS $body$\n"
        "BEGIN RAISE EXCEPTION 'no'; END;\n"
        "$body$",
        "SELECT $1::text",
    ]


def test_checksum_mismatch_is_rejected_and_rolled_back(monkeypatch, tmp_path: Path):
    sql_path = tmp_path / "0001_test.sql"
    sql_path.write_text("CREATE TABLE IF NOT EXISTS sample_table (id TEXT PRIMARY KEY);")
    migration = PostgresMigration(version="0001", sql_path=sql_path, checksum="checksum-new")
    monkeypatch.setattr(migrations_module, "_load_migrations", lambda namespace: [migration])

    connection = _FakeConnection()
    connection.schema_migrations[("custom", "custom:0001")] = "checksum-old"

    with pytest.raises(PostgresMigrationError) as exc:
        apply_postgres_migrations(connection=connection, namespace="custom")
    assert str(exc.value) == "POSTGRES_MIGRATION_CHECKSUM_MISMATCH:custom:0001"
    assert connection.rollback_count == 1
    assert connection.applied_statements == []
    assert connection.unlock_calls == [_migration_lock_key(namespace="custom")]

    with pytest.raises(PostgresMigrationError):
        pending_postgres_migrations(connection=connection, namespace="custom")


def test_unknown_namespace_is_rejected():
    connection = _FakeConnection()
    with pytest.raises(PostgresMigrationError, match="NAMESPACE_NOT_FOUND:missing"):
        apply_postgres_migrations(connection=connection, namespace="missing")
    assert connection.unlock_calls == [_migration_lock_key(namespace="missing")]


def test_migration_lock_key_is_stable_and_namespace_scoped():
    assert _migration_lock_key(namespace="proposals") == _migration_lock_key(
        namespace="proposals"
    )
    assert _migration_lock_key(namespace="proposals") != _migration_lock_key(namespace="audit")
