import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, Iterator, Optional

from proposal_lifecycle.core.proposals.models import (
    AuditEntryRecord,
    NotificationRecord,
    ProposalRecord,
)
from proposal_lifecycle.core.proposals.repository import ProposalRepository
from proposal_lifecycle.infrastructure.proposals.rows import (
    AUDIT_COLUMNS,
    NOTIFICATION_COLUMNS,
    PROPOSAL_COLUMNS,
    json_dump,
    optional_iso,
    optional_json,
    section_column,
    to_audit_entry,
    to_notification,
    to_proposal,
)


class _SqliteProposalTransaction:
    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def get_proposal(
        self, *, proposal_id: int, for_update: bool = False
    ) -> Optional[ProposalRecord]:
        # BEGIN IMMEDIATE already holds the database write lock
        row = self._connection.execute(
            f"SELECT {PROPOSAL_COLUMNS} FROM proposals WHERE proposal_id = ?",
            (proposal_id,),
        ).fetchone()
        return to_proposal(row)

    def insert_proposal(self, proposal: ProposalRecord) -> ProposalRecord:
        query = """
            INSERT INTO proposals (
                proposal_uuid,
                owner_id,
                status,
                organization_json,
                event_json,
                files_json,
                reporting_json,
                created_at,
                updated_at,
                submitted_at,
                reviewed_by,
                reviewed_at,
                review_comment,
                is_deleted
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        cursor = self._connection.execute(
            query,
            (
                proposal.proposal_uuid,
                proposal.owner_id,
                proposal.status,
                optional_json(proposal.organization),
                optional_json(proposal.event),
                optional_json(proposal.files),
                optional_json(proposal.reporting),
                proposal.created_at.isoformat(),
                proposal.updated_at.isoformat(),
                optional_iso(proposal.submitted_at),
                proposal.reviewed_by,
                optional_iso(proposal.reviewed_at),
                proposal.review_comment,
                int(proposal.is_deleted),
            ),
        )
        return proposal.model_copy(update={"proposal_id": cursor.lastrowid})

    def compare_and_set_status(self, *, proposal: ProposalRecord, expected_status: str) -> bool:
        query = """
            UPDATE proposals SET
                status = ?,
                submitted_at = ?,
                reviewed_by = ?,
                reviewed_at = ?,
                review_comment = ?,
                updated_at = ?
            WHERE proposal_id = ? AND status = ? AND is_deleted = 0
        """
        cursor = self._connection.execute(
            query,
            (
                proposal.status,
                optional_iso(proposal.submitted_at),
                proposal.reviewed_by,
                optional_iso(proposal.reviewed_at),
                proposal.review_comment,
                proposal.updated_at.isoformat(),
                proposal.proposal_id,
                expected_status,
            ),
        )
        return cursor.rowcount == 1

    def update_section_fields(
        self,
        *,
        proposal_id: int,
        section: str,
        content: dict[str, Any],
        updated_at: datetime,
    ) -> bool:
        query = f"""
            UPDATE proposals SET
                {section_column(section)} = ?,
                updated_at = ?
            WHERE proposal_id = ? AND is_deleted = 0
        """
        cursor = self._connection.execute(
            query, (json_dump(content), updated_at.isoformat(), proposal_id)
        )
        return cursor.rowcount == 1

    def mark_deleted(self, *, proposal_id: int, updated_at: datetime) -> bool:
        cursor = self._connection.execute(
            """
            UPDATE proposals SET is_deleted = 1, updated_at = ?
            WHERE proposal_id = ? AND is_deleted = 0
            """,
            (updated_at.isoformat(), proposal_id),
        )
        return cursor.rowcount == 1

    def insert_audit_entry(self, entry: AuditEntryRecord) -> AuditEntryRecord:
        query = """
            INSERT INTO proposal_audit_log (
                actor_id,
                action_type,
                table_name,
                record_id,
                detail_json,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
        """
        cursor = self._connection.execute(
            query,
            (
                entry.actor_id,
                entry.action_type,
                entry.table_name,
                entry.record_id,
                json_dump(entry.detail),
                entry.created_at.isoformat(),
            ),
        )
        return entry.model_copy(update={"audit_id": cursor.lastrowid})


class SqliteProposalRepository(ProposalRepository):
    def __init__(self, *, database_path: str) -> None:
        self._lock = Lock()
        self._database_path = database_path
        self._init_db()

    @contextmanager
    def transaction(self) -> Iterator[_SqliteProposalTransaction]:
        with self._lock, closing(self._connect()) as connection:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield _SqliteProposalTransaction(connection)
            except Exception:
                connection.execute("ROLLBACK")
                raise
            connection.execute("COMMIT")

    def get_proposal(self, *, proposal_id: int) -> Optional[ProposalRecord]:
        with closing(self._connect()) as connection:
            row = connection.execute(
                f"SELECT {PROPOSAL_COLUMNS} FROM proposals WHERE proposal_id = ?",
                (proposal_id,),
            ).fetchone()
        return to_proposal(row)

    def get_proposal_by_uuid(self, *, proposal_uuid: str) -> Optional[ProposalRecord]:
        with closing(self._connect()) as connection:
            row = connection.execute(
                f"SELECT {PROPOSAL_COLUMNS} FROM proposals WHERE proposal_uuid = ?",
                (proposal_uuid,),
            ).fetchone()
        return to_proposal(row)

    def list_proposals(
        self,
        *,
        owner_id: Optional[str],
        status: Optional[str],
        limit: int,
        cursor: Optional[int],
    ) -> tuple[list[ProposalRecord], Optional[int]]:
        query = f"SELECT {PROPOSAL_COLUMNS} FROM proposals WHERE is_deleted = 0"
        args: list[Any] = []
        if owner_id is not None:
            query += " AND owner_id = ?"
            args.append(owner_id)
        if status is not None:
            query += " AND status = ?"
            args.append(status)
        if cursor is not None:
            query += " AND proposal_id < ?"
            args.append(cursor)
        query += " ORDER BY proposal_id DESC LIMIT ?"
        args.append(limit + 1)
        with closing(self._connect()) as connection:
            rows = connection.execute(query, args).fetchall()
        proposals = [to_proposal(row) for row in rows]
        page = proposals[:limit]
        next_cursor = page[-1].proposal_id if len(proposals) > limit else None
        return page, next_cursor

    def list_audit_entries(self, *, table_name: str, record_id: int) -> list[AuditEntryRecord]:
        query = f"""
            SELECT {AUDIT_COLUMNS}
            FROM proposal_audit_log
            WHERE table_name = ? AND record_id = ?
            ORDER BY audit_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (table_name, record_id)).fetchall()
        return [to_audit_entry(row) for row in rows]

    def insert_notification(self, notification: NotificationRecord) -> bool:
        query = """
            INSERT INTO proposal_notifications (
                notification_uuid,
                recipient_id,
                sender_id,
                notification_type,
                message,
                is_read,
                read_at,
                related_proposal_id,
                related_proposal_uuid,
                transition_key,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (
                related_proposal_id, notification_type, recipient_id, transition_key
            ) DO NOTHING
        """
        with self._lock, closing(self._connect()) as connection:
            cursor = connection.execute(
                query,
                (
                    notification.notification_uuid,
                    notification.recipient_id,
                    notification.sender_id,
                    notification.notification_type,
                    notification.message,
                    int(notification.is_read),
                    optional_iso(notification.read_at),
                    notification.related_proposal_id,
                    notification.related_proposal_uuid,
                    notification.transition_key,
                    notification.created_at.isoformat(),
                ),
            )
            connection.commit()
            return cursor.rowcount == 1

    def get_notification(self, *, notification_id: int) -> Optional[NotificationRecord]:
        with closing(self._connect()) as connection:
            row = connection.execute(
                f"SELECT {NOTIFICATION_COLUMNS} FROM proposal_notifications "
                "WHERE notification_id = ?",
                (notification_id,),
            ).fetchone()
        return to_notification(row)

    def list_notifications(
        self, *, recipient_id: str, unread_only: bool = False
    ) -> list[NotificationRecord]:
        query = f"""
            SELECT {NOTIFICATION_COLUMNS}
            FROM proposal_notifications
            WHERE recipient_id = ?
        """
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC, notification_id DESC"
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (recipient_id,)).fetchall()
        return [to_notification(row) for row in rows]

    def mark_notification_read(
        self, *, notification_id: int, recipient_id: str, read_at: datetime
    ) -> Optional[NotificationRecord]:
        with self._lock, closing(self._connect()) as connection:
            connection.execute(
                """
                UPDATE proposal_notifications SET is_read = 1, read_at = ?
                WHERE notification_id = ? AND recipient_id = ? AND is_read = 0
                """,
                (read_at.isoformat(), notification_id, recipient_id),
            )
            connection.commit()
            row = connection.execute(
                f"SELECT {NOTIFICATION_COLUMNS} FROM proposal_notifications "
                "WHERE notification_id = ? AND recipient_id = ?",
                (notification_id, recipient_id),
            ).fetchone()
        return to_notification(row)

    def mark_all_notifications_read(self, *, recipient_id: str, read_at: datetime) -> int:
        with self._lock, closing(self._connect()) as connection:
            cursor = connection.execute(
                """
                UPDATE proposal_notifications SET is_read = 1, read_at = ?
                WHERE recipient_id = ? AND is_read = 0
                """,
                (read_at.isoformat(), recipient_id),
            )
            connection.commit()
            return cursor.rowcount

    def upsert_actor(self, *, actor_id: str, role: str) -> None:
        query = """
            INSERT INTO proposal_actors (actor_id, role, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(actor_id) DO UPDATE SET
                role=excluded.role,
                updated_at=excluded.updated_at
        """
        with self._lock, closing(self._connect()) as connection:
            connection.execute(query, (actor_id, role, datetime.now(timezone.utc).isoformat()))
            connection.commit()

    def list_actor_ids_by_roles(self, *, roles: Iterable[str]) -> list[str]:
        wanted = sorted(set(roles))
        if not wanted:
            return []
        placeholders = ", ".join("?" for _ in wanted)
        query = (
            f"SELECT actor_id FROM proposal_actors WHERE role IN ({placeholders}) "
            "ORDER BY actor_id ASC"
        )
        with closing(self._connect()) as connection:
            rows = connection.execute(query, wanted).fetchall()
        return [row["actor_id"] for row in rows]

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._database_path, timeout=30.0, isolation_level=None)
        connection.row_factory = sqlite3.Row
        return connection

    def _init_db(self) -> None:
        Path(self._database_path).parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as connection:
            connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS proposals (
                    proposal_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    proposal_uuid TEXT NOT NULL UNIQUE,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL CHECK (
                        status IN ('draft', 'pending', 'approved', 'rejected', 'reporting')
                    ),
                    organization_json TEXT NULL,
                    event_json TEXT NULL,
                    files_json TEXT NULL,
                    reporting_json TEXT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    submitted_at TEXT NULL,
                    reviewed_by TEXT NULL,
                    reviewed_at TEXT NULL,
                    review_comment TEXT NULL,
                    is_deleted INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS proposal_audit_log (
                    audit_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    actor_id TEXT NOT NULL,
                    action_type TEXT NOT NULL CHECK (
                        action_type IN (
                            'CREATE', 'UPDATE', 'DELETE', 'APPROVE', 'REJECT',
                            'LOGIN', 'LOGOUT', 'VIEW', 'EXPORT'
                        )
                    ),
                    table_name TEXT NOT NULL,
                    record_id INTEGER NULL,
                    detail_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TRIGGER IF NOT EXISTS proposal_audit_log_no_update
                BEFORE UPDATE ON proposal_audit_log
                BEGIN
                    SELECT RAISE(ABORT, 'proposal_audit_log is append-only');
                END;

                CREATE TRIGGER IF NOT EXISTS proposal_audit_log_no_delete
                BEFORE DELETE ON proposal_audit_log
                BEGIN
                    SELECT RAISE(ABORT, 'proposal_audit_log is append-only');
                END;

                CREATE TABLE IF NOT EXISTS proposal_notifications (
                    notification_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    notification_uuid TEXT NOT NULL UNIQUE,
                    recipient_id TEXT NOT NULL,
                    sender_id TEXT NULL,
                    notification_type TEXT NOT NULL,
                    message TEXT NOT NULL,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    read_at TEXT NULL,
                    related_proposal_id INTEGER NULL REFERENCES proposals (proposal_id),
                    related_proposal_uuid TEXT NULL,
                    transition_key TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (related_proposal_id, notification_type, recipient_id, transition_key)
                );

                CREATE TABLE IF NOT EXISTS proposal_actors (
                    actor_id TEXT PRIMARY KEY,
                    role TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
