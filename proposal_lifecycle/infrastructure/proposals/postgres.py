from contextlib import closing, contextmanager
from datetime import datetime, timezone
from importlib.util import find_spec
from typing import Any, Iterable, Iterator, Optional

from proposal_lifecycle.core.proposals.models import (
    AuditEntryRecord,
    NotificationRecord,
    ProposalRecord,
)
from proposal_lifecycle.infrastructure.postgres_migrations import apply_postgres_migrations
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


class _PostgresProposalTransaction:
    def __init__(self, connection) -> None:
        self._connection = connection

    def get_proposal(
        self, *, proposal_id: int, for_update: bool = False
    ) -> Optional[ProposalRecord]:
        query = f"SELECT {PROPOSAL_COLUMNS} FROM proposals WHERE proposal_id = %s"
        if for_update:
            query += " FOR UPDATE"
        row = self._connection.execute(query, (proposal_id,)).fetchone()
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
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING proposal_id
        """
        row = self._connection.execute(
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
                proposal.is_deleted,
            ),
        ).fetchone()
        return proposal.model_copy(update={"proposal_id": int(row["proposal_id"])})

    def compare_and_set_status(self, *, proposal: ProposalRecord, expected_status: str) -> bool:
        query = """
            UPDATE proposals SET
                status = %s,
                submitted_at = %s,
                reviewed_by = %s,
                reviewed_at = %s,
                review_comment = %s,
                updated_at = %s
            WHERE proposal_id = %s AND status = %s AND is_deleted = FALSE
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
                {section_column(section)} = %s,
                updated_at = %s
            WHERE proposal_id = %s AND is_deleted = FALSE
        """
        cursor = self._connection.execute(
            query, (json_dump(content), updated_at.isoformat(), proposal_id)
        )
        return cursor.rowcount == 1

    def mark_deleted(self, *, proposal_id: int, updated_at: datetime) -> bool:
        cursor = self._connection.execute(
            """
            UPDATE proposals SET is_deleted = TRUE, updated_at = %s
            WHERE proposal_id = %s AND is_deleted = FALSE
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
            ) VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING audit_id
        """
        row = self._connection.execute(
            query,
            (
                entry.actor_id,
                entry.action_type,
                entry.table_name,
                entry.record_id,
                json_dump(entry.detail),
                entry.created_at.isoformat(),
            ),
        ).fetchone()
        return entry.model_copy(update={"audit_id": int(row["audit_id"])})


class PostgresProposalRepository:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("PROPOSAL_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("PROPOSAL_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    @contextmanager
    def transaction(self) -> Iterator[_PostgresProposalTransaction]:
        with closing(self._connect()) as connection:
            try:
                yield _PostgresProposalTransaction(connection)
            except Exception:
                connection.rollback()
                raise
            connection.commit()

    def get_proposal(self, *, proposal_id: int) -> Optional[ProposalRecord]:
        with closing(self._connect()) as connection:
            row = connection.execute(
                f"SELECT {PROPOSAL_COLUMNS} FROM proposals WHERE proposal_id = %s",
                (proposal_id,),
            ).fetchone()
        return to_proposal(row)

    def get_proposal_by_uuid(self, *, proposal_uuid: str) -> Optional[ProposalRecord]:
        with closing(self._connect()) as connection:
            row = connection.execute(
                f"SELECT {PROPOSAL_COLUMNS} FROM proposals WHERE proposal_uuid = %s",
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
        query = f"SELECT {PROPOSAL_COLUMNS} FROM proposals WHERE is_deleted = FALSE"
        args: list[Any] = []
        if owner_id is not None:
            query += " AND owner_id = %s"
            args.append(owner_id)
        if status is not None:
            query += " AND status = %s"
            args.append(status)
        if cursor is not None:
            query += " AND proposal_id < %s"
            args.append(cursor)
        query += " ORDER BY proposal_id DESC LIMIT %s"
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
            WHERE table_name = %s AND record_id = %s
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
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT ON CONSTRAINT uq_proposal_notifications_delivery DO NOTHING
        """
        with closing(self._connect()) as connection:
            cursor = connection.execute(
                query,
                (
                    notification.notification_uuid,
                    notification.recipient_id,
                    notification.sender_id,
                    notification.notification_type,
                    notification.message,
                    notification.is_read,
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
                "WHERE notification_id = %s",
                (notification_id,),
            ).fetchone()
        return to_notification(row)

    def list_notifications(
        self, *, recipient_id: str, unread_only: bool = False
    ) -> list[NotificationRecord]:
        query = f"""
            SELECT {NOTIFICATION_COLUMNS}
            FROM proposal_notifications
            WHERE recipient_id = %s
        """
        if unread_only:
            query += " AND is_read = FALSE"
        query += " ORDER BY created_at DESC, notification_id DESC"
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (recipient_id,)).fetchall()
        return [to_notification(row) for row in rows]

    def mark_notification_read(
        self, *, notification_id: int, recipient_id: str, read_at: datetime
    ) -> Optional[NotificationRecord]:
        with closing(self._connect()) as connection:
            connection.execute(
                """
                UPDATE proposal_notifications SET is_read = TRUE, read_at = %s
                WHERE notification_id = %s AND recipient_id = %s AND is_read = FALSE
                """,
                (read_at.isoformat(), notification_id, recipient_id),
            )
            row = connection.execute(
                f"SELECT {NOTIFICATION_COLUMNS} FROM proposal_notifications "
                "WHERE notification_id = %s AND recipient_id = %s",
                (notification_id, recipient_id),
            ).fetchone()
            connection.commit()
        return to_notification(row)

    def mark_all_notifications_read(self, *, recipient_id: str, read_at: datetime) -> int:
        with closing(self._connect()) as connection:
            cursor = connection.execute(
                """
                UPDATE proposal_notifications SET is_read = TRUE, read_at = %s
                WHERE recipient_id = %s AND is_read = FALSE
                """,
                (read_at.isoformat(), recipient_id),
            )
            connection.commit()
        return cursor.rowcount

    def upsert_actor(self, *, actor_id: str, role: str) -> None:
        query = """
            INSERT INTO proposal_actors (actor_id, role, updated_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (actor_id) DO UPDATE SET
                role=excluded.role,
                updated_at=excluded.updated_at
        """
        with closing(self._connect()) as connection:
            connection.execute(query, (actor_id, role, datetime.now(timezone.utc).isoformat()))
            connection.commit()

    def list_actor_ids_by_roles(self, *, roles: Iterable[str]) -> list[str]:
        query = """
            SELECT actor_id
            FROM proposal_actors
            WHERE role = ANY(%s)
            ORDER BY actor_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (sorted(set(roles)),)).fetchall()
        return [row["actor_id"] for row in rows]

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace="proposals")


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row
