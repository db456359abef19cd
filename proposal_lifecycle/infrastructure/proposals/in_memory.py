from contextlib import contextmanager
from copy import deepcopy
from datetime import datetime
from itertools import count
from threading import RLock
from typing import Any, Iterable, Iterator, Optional

from proposal_lifecycle.core.proposals.models import (
    AuditEntryRecord,
    NotificationRecord,
    ProposalRecord,
)
from proposal_lifecycle.core.proposals.repository import ProposalRepository


class _InMemoryProposalTransaction:
    """Writes are staged here and published only when the block exits cleanly."""

    def __init__(self, repository: "InMemoryProposalRepository") -> None:
        self._repository = repository
        self._proposals: dict[int, ProposalRecord] = {}
        self._audit_entries: list[AuditEntryRecord] = []

    def get_proposal(
        self, *, proposal_id: int, for_update: bool = False
    ) -> Optional[ProposalRecord]:
        proposal = self._proposals.get(proposal_id) or self._repository._proposals.get(proposal_id)
        return deepcopy(proposal) if proposal is not None else None

    def insert_proposal(self, proposal: ProposalRecord) -> ProposalRecord:
        stored = proposal.model_copy(
            update={"proposal_id": next(self._repository._proposal_ids)}, deep=True
        )
        self._proposals[stored.proposal_id] = stored
        return deepcopy(stored)

    def compare_and_set_status(self, *, proposal: ProposalRecord, expected_status: str) -> bool:
        current = self.get_proposal(proposal_id=proposal.proposal_id)
        if current is None or current.is_deleted or current.status != expected_status:
            return False
        self._proposals[proposal.proposal_id] = current.model_copy(
            update={
                "status": proposal.status,
                "submitted_at": proposal.submitted_at,
                "reviewed_by": proposal.reviewed_by,
                "reviewed_at": proposal.reviewed_at,
                "review_comment": proposal.review_comment,
                "updated_at": proposal.updated_at,
            }
        )
        return True

    def update_section_fields(
        self,
        *,
        proposal_id: int,
        section: str,
        content: dict[str, Any],
        updated_at: datetime,
    ) -> bool:
        current = self.get_proposal(proposal_id=proposal_id)
        if current is None or current.is_deleted:
            return False
        self._proposals[proposal_id] = current.model_copy(
            update={section: deepcopy(content), "updated_at": updated_at}
        )
        return True

    def mark_deleted(self, *, proposal_id: int, updated_at: datetime) -> bool:
        current = self.get_proposal(proposal_id=proposal_id)
        if current is None or current.is_deleted:
            return False
        self._proposals[proposal_id] = current.model_copy(
            update={"is_deleted": True, "updated_at": updated_at}
        )
        return True

    def insert_audit_entry(self, entry: AuditEntryRecord) -> AuditEntryRecord:
        stored = entry.model_copy(
            update={"audit_id": next(self._repository._audit_ids)}, deep=True
        )
        self._audit_entries.append(stored)
        return deepcopy(stored)

    def _publish(self) -> None:
        self._repository._proposals.update(self._proposals)
        self._repository._audit_entries.extend(self._audit_entries)


class InMemoryProposalRepository(ProposalRepository):
    def __init__(self) -> None:
        self._lock = RLock()
        self._proposal_ids = count(1)
        self._audit_ids = count(1)
        self._notification_ids = count(1)
        self._proposals: dict[int, ProposalRecord] = {}
        self._audit_entries: list[AuditEntryRecord] = []
        self._notifications: dict[int, NotificationRecord] = {}
        self._notification_keys: dict[tuple[Optional[int], str, str, str], int] = {}
        self._actors: dict[str, str] = {}

    @contextmanager
    def transaction(self) -> Iterator[_InMemoryProposalTransaction]:
        with self._lock:
            transaction = _InMemoryProposalTransaction(self)
            yield transaction
            transaction._publish()

    def get_proposal(self, *, proposal_id: int) -> Optional[ProposalRecord]:
        with self._lock:
            proposal = self._proposals.get(proposal_id)
            return deepcopy(proposal) if proposal is not None else None

    def get_proposal_by_uuid(self, *, proposal_uuid: str) -> Optional[ProposalRecord]:
        with self._lock:
            for proposal in self._proposals.values():
                if proposal.proposal_uuid == proposal_uuid:
                    return deepcopy(proposal)
        return None

    def list_proposals(
        self,
        *,
        owner_id: Optional[str],
        status: Optional[str],
        limit: int,
        cursor: Optional[int],
    ) -> tuple[list[ProposalRecord], Optional[int]]:
        with self._lock:
            rows = [row for row in self._proposals.values() if not row.is_deleted]

        rows = sorted(rows, key=lambda x: x.proposal_id, reverse=True)
        if owner_id is not None:
            rows = [row for row in rows if row.owner_id == owner_id]
        if status is not None:
            rows = [row for row in rows if row.status == status]
        if cursor is not None:
            rows = [row for row in rows if row.proposal_id < cursor]

        page = rows[:limit]
        next_cursor = page[-1].proposal_id if len(rows) > limit else None
        return [deepcopy(row) for row in page], next_cursor

    def list_audit_entries(self, *, table_name: str, record_id: int) -> list[AuditEntryRecord]:
        with self._lock:
            return [
                deepcopy(entry)
                for entry in self._audit_entries
                if entry.table_name == table_name and entry.record_id == record_id
            ]

    def insert_notification(self, notification: NotificationRecord) -> bool:
        with self._lock:
            if notification.dedup_key in self._notification_keys:
                return False
            stored = notification.model_copy(
                update={"notification_id": next(self._notification_ids)}, deep=True
            )
            self._notifications[stored.notification_id] = stored
            self._notification_keys[stored.dedup_key] = stored.notification_id
            return True

    def get_notification(self, *, notification_id: int) -> Optional[NotificationRecord]:
        with self._lock:
            notification = self._notifications.get(notification_id)
            return deepcopy(notification) if notification is not None else None

    def list_notifications(
        self, *, recipient_id: str, unread_only: bool = False
    ) -> list[NotificationRecord]:
        with self._lock:
            rows = [
                deepcopy(notification)
                for notification in self._notifications.values()
                if notification.recipient_id == recipient_id
                and not (unread_only and notification.is_read)
            ]
        return sorted(rows, key=lambda x: (x.created_at, x.notification_id), reverse=True)

    def mark_notification_read(
        self, *, notification_id: int, recipient_id: str, read_at: datetime
    ) -> Optional[NotificationRecord]:
        with self._lock:
            notification = self._notifications.get(notification_id)
            if notification is None or notification.recipient_id != recipient_id:
                return None
            if not notification.is_read:
                notification = notification.model_copy(
                    update={"is_read": True, "read_at": read_at}
                )
                self._notifications[notification_id] = notification
            return deepcopy(notification)

    def mark_all_notifications_read(self, *, recipient_id: str, read_at: datetime) -> int:
        updated = 0
        with self._lock:
            for notification_id, notification in self._notifications.items():
                if notification.recipient_id != recipient_id or notification.is_read:
                    continue
                self._notifications[notification_id] = notification.model_copy(
                    update={"is_read": True, "read_at": read_at}
                )
                updated += 1
        return updated

    def upsert_actor(self, *, actor_id: str, role: str) -> None:
        with self._lock:
            self._actors[actor_id] = role

    def list_actor_ids_by_roles(self, *, roles: Iterable[str]) -> list[str]:
        wanted = set(roles)
        with self._lock:
            return sorted(actor_id for actor_id, role in self._actors.items() if role in wanted)
