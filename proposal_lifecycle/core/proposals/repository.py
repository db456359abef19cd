from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from proposal_lifecycle.core.proposals.models import (
    AuditEntryRecord,
    NotificationRecord,
    ProposalRecord,
)


class ProposalTransaction(Protocol):
    def get_proposal(
        self, *, proposal_id: int, for_update: bool = False
    ) -> Optional[ProposalRecord]: ...

    def insert_proposal(self, proposal: ProposalRecord) -> ProposalRecord: ...

    def compare_and_set_status(self, *, proposal: ProposalRecord, expected_status: str) -> bool: ...

    def update_section_fields(
        self,
        *,
        proposal_id: int,
        section: str,
        content: dict[str, Any],
        updated_at: datetime,
    ) -> bool: ...

    def mark_deleted(self, *, proposal_id: int, updated_at: datetime) -> bool: ...

    def insert_audit_entry(self, entry: AuditEntryRecord) -> AuditEntryRecord: ...


class ProposalRepository(Protocol):
    def transaction(self) -> AbstractContextManager[ProposalTransaction]: ...

    def get_proposal(self, *, proposal_id: int) -> Optional[ProposalRecord]: ...

    def get_proposal_by_uuid(self, *, proposal_uuid: str) -> Optional[ProposalRecord]: ...

    def list_proposals(
        self,
        *,
        owner_id: Optional[str],
        status: Optional[str],
        limit: int,
        cursor: Optional[int],
    ) -> tuple[list[ProposalRecord], Optional[int]]: ...

    def list_audit_entries(self, *, table_name: str, record_id: int) -> list[AuditEntryRecord]: ...

    def insert_notification(self, notification: NotificationRecord) -> bool: ...

    def get_notification(self, *, notification_id: int) -> Optional[NotificationRecord]: ...

    def list_notifications(
        self, *, recipient_id: str, unread_only: bool = False
    ) -> list[NotificationRecord]: ...

    def mark_notification_read(
        self, *, notification_id: int, recipient_id: str, read_at: datetime
    ) -> Optional[NotificationRecord]: ...

    def mark_all_notifications_read(self, *, recipient_id: str, read_at: datetime) -> int: ...

    def upsert_actor(self, *, actor_id: str, role: str) -> None: ...

    def list_actor_ids_by_roles(self, *, roles: Iterable[str]) -> list[str]: ...
