import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from proposal_lifecycle.core.proposals.errors import (
    InvalidActionTypeError,
    ProposalValidationError,
)
from proposal_lifecycle.core.proposals.models import AUDIT_ACTION_TYPES, AuditEntryRecord
from proposal_lifecycle.core.proposals.repository import ProposalRepository

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def insert_audit_entry(self, entry: AuditEntryRecord) -> AuditEntryRecord: ...


class AuditRecorder:
    """Append-only writer for the proposal audit trail.

    ``record`` must be called with the open transaction of the mutation it
    describes; an error here is expected to abort that transaction.
    """

    def __init__(
        self,
        *,
        repository: ProposalRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or _utc_now

    def record(
        self,
        sink: AuditSink,
        *,
        actor_id: str,
        action_type: str,
        table_name: str,
        detail: Optional[dict[str, Any]] = None,
        record_id: Optional[int] = None,
    ) -> AuditEntryRecord:
        if action_type not in AUDIT_ACTION_TYPES:
            logger.error(
                "audit.action_type.invalid",
                extra={
                    "extra_fields": {
                        "action_type": action_type,
                        "table_name": table_name,
                        "record_id": record_id,
                    }
                },
            )
            raise InvalidActionTypeError(f"INVALID_AUDIT_ACTION_TYPE: {action_type}")
        if not table_name:
            raise ProposalValidationError("AUDIT_TABLE_NAME_REQUIRED")
        if not actor_id:
            raise ProposalValidationError("AUDIT_ACTOR_REQUIRED")

        entry = AuditEntryRecord(
            actor_id=actor_id,
            action_type=action_type,
            table_name=table_name,
            record_id=record_id,
            detail=_json_safe(detail or {}),
            created_at=self._clock(),
        )
        return sink.insert_audit_entry(entry)

    def list_entries(self, *, table_name: str, record_id: int) -> list[AuditEntryRecord]:
        return self._repository.list_audit_entries(table_name=table_name, record_id=record_id)


def _json_safe(detail: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(detail, sort_keys=True, default=str))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
