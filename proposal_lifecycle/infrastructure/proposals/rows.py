import json
from datetime import datetime
from typing import Any, Optional

from proposal_lifecycle.core.proposals.models import (
    AuditEntryRecord,
    NotificationRecord,
    ProposalRecord,
)

PROPOSAL_COLUMNS = """
    proposal_id,
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
"""

AUDIT_COLUMNS = """
    audit_id,
    actor_id,
    action_type,
    table_name,
    record_id,
    detail_json,
    created_at
"""

NOTIFICATION_COLUMNS = """
    notification_id,
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
"""


def section_column(section: str) -> str:
    if section not in {"organization", "event", "files", "reporting"}:
        raise ValueError(f"unknown proposal section: {section}")
    return f"{section}_json"


def to_proposal(row) -> Optional[ProposalRecord]:
    if row is None:
        return None
    return ProposalRecord(
        proposal_id=int(row["proposal_id"]),
        proposal_uuid=row["proposal_uuid"],
        owner_id=row["owner_id"],
        status=row["status"],
        organization=optional_load_json(row["organization_json"]),
        event=optional_load_json(row["event_json"]),
        files=optional_load_json(row["files_json"]),
        reporting=optional_load_json(row["reporting_json"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        submitted_at=optional_datetime(row["submitted_at"]),
        reviewed_by=row["reviewed_by"],
        reviewed_at=optional_datetime(row["reviewed_at"]),
        review_comment=row["review_comment"],
        is_deleted=bool(row["is_deleted"]),
    )


def to_audit_entry(row) -> AuditEntryRecord:
    return AuditEntryRecord(
        audit_id=int(row["audit_id"]),
        actor_id=row["actor_id"],
        action_type=row["action_type"],
        table_name=row["table_name"],
        record_id=row["record_id"],
        detail=json.loads(row["detail_json"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def to_notification(row) -> Optional[NotificationRecord]:
    if row is None:
        return None
    return NotificationRecord(
        notification_id=int(row["notification_id"]),
        notification_uuid=row["notification_uuid"],
        recipient_id=row["recipient_id"],
        sender_id=row["sender_id"],
        notification_type=row["notification_type"],
        message=row["message"],
        is_read=bool(row["is_read"]),
        read_at=optional_datetime(row["read_at"]),
        related_proposal_id=row["related_proposal_id"],
        related_proposal_uuid=row["related_proposal_uuid"],
        transition_key=row["transition_key"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def json_dump(value: dict[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def optional_json(value: Optional[dict[str, Any]]) -> Optional[str]:
    if value is None:
        return None
    return json_dump(value)


def optional_load_json(value: Optional[str]) -> Optional[dict[str, Any]]:
    if value is None:
        return None
    return json.loads(value)


def optional_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)
