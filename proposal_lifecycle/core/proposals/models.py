from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator

ProposalStatus = Literal["draft", "pending", "approved", "rejected", "reporting"]
ProposalSection = Literal["organization", "event", "files", "reporting"]
ActorRole = Literal["student", "partner", "admin", "head_admin", "reviewer", "manager"]
AuditActionType = Literal[
    "CREATE",
    "UPDATE",
    "DELETE",
    "APPROVE",
    "REJECT",
    "LOGIN",
    "LOGOUT",
    "VIEW",
    "EXPORT",
]
NotificationType = Literal["proposal_submitted", "proposal_status_change"]
NotificationDelivery = Literal["DELIVERED", "DEFERRED", "FAILED", "NO_RECIPIENTS"]

PROPOSAL_STATUSES: frozenset[str] = frozenset(get_args(ProposalStatus))
PROPOSAL_SECTIONS: tuple[str, ...] = get_args(ProposalSection)
AUDIT_ACTION_TYPES: frozenset[str] = frozenset(get_args(AuditActionType))
NOTIFICATION_TYPES: frozenset[str] = frozenset(get_args(NotificationType))

OWNER_ROLES: frozenset[str] = frozenset({"student", "partner"})
REVIEWER_ROLES: frozenset[str] = frozenset({"admin", "head_admin", "reviewer"})

PROPOSALS_TABLE = "proposals"


class Caller(BaseModel):
    model_config = ConfigDict(frozen=True)

    actor_id: str = Field(description="Resolved actor identifier.", examples=["student_17"])
    role: ActorRole = Field(description="Resolved actor role.", examples=["student"])

    @property
    def is_owner_role(self) -> bool:
        return self.role in OWNER_ROLES

    @property
    def is_reviewer_role(self) -> bool:
        return self.role in REVIEWER_ROLES


class OrganizationSectionUpdate(BaseModel):
    organization_name: Optional[str] = Field(default=None, max_length=255)
    organization_type: Optional[Literal["school-based", "community-based"]] = None
    organization_description: Optional[str] = None
    contact_name: Optional[str] = Field(default=None, max_length=255)
    contact_email: Optional[str] = Field(default=None, max_length=255)
    contact_phone: Optional[str] = Field(default=None, max_length=20)

    @field_validator("contact_email")
    @classmethod
    def _email_has_domain(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and "@" not in value:
            raise ValueError("contact_email must contain '@'")
        return value


class EventSectionUpdate(BaseModel):
    event_name: Optional[str] = Field(default=None, max_length=255)
    event_venue: Optional[str] = Field(default=None, max_length=500)
    event_start_date: Optional[date] = None
    event_end_date: Optional[date] = None
    event_start_time: Optional[str] = None
    event_end_time: Optional[str] = None
    event_mode: Optional[Literal["offline", "online", "hybrid"]] = None
    school_event_type: Optional[
        Literal[
            "academic-enhancement",
            "workshop-seminar-webinar",
            "conference",
            "competition",
            "cultural-show",
            "sports-fest",
            "other",
        ]
    ] = None
    school_return_service_credit: Optional[Literal["1", "2", "3", "Not Applicable"]] = None
    school_target_audience: Optional[List[str]] = None
    community_event_type: Optional[
        Literal[
            "academic-enhancement",
            "seminar-webinar",
            "general-assembly",
            "leadership-training",
            "others",
        ]
    ] = None
    community_sdp_credits: Optional[Literal["1", "2"]] = None
    community_target_audience: Optional[List[str]] = None


class FilesSectionUpdate(BaseModel):
    gpoa_file_name: Optional[str] = None
    gpoa_file_path: Optional[str] = None
    proposal_file_name: Optional[str] = None
    proposal_file_path: Optional[str] = None


class ReportingSectionUpdate(BaseModel):
    event_status: Optional[Literal["completed", "cancelled", "postponed"]] = None
    attendance_count: Optional[int] = Field(default=None, ge=0)
    report_description: Optional[str] = None
    accomplishment_report_file_name: Optional[str] = None
    accomplishment_report_file_path: Optional[str] = None
    attendance_file_name: Optional[str] = None
    attendance_file_path: Optional[str] = None
    digital_signature: Optional[str] = None


SECTION_UPDATE_MODELS: Dict[str, type[BaseModel]] = {
    "organization": OrganizationSectionUpdate,
    "event": EventSectionUpdate,
    "files": FilesSectionUpdate,
    "reporting": ReportingSectionUpdate,
}

SECTION_FIELDS: Dict[str, frozenset[str]] = {
    section: frozenset(model.model_fields) for section, model in SECTION_UPDATE_MODELS.items()
}

PROTECTED_FIELDS: frozenset[str] = frozenset(
    {
        "status",
        "reviewed_by",
        "reviewed_at",
        "review_comment",
        "submitted_at",
        "proposal_id",
        "proposal_uuid",
        "owner_id",
        "created_at",
        "updated_at",
        "is_deleted",
    }
)


class ProposalRecord(BaseModel):
    proposal_id: Optional[int] = Field(
        default=None, description="Internal surrogate identifier.", examples=[42]
    )
    proposal_uuid: str = Field(
        description="Externally exposed identifier.",
        examples=["0b6f6a0c-3a55-4c4e-9a7c-8d3c1a9e2f10"],
    )
    owner_id: str = Field(description="Owning student or partner.", examples=["student_17"])
    status: ProposalStatus = Field(description="Current lifecycle status.", examples=["draft"])
    organization: Optional[Dict[str, Any]] = Field(
        default=None, description="Organization section content."
    )
    event: Optional[Dict[str, Any]] = Field(default=None, description="Event section content.")
    files: Optional[Dict[str, Any]] = Field(
        default=None, description="File reference section content."
    )
    reporting: Optional[Dict[str, Any]] = Field(
        default=None, description="Post-event reporting section content."
    )
    created_at: datetime
    updated_at: datetime
    submitted_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_comment: Optional[str] = None
    is_deleted: bool = False

    def section(self, name: str) -> Optional[Dict[str, Any]]:
        return getattr(self, name)


class AuditEntryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    audit_id: Optional[int] = Field(default=None, description="Internal audit identifier.")
    actor_id: str = Field(description="Actor who performed the mutation.", examples=["admin_1"])
    action_type: AuditActionType = Field(description="Closed action vocabulary.")
    table_name: str = Field(description="Mutated table.", examples=["proposals"])
    record_id: Optional[int] = Field(default=None, description="Mutated row identifier.")
    detail: Dict[str, Any] = Field(default_factory=dict, description="Structured detail.")
    created_at: datetime


class NotificationRecord(BaseModel):
    notification_id: Optional[int] = None
    notification_uuid: str
    recipient_id: str
    sender_id: Optional[str] = None
    notification_type: NotificationType
    message: str
    is_read: bool = False
    read_at: Optional[datetime] = None
    related_proposal_id: Optional[int] = None
    related_proposal_uuid: Optional[str] = None
    transition_key: str
    created_at: datetime

    @property
    def dedup_key(self) -> tuple[Optional[int], str, str, str]:
        return (
            self.related_proposal_id,
            self.notification_type,
            self.recipient_id,
            self.transition_key,
        )


class ProposalTransitionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    proposal_id: int
    proposal_uuid: str
    from_status: ProposalStatus
    to_status: ProposalStatus
    transition_name: str
    actor_id: str
    actor_role: ActorRole
    audit_id: int
    occurred_at: datetime
    comment: Optional[str] = None

    @property
    def transition_key(self) -> str:
        return f"{self.from_status}:{self.to_status}:{self.audit_id}"


class NotificationFanOutResult(BaseModel):
    transition_key: str
    recipients: List[str] = Field(default_factory=list)
    created: int = 0
    already_delivered: int = 0


class ProposalCreateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    organization: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Optional organization section captured at creation.",
        examples=[{"organization_name": "Robotics Club", "organization_type": "school-based"}],
    )
    event: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Optional event section captured at creation.",
        examples=[{"event_name": "Robotics Expo", "event_mode": "offline"}],
    )


class ProposalSectionUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    fields: Dict[str, Any] = Field(
        description="Section fields to write. Protected fields are rejected.",
        examples=[{"event_name": "Robotics Expo", "event_venue": "Main Hall"}],
    )


class ProposalTransitionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    from_status: ProposalStatus = Field(
        description="Status the caller expects the proposal to be in.", examples=["pending"]
    )
    to_status: ProposalStatus = Field(description="Requested next status.", examples=["approved"])
    reviewer_id: Optional[str] = Field(
        default=None,
        description="Reviewer attribution for reviewer transitions. Defaults to the caller.",
        examples=["admin_1"],
    )
    comment: Optional[str] = Field(
        default=None,
        description="Optional review comment stored with approve/reject transitions.",
        examples=["Please attach the signed GPOA."],
    )


class ProposalSummary(BaseModel):
    proposal_id: int
    proposal_uuid: str
    owner_id: str
    status: ProposalStatus
    organization: Optional[Dict[str, Any]] = None
    event: Optional[Dict[str, Any]] = None
    files: Optional[Dict[str, Any]] = None
    reporting: Optional[Dict[str, Any]] = None
    created_at: str
    updated_at: str
    submitted_at: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    review_comment: Optional[str] = None


class ProposalListResponse(BaseModel):
    items: List[ProposalSummary] = Field(
        default_factory=list,
        description="Proposal rows, newest first.",
        examples=[[{"proposal_id": 42, "owner_id": "student_17", "status": "pending"}]],
    )
    next_cursor: Optional[int] = Field(
        default=None,
        description="Pass as `cursor` to fetch the next page. Absent on the last page.",
        examples=[41],
    )


class AuditEntry(BaseModel):
    audit_id: int
    actor_id: str
    action_type: AuditActionType
    table_name: str
    record_id: Optional[int] = None
    detail: Dict[str, Any]
    created_at: str


class ProposalContentUpdateResponse(BaseModel):
    proposal: ProposalSummary
    audit_entry: AuditEntry


class ProposalTransitionResponse(BaseModel):
    proposal: ProposalSummary
    audit_entry: AuditEntry
    transition_key: str
    notification_delivery: NotificationDelivery
    notifications_created: int = 0


class ProposalAuditTrailResponse(BaseModel):
    proposal_id: int
    entries: List[AuditEntry]


class Notification(BaseModel):
    notification_id: int
    notification_uuid: str
    recipient_id: str
    sender_id: Optional[str] = None
    notification_type: NotificationType
    message: str
    is_read: bool
    read_at: Optional[str] = None
    related_proposal_id: Optional[int] = None
    related_proposal_uuid: Optional[str] = None
    created_at: str


class NotificationListResponse(BaseModel):
    items: List[Notification]
    unread_count: int


class NotificationMarkAllReadResponse(BaseModel):
    updated_count: int = Field(
        description="Notifications that changed from unread to read.", examples=[3]
    )


class ProposalMutationResult(BaseModel):
    proposal: ProposalRecord
    audit_entry: AuditEntryRecord


class ProposalTransitionOutcome(BaseModel):
    proposal: ProposalRecord
    audit_entry: AuditEntryRecord
    event: ProposalTransitionEvent
    notification_delivery: NotificationDelivery = "DEFERRED"
    fan_out: Optional[NotificationFanOutResult] = None
