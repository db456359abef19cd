from dataclasses import dataclass
from typing import Literal, Optional

from proposal_lifecycle.core.proposals.models import (
    AuditActionType,
    NotificationType,
    ProposalStatus,
)

TransitionActor = Literal["owner", "reviewer"]
NotificationAudience = Literal["owner", "reviewers", "none"]


@dataclass(frozen=True)
class TransitionRule:
    from_status: ProposalStatus
    to_status: ProposalStatus
    actor: TransitionActor
    action_type: AuditActionType
    audience: NotificationAudience
    name: str
    notification_type: Optional[NotificationType] = None


TRANSITION_TABLE: dict[tuple[ProposalStatus, ProposalStatus], TransitionRule] = {
    ("draft", "pending"): TransitionRule(
        from_status="draft",
        to_status="pending",
        actor="owner",
        action_type="UPDATE",
        audience="reviewers",
        name="submitted",
        notification_type="proposal_submitted",
    ),
    ("pending", "approved"): TransitionRule(
        from_status="pending",
        to_status="approved",
        actor="reviewer",
        action_type="APPROVE",
        audience="owner",
        name="approved",
        notification_type="proposal_status_change",
    ),
    ("pending", "rejected"): TransitionRule(
        from_status="pending",
        to_status="rejected",
        actor="reviewer",
        action_type="REJECT",
        audience="owner",
        name="rejected",
        notification_type="proposal_status_change",
    ),
    ("approved", "reporting"): TransitionRule(
        from_status="approved",
        to_status="reporting",
        actor="owner",
        action_type="UPDATE",
        audience="reviewers",
        name="reporting_started",
        notification_type="proposal_status_change",
    ),
    ("rejected", "draft"): TransitionRule(
        from_status="rejected",
        to_status="draft",
        actor="owner",
        action_type="UPDATE",
        audience="none",
        name="resubmission",
    ),
}

INITIAL_STATUS: ProposalStatus = "draft"
SUBMISSION_REQUIRED_SECTIONS: tuple[str, ...] = ("organization", "event")
DELETABLE_BY_OWNER_STATUSES: frozenset[str] = frozenset({"draft", "rejected"})


def resolve_transition_rule(
    *, from_status: str, to_status: str
) -> Optional[TransitionRule]:
    return TRANSITION_TABLE.get((from_status, to_status))  # type: ignore[arg-type]
