from proposal_lifecycle.core.proposals.audit import AuditRecorder
from proposal_lifecycle.core.proposals.errors import (
    ConflictError,
    ForbiddenError,
    ForbiddenFieldError,
    IllegalTransitionError,
    InvalidActionTypeError,
    NotFoundError,
    NotificationDeliveryError,
    ProposalLifecycleError,
    ProposalValidationError,
    TransitionPreconditionError,
)
from proposal_lifecycle.core.proposals.guard import AuthorizationGuard, GuardDecision
from proposal_lifecycle.core.proposals.models import (
    AuditEntryRecord,
    Caller,
    NotificationRecord,
    ProposalRecord,
    ProposalTransitionEvent,
)
from proposal_lifecycle.core.proposals.notifications import NotificationFanOut, NotificationInbox
from proposal_lifecycle.core.proposals.repository import ProposalRepository, ProposalTransaction
from proposal_lifecycle.core.proposals.service import ProposalLifecycleAuthority
from proposal_lifecycle.core.proposals.transitions import TRANSITION_TABLE, TransitionRule

__all__ = [
    "AuditEntryRecord",
    "AuditRecorder",
    "AuthorizationGuard",
    "Caller",
    "ConflictError",
    "ForbiddenError",
    "ForbiddenFieldError",
    "GuardDecision",
    "IllegalTransitionError",
    "InvalidActionTypeError",
    "NotFoundError",
    "NotificationDeliveryError",
    "NotificationFanOut",
    "NotificationInbox",
    "NotificationRecord",
    "ProposalLifecycleAuthority",
    "ProposalLifecycleError",
    "ProposalRecord",
    "ProposalRepository",
    "ProposalTransaction",
    "ProposalTransitionEvent",
    "ProposalValidationError",
    "TRANSITION_TABLE",
    "TransitionPreconditionError",
    "TransitionRule",
]
