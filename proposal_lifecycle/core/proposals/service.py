import logging
import uuid
from collections import deque
from datetime import date, datetime, timezone
from threading import Lock
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import ValidationError

from proposal_lifecycle.core.proposals.audit import AuditRecorder
from proposal_lifecycle.core.proposals.errors import (
    ConflictError,
    ForbiddenError,
    IllegalTransitionError,
    NotFoundError,
    NotificationDeliveryError,
    ProposalValidationError,
    TransitionPreconditionError,
)
from proposal_lifecycle.core.proposals.guard import AuthorizationGuard
from proposal_lifecycle.core.proposals.models import (
    PROPOSAL_STATUSES,
    PROPOSALS_TABLE,
    SECTION_UPDATE_MODELS,
    AuditEntry,
    AuditEntryRecord,
    Caller,
    Notification,
    NotificationFanOutResult,
    NotificationRecord,
    ProposalMutationResult,
    ProposalRecord,
    ProposalSummary,
    ProposalTransitionEvent,
    ProposalTransitionOutcome,
)
from proposal_lifecycle.core.proposals.notifications import NotificationFanOut
from proposal_lifecycle.core.proposals.repository import ProposalRepository
from proposal_lifecycle.core.proposals.transitions import (
    INITIAL_STATUS,
    SUBMISSION_REQUIRED_SECTIONS,
    TransitionRule,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class ProposalLifecycleAuthority:
    """Single entry point for every proposal mutation.

    Content updates, status transitions, creation and deletion each run in one
    repository transaction together with their audit entry. Notifications are
    fanned out only after that transaction commits; a delivery failure is
    queued for ``retry_failed_notifications`` and never undoes the transition.
    """

    def __init__(
        self,
        *,
        repository: ProposalRepository,
        guard: Optional[AuthorizationGuard] = None,
        audit_recorder: Optional[AuditRecorder] = None,
        fan_out: Optional[NotificationFanOut] = None,
        clock: Optional[Callable[[], datetime]] = None,
        require_complete_sections: bool = True,
        notification_max_attempts: int = 3,
    ) -> None:
        self._repository = repository
        self._clock = clock or _utc_now
        self._guard = guard or AuthorizationGuard()
        self._audit = audit_recorder or AuditRecorder(repository=repository, clock=self._clock)
        self._fan_out = fan_out or NotificationFanOut(
            repository=repository,
            clock=self._clock,
            max_attempts=notification_max_attempts,
        )
        self._require_complete_sections = require_complete_sections
        self._failed_deliveries: deque[tuple[ProposalTransitionEvent, ProposalRecord]] = deque()
        self._failed_lock = Lock()

    @property
    def pending_notification_retries(self) -> int:
        with self._failed_lock:
            return len(self._failed_deliveries)

    def register_actor(self, caller: Caller) -> None:
        self._repository.upsert_actor(actor_id=caller.actor_id, role=caller.role)

    def create_proposal(
        self,
        *,
        caller: Caller,
        organization: Optional[Mapping[str, Any]] = None,
        event: Optional[Mapping[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> ProposalMutationResult:
        if not caller.is_owner_role:
            raise ForbiddenError(f"ROLE_NOT_PERMITTED: {caller.role}")

        sections: dict[str, dict[str, Any]] = {}
        for section, fields in (("organization", organization), ("event", event)):
            if not fields:
                continue
            self._guard.authorize_content_update(
                caller=caller, section=section, fields=fields
            ).enforce()
            sections[section] = self._validated_section_values(section, fields)

        now = self._clock()
        proposal = ProposalRecord(
            proposal_uuid=str(uuid.uuid4()),
            owner_id=caller.actor_id,
            status=INITIAL_STATUS,
            created_at=now,
            updated_at=now,
            **sections,
        )
        with self._repository.transaction() as transaction:
            created = transaction.insert_proposal(proposal)
            audit_entry = self._audit.record(
                transaction,
                actor_id=caller.actor_id,
                action_type="CREATE",
                table_name=PROPOSALS_TABLE,
                record_id=created.proposal_id,
                detail=_with_correlation(
                    {"status": created.status, "sections": sorted(sections)},
                    correlation_id,
                ),
            )

        logger.info(
            "proposal.created",
            extra={
                "extra_fields": {
                    "proposal_id": created.proposal_id,
                    "owner_id": created.owner_id,
                    "audit_id": audit_entry.audit_id,
                }
            },
        )
        return ProposalMutationResult(proposal=created, audit_entry=audit_entry)

    def get_proposal(self, reference: Union[int, str]) -> ProposalRecord:
        if isinstance(reference, int) or str(reference).isdigit():
            proposal = self._repository.get_proposal(proposal_id=int(reference))
        else:
            proposal = self._repository.get_proposal_by_uuid(proposal_uuid=str(reference))
        if proposal is None or proposal.is_deleted:
            raise NotFoundError("PROPOSAL_NOT_FOUND")
        return proposal

    def list_proposals(
        self,
        *,
        caller: Caller,
        status: Optional[str] = None,
        owner_id: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        cursor: Optional[int] = None,
    ) -> tuple[list[ProposalRecord], Optional[int]]:
        """Owners page through their own proposals; reviewers see every owner's.

        ``owner_id`` narrows a reviewer's view and is ignored for owners, who
        are always scoped to themselves. Deleted proposals are never listed.
        """
        if caller.is_owner_role:
            owner_id = caller.actor_id
        elif not caller.is_reviewer_role:
            raise ForbiddenError(f"ROLE_NOT_PERMITTED: {caller.role}")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ProposalValidationError(f"PAGE_SIZE_OUT_OF_RANGE: {limit}")
        if status is not None and status not in PROPOSAL_STATUSES:
            raise ProposalValidationError(f"UNKNOWN_STATUS: {status}")
        return self._repository.list_proposals(
            owner_id=owner_id, status=status, limit=limit, cursor=cursor
        )

    def apply_content_update(
        self,
        *,
        proposal_id: int,
        section: str,
        fields: Mapping[str, Any],
        caller: Caller,
        correlation_id: Optional[str] = None,
    ) -> ProposalMutationResult:
        self._guard.authorize_content_update(
            caller=caller, section=section, fields=fields
        ).enforce()
        values = self._validated_section_values(section, fields)

        with self._repository.transaction() as transaction:
            proposal = self._load_for_update(transaction, proposal_id=proposal_id)
            self._guard.authorize_content_update(
                caller=caller, section=section, fields=fields, proposal=proposal
            ).enforce()

            current = dict(proposal.section(section) or {})
            merged = {**current, **values}
            now = self._clock()
            if not transaction.update_section_fields(
                proposal_id=proposal_id, section=section, content=merged, updated_at=now
            ):
                raise NotFoundError("PROPOSAL_NOT_FOUND")
            audit_entry = self._audit.record(
                transaction,
                actor_id=caller.actor_id,
                action_type="UPDATE",
                table_name=PROPOSALS_TABLE,
                record_id=proposal_id,
                detail=_with_correlation(
                    {
                        "section": section,
                        "fields": sorted(values),
                        "old_values": {name: current.get(name) for name in sorted(values)},
                        "new_values": values,
                    },
                    correlation_id,
                ),
            )
            updated = proposal.model_copy(update={section: merged, "updated_at": now})

        logger.info(
            "proposal.content.updated",
            extra={
                "extra_fields": {
                    "proposal_id": proposal_id,
                    "section": section,
                    "fields": sorted(values),
                    "actor_id": caller.actor_id,
                }
            },
        )
        return ProposalMutationResult(proposal=updated, audit_entry=audit_entry)

    def apply_transition(
        self,
        *,
        proposal_id: int,
        from_status: str,
        to_status: str,
        caller: Caller,
        reviewer_id: Optional[str] = None,
        comment: Optional[str] = None,
        correlation_id: Optional[str] = None,
        deliver_notifications: bool = True,
    ) -> ProposalTransitionOutcome:
        rule = self._guard.authorize_transition(
            caller=caller, from_status=from_status, to_status=to_status
        ).enforce().rule
        if rule is None:
            raise IllegalTransitionError(f"ILLEGAL_TRANSITION: {from_status} -> {to_status}")

        with self._repository.transaction() as transaction:
            proposal = self._load_for_update(transaction, proposal_id=proposal_id)
            self._guard.authorize_transition(
                caller=caller, from_status=from_status, to_status=to_status, proposal=proposal
            ).enforce()
            self._check_preconditions(rule=rule, proposal=proposal)

            now = self._clock()
            changes: dict[str, Any] = {"status": rule.to_status, "updated_at": now}
            if rule.actor == "reviewer":
                changes.update(
                    reviewed_by=reviewer_id or caller.actor_id,
                    reviewed_at=now,
                    review_comment=comment,
                )
            if rule.to_status == "pending":
                changes["submitted_at"] = now
            updated = proposal.model_copy(update=changes)
            if not transaction.compare_and_set_status(
                proposal=updated, expected_status=rule.from_status
            ):
                raise ConflictError(
                    f"STATE_CONFLICT: {rule.from_status} changed by a concurrent write"
                )
            audit_entry = self._audit.record(
                transaction,
                actor_id=caller.actor_id,
                action_type=rule.action_type,
                table_name=PROPOSALS_TABLE,
                record_id=proposal_id,
                detail=_with_correlation(
                    {
                        "transition": rule.name,
                        "from_status": rule.from_status,
                        "to_status": rule.to_status,
                        "reviewed_by": updated.reviewed_by if rule.actor == "reviewer" else None,
                        "comment": comment,
                    },
                    correlation_id,
                ),
            )

        event = ProposalTransitionEvent(
            proposal_id=proposal_id,
            proposal_uuid=updated.proposal_uuid,
            from_status=rule.from_status,
            to_status=rule.to_status,
            transition_name=rule.name,
            actor_id=caller.actor_id,
            actor_role=caller.role,
            audit_id=audit_entry.audit_id,
            occurred_at=now,
            comment=comment,
        )
        logger.info(
            "proposal.transition.applied",
            extra={
                "extra_fields": {
                    "proposal_id": proposal_id,
                    "transition": rule.name,
                    "from_status": rule.from_status,
                    "to_status": rule.to_status,
                    "actor_id": caller.actor_id,
                    "audit_id": audit_entry.audit_id,
                }
            },
        )

        outcome = ProposalTransitionOutcome(proposal=updated, audit_entry=audit_entry, event=event)
        if deliver_notifications:
            outcome.fan_out = self.deliver_notifications(event=event, proposal=updated)
            outcome.notification_delivery = _delivery_status(outcome.fan_out)
        return outcome

    def deliver_notifications(
        self, *, event: ProposalTransitionEvent, proposal: ProposalRecord
    ) -> Optional[NotificationFanOutResult]:
        try:
            return self._fan_out.fan_out(event=event, proposal=proposal)
        except NotificationDeliveryError:
            logger.exception(
                "proposal.notifications.delivery_failed",
                extra={
                    "extra_fields": {
                        "proposal_id": event.proposal_id,
                        "transition_key": event.transition_key,
                    }
                },
            )
            with self._failed_lock:
                self._failed_deliveries.append((event, proposal))
            return None

    def retry_failed_notifications(self) -> int:
        with self._failed_lock:
            pending = list(self._failed_deliveries)
            self._failed_deliveries.clear()
        delivered = 0
        for event, proposal in pending:
            if self.deliver_notifications(event=event, proposal=proposal) is not None:
                delivered += 1
        return delivered

    def delete_proposal(
        self,
        *,
        proposal_id: int,
        caller: Caller,
        correlation_id: Optional[str] = None,
    ) -> AuditEntryRecord:
        with self._repository.transaction() as transaction:
            proposal = self._load_for_update(transaction, proposal_id=proposal_id)
            self._guard.authorize_delete(caller=caller, proposal=proposal).enforce()
            if not transaction.mark_deleted(proposal_id=proposal_id, updated_at=self._clock()):
                raise NotFoundError("PROPOSAL_NOT_FOUND")
            audit_entry = self._audit.record(
                transaction,
                actor_id=caller.actor_id,
                action_type="DELETE",
                table_name=PROPOSALS_TABLE,
                record_id=proposal_id,
                detail=_with_correlation({"status": proposal.status}, correlation_id),
            )
        logger.info(
            "proposal.deleted",
            extra={"extra_fields": {"proposal_id": proposal_id, "actor_id": caller.actor_id}},
        )
        return audit_entry

    def list_audit_trail(self, *, proposal_id: int) -> list[AuditEntryRecord]:
        if self._repository.get_proposal(proposal_id=proposal_id) is None:
            raise NotFoundError("PROPOSAL_NOT_FOUND")
        return self._audit.list_entries(table_name=PROPOSALS_TABLE, record_id=proposal_id)

    def _load_for_update(self, transaction, *, proposal_id: int) -> ProposalRecord:
        proposal = transaction.get_proposal(proposal_id=proposal_id, for_update=True)
        if proposal is None or proposal.is_deleted:
            raise NotFoundError("PROPOSAL_NOT_FOUND")
        return proposal

    def _validated_section_values(self, section: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        model = SECTION_UPDATE_MODELS[section]
        try:
            parsed = model.model_validate(dict(fields))
        except ValidationError as exc:
            problems = ", ".join(
                ".".join(str(part) for part in error["loc"]) for error in exc.errors()
            )
            raise ProposalValidationError(
                f"SECTION_VALIDATION_FAILED: {section}: {problems}"
            ) from exc
        return parsed.model_dump(mode="json", exclude_unset=True)

    def _check_preconditions(self, *, rule: TransitionRule, proposal: ProposalRecord) -> None:
        if rule.to_status == "pending" and self._require_complete_sections:
            missing = [name for name in SUBMISSION_REQUIRED_SECTIONS if not proposal.section(name)]
            if missing:
                raise TransitionPreconditionError(f"SECTIONS_INCOMPLETE: {', '.join(missing)}")
        if rule.to_status == "reporting":
            end_date = (proposal.event or {}).get("event_end_date")
            if not end_date:
                raise TransitionPreconditionError("EVENT_END_DATE_REQUIRED")
            if date.fromisoformat(str(end_date)) > self._clock().date():
                raise TransitionPreconditionError(f"EVENT_NOT_COMPLETED: ends {end_date}")


def to_proposal_summary(proposal: ProposalRecord) -> ProposalSummary:
    return ProposalSummary(
        proposal_id=proposal.proposal_id,
        proposal_uuid=proposal.proposal_uuid,
        owner_id=proposal.owner_id,
        status=proposal.status,
        organization=proposal.organization,
        event=proposal.event,
        files=proposal.files,
        reporting=proposal.reporting,
        created_at=proposal.created_at.isoformat(),
        updated_at=proposal.updated_at.isoformat(),
        submitted_at=_isoformat(proposal.submitted_at),
        reviewed_by=proposal.reviewed_by,
        reviewed_at=_isoformat(proposal.reviewed_at),
        review_comment=proposal.review_comment,
    )


def to_audit_entry(entry: AuditEntryRecord) -> AuditEntry:
    return AuditEntry(
        audit_id=entry.audit_id,
        actor_id=entry.actor_id,
        action_type=entry.action_type,
        table_name=entry.table_name,
        record_id=entry.record_id,
        detail=entry.detail,
        created_at=entry.created_at.isoformat(),
    )


def to_notification(notification: NotificationRecord) -> Notification:
    return Notification(
        notification_id=notification.notification_id,
        notification_uuid=notification.notification_uuid,
        recipient_id=notification.recipient_id,
        sender_id=notification.sender_id,
        notification_type=notification.notification_type,
        message=notification.message,
        is_read=notification.is_read,
        read_at=_isoformat(notification.read_at),
        related_proposal_id=notification.related_proposal_id,
        related_proposal_uuid=notification.related_proposal_uuid,
        created_at=notification.created_at.isoformat(),
    )


def _delivery_status(result: Optional[NotificationFanOutResult]) -> str:
    if result is None:
        return "FAILED"
    if not result.recipients:
        return "NO_RECIPIENTS"
    return "DELIVERED"


def _with_correlation(detail: dict[str, Any], correlation_id: Optional[str]) -> dict[str, Any]:
    if correlation_id:
        detail["correlation_id"] = correlation_id
    return detail


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
