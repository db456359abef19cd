import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from proposal_lifecycle.core.proposals.errors import NotFoundError, NotificationDeliveryError
from proposal_lifecycle.core.proposals.models import (
    REVIEWER_ROLES,
    NotificationFanOutResult,
    NotificationRecord,
    ProposalRecord,
    ProposalTransitionEvent,
)
from proposal_lifecycle.core.proposals.repository import ProposalRepository
from proposal_lifecycle.core.proposals.transitions import TransitionRule, resolve_transition_rule

logger = logging.getLogger(__name__)

UNTITLED_EVENT = "Untitled proposal"

MESSAGE_TEMPLATES: dict[str, str] = {
    "submitted": (
        'A new proposal "{event_name}" has been submitted by {owner_id} '
        "from {organization_name}. Please review it."
    ),
    "approved": 'Your proposal "{event_name}" has been approved. Congratulations!',
    "rejected": (
        'Your proposal "{event_name}" has been rejected. '
        "Please review the feedback and resubmit."
    ),
    "reporting_started": 'Proposal "{event_name}" has moved to post-event reporting.',
}


def render_message(*, rule: TransitionRule, proposal: ProposalRecord) -> str:
    event = proposal.event or {}
    organization = proposal.organization or {}
    template = MESSAGE_TEMPLATES.get(
        rule.name, 'Proposal "{event_name}" is now {to_status}.'
    )
    return template.format(
        event_name=event.get("event_name") or UNTITLED_EVENT,
        owner_id=proposal.owner_id,
        organization_name=organization.get("organization_name") or "an unnamed organization",
        to_status=rule.to_status,
    )


class NotificationFanOut:
    """Writes one notification per recipient after a transition commits.

    Reviewer audiences are read from the actor directory, which only knows
    actors that have been registered: seeded from ``PROPOSAL_REVIEWER_IDS``
    at startup or recorded when they call the API. A reviewer who is neither
    is not notified.
    """

    def __init__(
        self,
        *,
        repository: ProposalRepository,
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._repository = repository
        self._clock = clock or _utc_now
        self._max_attempts = max_attempts
        self._retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep

    def recipients_for(
        self, *, event: ProposalTransitionEvent, proposal: ProposalRecord
    ) -> list[str]:
        rule = resolve_transition_rule(from_status=event.from_status, to_status=event.to_status)
        if rule is None or rule.audience == "none":
            return []
        if rule.audience == "owner":
            candidates = [proposal.owner_id]
        else:
            try:
                candidates = self._repository.list_actor_ids_by_roles(roles=sorted(REVIEWER_ROLES))
            except Exception as exc:
                raise NotificationDeliveryError(
                    f"NOTIFICATION_RECIPIENTS_UNAVAILABLE: {event.transition_key}"
                ) from exc
        return sorted({actor_id for actor_id in candidates if actor_id != event.actor_id})

    def fan_out(
        self, *, event: ProposalTransitionEvent, proposal: ProposalRecord
    ) -> NotificationFanOutResult:
        result = NotificationFanOutResult(transition_key=event.transition_key)
        rule = resolve_transition_rule(from_status=event.from_status, to_status=event.to_status)
        if rule is None or rule.notification_type is None:
            return result

        result.recipients = self.recipients_for(event=event, proposal=proposal)
        message = render_message(rule=rule, proposal=proposal)
        for recipient_id in result.recipients:
            notification = NotificationRecord(
                notification_uuid=str(uuid.uuid4()),
                recipient_id=recipient_id,
                sender_id=event.actor_id,
                notification_type=rule.notification_type,
                message=message,
                related_proposal_id=event.proposal_id,
                related_proposal_uuid=event.proposal_uuid,
                transition_key=event.transition_key,
                created_at=self._clock(),
            )
            if self._insert_with_retry(notification):
                result.created += 1
            else:
                result.already_delivered += 1

        logger.info(
            "proposal.notifications.fanned_out",
            extra={
                "extra_fields": {
                    "proposal_id": event.proposal_id,
                    "transition_key": event.transition_key,
                    "created": result.created,
                    "already_delivered": result.already_delivered,
                }
            },
        )
        return result

    def _insert_with_retry(self, notification: NotificationRecord) -> bool:
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return self._repository.insert_notification(notification)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "proposal.notifications.insert_failed",
                    extra={
                        "extra_fields": {
                            "recipient_id": notification.recipient_id,
                            "transition_key": notification.transition_key,
                            "attempt": attempt,
                            "error": str(exc),
                        }
                    },
                )
                if attempt < self._max_attempts and self._retry_backoff_seconds > 0:
                    self._sleep(self._retry_backoff_seconds * attempt)
        raise NotificationDeliveryError(
            f"NOTIFICATION_DELIVERY_FAILED: {notification.transition_key}: "
            f"{notification.recipient_id}"
        ) from last_error


class NotificationInbox:
    def __init__(
        self,
        *,
        repository: ProposalRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or _utc_now

    def list_notifications(
        self, *, recipient_id: str, unread_only: bool = False
    ) -> list[NotificationRecord]:
        return self._repository.list_notifications(
            recipient_id=recipient_id, unread_only=unread_only
        )

    def unread_count(self, *, recipient_id: str) -> int:
        return len(self.list_notifications(recipient_id=recipient_id, unread_only=True))

    def mark_read(self, *, notification_id: int, recipient_id: str) -> NotificationRecord:
        notification = self._repository.mark_notification_read(
            notification_id=notification_id,
            recipient_id=recipient_id,
            read_at=self._clock(),
        )
        if notification is None:
            raise NotFoundError("NOTIFICATION_NOT_FOUND")
        return notification

    def mark_all_read(self, *, recipient_id: str) -> int:
        updated = self._repository.mark_all_notifications_read(
            recipient_id=recipient_id, read_at=self._clock()
        )
        logger.info(
            "proposal.notifications.marked_all_read",
            extra={"extra_fields": {"recipient_id": recipient_id, "updated": updated}},
        )
        return updated


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
