from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query, status

from proposal_lifecycle.api.routers.proposal_http_errors import raise_proposal_http_exception
from proposal_lifecycle.api.routers.proposals import get_caller, get_notification_inbox
from proposal_lifecycle.core.proposals import Caller, NotificationInbox, ProposalLifecycleError
from proposal_lifecycle.core.proposals.models import (
    Notification,
    NotificationListResponse,
    NotificationMarkAllReadResponse,
)
from proposal_lifecycle.core.proposals.service import to_notification

router = APIRouter(tags=["Proposal Notifications"])


@router.get(
    "/notifications",
    response_model=NotificationListResponse,
    status_code=status.HTTP_200_OK,
    summary="List Notifications",
    description="Lists the caller's notifications, newest first, with the unread count.",
)
def list_notifications(
    caller: Annotated[Caller, Depends(get_caller)],
    unread_only: Annotated[
        bool,
        Query(description="Return unread notifications only.", examples=[True]),
    ] = False,
    inbox: Annotated[NotificationInbox, Depends(get_notification_inbox)] = None,
) -> NotificationListResponse:
    items = inbox.list_notifications(recipient_id=caller.actor_id, unread_only=unread_only)
    return NotificationListResponse(
        items=[to_notification(item) for item in items],
        unread_count=inbox.unread_count(recipient_id=caller.actor_id),
    )


@router.post(
    "/notifications/{notification_id}/read",
    response_model=Notification,
    status_code=status.HTTP_200_OK,
    summary="Mark Notification Read",
    description="Marks one of the caller's notifications as read. Repeated calls are no-ops.",
)
def mark_notification_read(
    notification_id: Annotated[
        int,
        Path(description="Notification identifier.", examples=[7]),
    ],
    caller: Annotated[Caller, Depends(get_caller)],
    inbox: Annotated[NotificationInbox, Depends(get_notification_inbox)] = None,
) -> Notification:
    try:
        notification = inbox.mark_read(
            notification_id=notification_id, recipient_id=caller.actor_id
        )
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    return to_notification(notification)


@router.post(
    "/notifications/read-all",
    response_model=NotificationMarkAllReadResponse,
    status_code=status.HTTP_200_OK,
    summary="Mark All Notifications Read",
    description="Marks every unread notification of the caller as read.",
)
def mark_all_notifications_read(
    caller: Annotated[Caller, Depends(get_caller)],
    inbox: Annotated[NotificationInbox, Depends(get_notification_inbox)] = None,
) -> NotificationMarkAllReadResponse:
    return NotificationMarkAllReadResponse(
        updated_count=inbox.mark_all_read(recipient_id=caller.actor_id)
    )
