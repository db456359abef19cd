import logging
from typing import Annotated, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Path, Query, status
from pydantic import BaseModel, ValidationError

from proposal_lifecycle.api.observability import current_correlation_id
from proposal_lifecycle.api.routers.proposal_http_errors import raise_proposal_http_exception
from proposal_lifecycle.api.routers.proposals_config import (
    build_repository,
    defer_notifications_enabled,
    notification_max_attempts,
    require_complete_sections_enabled,
    reviewer_seed_actors,
)
from proposal_lifecycle.core.proposals import (
    AuthorizationGuard,
    Caller,
    NotificationInbox,
    ProposalLifecycleAuthority,
    ProposalLifecycleError,
    ProposalRepository,
)
from proposal_lifecycle.core.proposals.models import (
    AuditEntry,
    ProposalAuditTrailResponse,
    ProposalContentUpdateResponse,
    ProposalCreateRequest,
    ProposalListResponse,
    ProposalSection,
    ProposalSectionUpdateRequest,
    ProposalStatus,
    ProposalSummary,
    ProposalTransitionRequest,
    ProposalTransitionResponse,
)
from proposal_lifecycle.core.proposals.service import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    to_audit_entry,
    to_proposal_summary,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Proposal Lifecycle"])

_REPOSITORY: Optional[ProposalRepository] = None
_AUTHORITY: Optional[ProposalLifecycleAuthority] = None
_INBOX: Optional[NotificationInbox] = None


def _get_repository() -> ProposalRepository:
    global _REPOSITORY
    if _REPOSITORY is None:
        _REPOSITORY = build_repository()
    return _REPOSITORY


def get_proposal_lifecycle_authority() -> ProposalLifecycleAuthority:
    global _AUTHORITY
    if _AUTHORITY is None:
        _AUTHORITY = ProposalLifecycleAuthority(
            repository=_get_repository(),
            require_complete_sections=require_complete_sections_enabled(),
            notification_max_attempts=notification_max_attempts(),
        )
        for actor_id, role in reviewer_seed_actors():
            _AUTHORITY.register_actor(Caller(actor_id=actor_id, role=role))
    return _AUTHORITY


def get_notification_inbox() -> NotificationInbox:
    global _INBOX
    if _INBOX is None:
        _INBOX = NotificationInbox(repository=_get_repository())
    return _INBOX


def reset_proposal_lifecycle_authority_for_tests() -> None:
    global _REPOSITORY
    global _AUTHORITY
    global _INBOX
    _REPOSITORY = None
    _AUTHORITY = None
    _INBOX = None


def get_caller(
    actor_id: Annotated[
        str,
        Header(
            alias="X-Actor-Id",
            description="Authenticated actor identifier resolved by the gateway.",
            examples=["student_17"],
        ),
    ],
    actor_role: Annotated[
        str,
        Header(
            alias="X-Actor-Role",
            description="Authenticated actor role resolved by the gateway.",
            examples=["student"],
        ),
    ],
    authority: Annotated[
        ProposalLifecycleAuthority, Depends(get_proposal_lifecycle_authority)
    ] = None,
) -> Caller:
    try:
        caller = Caller(actor_id=actor_id.strip(), role=actor_role.strip().lower())
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="ACTOR_IDENTITY_INVALID"
        ) from exc
    if not caller.actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="ACTOR_IDENTITY_INVALID"
        )
    authority.register_actor(caller)
    return caller


ProposalReference = Annotated[
    str,
    Path(
        description="Numeric proposal id or proposal UUID.",
        examples=["42", "0b6f6a0c-3a55-4c4e-9a7c-8d3c1a9e2f10"],
    ),
]
CorrelationIdHeader = Annotated[
    Optional[str],
    Header(
        alias="X-Correlation-Id",
        description="Optional correlation id stored in the audit entry detail.",
        examples=["corr-proposal-001"],
    ),
]


def _resolve_proposal_id(authority: ProposalLifecycleAuthority, reference: str) -> int:
    try:
        return authority.get_proposal(reference).proposal_id
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)


def _reject_unexpected_fields(payload: BaseModel) -> None:
    try:
        AuthorizationGuard().authorize_request_fields(
            unexpected=payload.model_extra or {}
        ).enforce()
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)


@router.get(
    "/proposals",
    response_model=ProposalListResponse,
    status_code=status.HTTP_200_OK,
    summary="List Proposals",
    description=(
        "Lists proposals newest first. Students and partners see their own proposals; "
        "reviewers see all of them and typically filter on `status=pending` for their queue."
    ),
)
def list_proposals(
    caller: Annotated[Caller, Depends(get_caller)],
    proposal_status: Annotated[
        Optional[ProposalStatus],
        Query(alias="status", description="Current status filter.", examples=["pending"]),
    ] = None,
    owner_id: Annotated[
        Optional[str],
        Query(description="Owner filter, honoured for reviewers only.", examples=["student_17"]),
    ] = None,
    limit: Annotated[
        int,
        Query(ge=1, le=MAX_PAGE_SIZE, description="Page size.", examples=[20]),
    ] = DEFAULT_PAGE_SIZE,
    cursor: Annotated[
        Optional[int],
        Query(ge=1, description="`next_cursor` from the previous page.", examples=[41]),
    ] = None,
    authority: Annotated[
        ProposalLifecycleAuthority, Depends(get_proposal_lifecycle_authority)
    ] = None,
) -> ProposalListResponse:
    try:
        rows, next_cursor = authority.list_proposals(
            caller=caller,
            status=proposal_status,
            owner_id=owner_id,
            limit=limit,
            cursor=cursor,
        )
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    return ProposalListResponse(
        items=[to_proposal_summary(row) for row in rows], next_cursor=next_cursor
    )


@router.post(
    "/proposals",
    response_model=ProposalSummary,
    status_code=status.HTTP_201_CREATED,
    summary="Create Proposal",
    description="Creates a draft proposal owned by the calling student or partner.",
)
def create_proposal(
    payload: ProposalCreateRequest,
    caller: Annotated[Caller, Depends(get_caller)],
    correlation_id: CorrelationIdHeader = None,
    authority: Annotated[
        ProposalLifecycleAuthority, Depends(get_proposal_lifecycle_authority)
    ] = None,
) -> ProposalSummary:
    _reject_unexpected_fields(payload)
    try:
        result = authority.create_proposal(
            caller=caller,
            organization=payload.organization,
            event=payload.event,
            correlation_id=correlation_id or current_correlation_id(),
        )
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    return to_proposal_summary(result.proposal)


@router.get(
    "/proposals/{proposal_ref}",
    response_model=ProposalSummary,
    status_code=status.HTTP_200_OK,
    summary="Get Proposal",
    description="Returns the current proposal record. Soft-deleted proposals are not found.",
)
def get_proposal(
    proposal_ref: ProposalReference,
    caller: Annotated[Caller, Depends(get_caller)],
    authority: Annotated[
        ProposalLifecycleAuthority, Depends(get_proposal_lifecycle_authority)
    ] = None,
) -> ProposalSummary:
    try:
        proposal = authority.get_proposal(proposal_ref)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    if caller.is_owner_role and proposal.owner_id != caller.actor_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="NOT_PROPOSAL_OWNER")
    return to_proposal_summary(proposal)


@router.patch(
    "/proposals/{proposal_ref}/sections/{section}",
    response_model=ProposalContentUpdateResponse,
    status_code=status.HTTP_200_OK,
    summary="Update Proposal Section",
    description=(
        "Writes fields of one content section. Status and reviewer attribution fields are "
        "never writable here; the whole request is rejected if any are present."
    ),
)
def update_proposal_section(
    proposal_ref: ProposalReference,
    section: Annotated[
        ProposalSection,
        Path(description="Content section to update.", examples=["event"]),
    ],
    payload: ProposalSectionUpdateRequest,
    caller: Annotated[Caller, Depends(get_caller)],
    correlation_id: CorrelationIdHeader = None,
    authority: Annotated[
        ProposalLifecycleAuthority, Depends(get_proposal_lifecycle_authority)
    ] = None,
) -> ProposalContentUpdateResponse:
    _reject_unexpected_fields(payload)
    proposal_id = _resolve_proposal_id(authority, proposal_ref)
    try:
        result = authority.apply_content_update(
            proposal_id=proposal_id,
            section=section,
            fields=payload.fields,
            caller=caller,
            correlation_id=correlation_id or current_correlation_id(),
        )
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    return ProposalContentUpdateResponse(
        proposal=to_proposal_summary(result.proposal),
        audit_entry=to_audit_entry(result.audit_entry),
    )


@router.post(
    "/proposals/{proposal_ref}/transitions",
    response_model=ProposalTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Transition Proposal Status",
    description=(
        "Applies one transition from the lifecycle table. The stored status must equal "
        "`from_status`; notifications are sent after the transition commits."
    ),
)
def transition_proposal(
    proposal_ref: ProposalReference,
    payload: ProposalTransitionRequest,
    background_tasks: BackgroundTasks,
    caller: Annotated[Caller, Depends(get_caller)],
    correlation_id: CorrelationIdHeader = None,
    authority: Annotated[
        ProposalLifecycleAuthority, Depends(get_proposal_lifecycle_authority)
    ] = None,
) -> ProposalTransitionResponse:
    _reject_unexpected_fields(payload)
    proposal_id = _resolve_proposal_id(authority, proposal_ref)
    defer = defer_notifications_enabled()
    try:
        outcome = authority.apply_transition(
            proposal_id=proposal_id,
            from_status=payload.from_status,
            to_status=payload.to_status,
            caller=caller,
            reviewer_id=payload.reviewer_id,
            comment=payload.comment,
            correlation_id=correlation_id or current_correlation_id(),
            deliver_notifications=not defer,
        )
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)

    if defer:
        background_tasks.add_task(
            authority.deliver_notifications, event=outcome.event, proposal=outcome.proposal
        )
        logger.info(
            "proposal.notifications.deferred",
            extra={
                "extra_fields": {
                    "proposal_id": proposal_id,
                    "transition_key": outcome.event.transition_key,
                }
            },
        )
    return ProposalTransitionResponse(
        proposal=to_proposal_summary(outcome.proposal),
        audit_entry=to_audit_entry(outcome.audit_entry),
        transition_key=outcome.event.transition_key,
        notification_delivery=outcome.notification_delivery,
        notifications_created=outcome.fan_out.created if outcome.fan_out else 0,
    )


@router.delete(
    "/proposals/{proposal_ref}",
    response_model=AuditEntry,
    status_code=status.HTTP_200_OK,
    summary="Delete Proposal",
    description=(
        "Soft-deletes a proposal. Owners may delete draft or rejected proposals; reviewers may "
        "delete any. Notifications already sent are kept."
    ),
)
def delete_proposal(
    proposal_ref: ProposalReference,
    caller: Annotated[Caller, Depends(get_caller)],
    correlation_id: CorrelationIdHeader = None,
    authority: Annotated[
        ProposalLifecycleAuthority, Depends(get_proposal_lifecycle_authority)
    ] = None,
) -> AuditEntry:
    proposal_id = _resolve_proposal_id(authority, proposal_ref)
    try:
        entry = authority.delete_proposal(
            proposal_id=proposal_id,
            caller=caller,
            correlation_id=correlation_id or current_correlation_id(),
        )
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    return to_audit_entry(entry)


@router.get(
    "/proposals/{proposal_ref}/audit",
    response_model=ProposalAuditTrailResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Proposal Audit Trail",
    description="Returns the append-only audit entries for a proposal in write order.",
)
def get_proposal_audit_trail(
    proposal_ref: ProposalReference,
    caller: Annotated[Caller, Depends(get_caller)],
    authority: Annotated[
        ProposalLifecycleAuthority, Depends(get_proposal_lifecycle_authority)
    ] = None,
) -> ProposalAuditTrailResponse:
    if not caller.is_reviewer_role:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="ROLE_NOT_PERMITTED")
    proposal_id = _resolve_proposal_id(authority, proposal_ref)
    try:
        entries = authority.list_audit_trail(proposal_id=proposal_id)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    return ProposalAuditTrailResponse(
        proposal_id=proposal_id,
        entries=[to_audit_entry(entry) for entry in entries],
    )
