"""Capability checks consulted by the lifecycle authority before every write.

Content updates are scoped to one declared section and can never reach the
status or reviewer attribution fields. Transitions must match the transition
table, the caller's role class, and the status stored at the time of the
write. A rejected decision carries the typed error the authority raises; it
never performs side effects.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from proposal_lifecycle.core.proposals.errors import (
    ConflictError,
    ForbiddenError,
    ForbiddenFieldError,
    IllegalTransitionError,
    ProposalLifecycleError,
    ProposalValidationError,
)
from proposal_lifecycle.core.proposals.models import (
    PROTECTED_FIELDS,
    SECTION_FIELDS,
    Caller,
    ProposalRecord,
)
from proposal_lifecycle.core.proposals.transitions import (
    DELETABLE_BY_OWNER_STATUSES,
    TransitionRule,
    resolve_transition_rule,
)


@dataclass(frozen=True)
class GuardDecision:
    permitted: bool
    reason: Optional[str] = None
    error_type: Optional[type[ProposalLifecycleError]] = None
    rule: Optional[TransitionRule] = None
    rejected_fields: tuple[str, ...] = ()

    def enforce(self) -> "GuardDecision":
        if self.permitted:
            return self
        error_type = self.error_type or ForbiddenError
        if issubclass(error_type, ForbiddenFieldError):
            raise ForbiddenFieldError(self.reason or "", fields=list(self.rejected_fields))
        raise error_type(self.reason or "")


def _permit(rule: Optional[TransitionRule] = None) -> GuardDecision:
    return GuardDecision(permitted=True, rule=rule)


def _reject(
    error_type: type[ProposalLifecycleError],
    reason: str,
    *,
    rule: Optional[TransitionRule] = None,
    fields: tuple[str, ...] = (),
) -> GuardDecision:
    return GuardDecision(
        permitted=False,
        reason=reason,
        error_type=error_type,
        rule=rule,
        rejected_fields=fields,
    )


class AuthorizationGuard:
    def authorize_request_fields(self, *, unexpected: Iterable[str]) -> GuardDecision:
        """Rejects keys sent beside a request's declared fields.

        A top-level ``status`` next to a section update must fail the same way
        as one nested inside it, so protected names are reported first.
        """
        received = set(unexpected)
        if not received:
            return _permit()
        protected = tuple(sorted(received & PROTECTED_FIELDS))
        if protected:
            return _reject(
                ForbiddenFieldError,
                f"PROTECTED_FIELD_WRITE: {', '.join(protected)}",
                fields=protected,
            )
        extra = tuple(sorted(received))
        return _reject(
            ForbiddenFieldError, f"UNEXPECTED_REQUEST_FIELD: {', '.join(extra)}", fields=extra
        )

    def authorize_content_update(
        self,
        *,
        caller: Caller,
        section: str,
        fields: Mapping[str, Any],
        proposal: Optional[ProposalRecord] = None,
    ) -> GuardDecision:
        allowed_fields = SECTION_FIELDS.get(section)
        if allowed_fields is None:
            return _reject(ProposalValidationError, f"UNKNOWN_SECTION: {section}")
        if not (caller.is_owner_role or caller.is_reviewer_role):
            return _reject(ForbiddenError, f"ROLE_NOT_PERMITTED: {caller.role}")
        if not fields:
            return _reject(ProposalValidationError, "EMPTY_SECTION_UPDATE")

        requested = set(fields)
        protected = tuple(sorted(requested & PROTECTED_FIELDS))
        if protected:
            return _reject(
                ForbiddenFieldError,
                f"PROTECTED_FIELD_WRITE: {', '.join(protected)}",
                fields=protected,
            )
        outside = tuple(sorted(requested - allowed_fields))
        if outside:
            return _reject(
                ForbiddenFieldError,
                f"FIELD_OUTSIDE_SECTION: {section}: {', '.join(outside)}",
                fields=outside,
            )

        if proposal is not None:
            ownership = self._check_ownership(caller=caller, proposal=proposal)
            if ownership is not None:
                return ownership
        return _permit()

    def authorize_transition(
        self,
        *,
        caller: Caller,
        from_status: str,
        to_status: str,
        proposal: Optional[ProposalRecord] = None,
    ) -> GuardDecision:
        rule = resolve_transition_rule(from_status=from_status, to_status=to_status)
        if rule is None:
            return _reject(
                IllegalTransitionError, f"ILLEGAL_TRANSITION: {from_status} -> {to_status}"
            )
        if not self._role_matches(caller=caller, rule=rule):
            return _reject(
                ForbiddenError,
                f"TRANSITION_ROLE_MISMATCH: {caller.role} cannot {rule.name}",
                rule=rule,
            )
        if proposal is None:
            return _permit(rule)

        # proposal must be the row read under the write lock
        if proposal.status != rule.from_status:
            return _reject(
                ConflictError,
                f"STATE_CONFLICT: expected {rule.from_status}, found {proposal.status}",
                rule=rule,
            )
        if rule.actor == "owner":
            ownership = self._check_ownership(caller=caller, proposal=proposal)
            if ownership is not None:
                return ownership
        return _permit(rule)

    def authorize_delete(self, *, caller: Caller, proposal: ProposalRecord) -> GuardDecision:
        if caller.is_reviewer_role:
            return _permit()
        if not caller.is_owner_role:
            return _reject(ForbiddenError, f"ROLE_NOT_PERMITTED: {caller.role}")
        ownership = self._check_ownership(caller=caller, proposal=proposal)
        if ownership is not None:
            return ownership
        if proposal.status not in DELETABLE_BY_OWNER_STATUSES:
            return _reject(ForbiddenError, f"PROPOSAL_NOT_DELETABLE: {proposal.status}")
        return _permit()

    def _role_matches(self, *, caller: Caller, rule: TransitionRule) -> bool:
        if rule.actor == "reviewer":
            return caller.is_reviewer_role
        return caller.is_owner_role

    def _check_ownership(
        self, *, caller: Caller, proposal: ProposalRecord
    ) -> Optional[GuardDecision]:
        if caller.is_owner_role and proposal.owner_id != caller.actor_id:
            return _reject(ForbiddenError, "NOT_PROPOSAL_OWNER")
        return None
