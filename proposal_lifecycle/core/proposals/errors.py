class ProposalLifecycleError(Exception):
    pass


class NotFoundError(ProposalLifecycleError):
    pass


class ForbiddenError(ProposalLifecycleError):
    pass


class ForbiddenFieldError(ForbiddenError):
    def __init__(self, message: str, *, fields: list[str] | None = None) -> None:
        super().__init__(message)
        self.fields = sorted(fields or [])


class IllegalTransitionError(ProposalLifecycleError):
    pass


class TransitionPreconditionError(IllegalTransitionError):
    pass


class ConflictError(ProposalLifecycleError):
    pass


class ProposalValidationError(ProposalLifecycleError):
    pass


class InvalidActionTypeError(ProposalLifecycleError):
    pass


class NotificationDeliveryError(ProposalLifecycleError):
    pass
