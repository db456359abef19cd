from typing import NoReturn

from fastapi import HTTPException, status

from proposal_lifecycle.core.proposals import (
    ConflictError,
    ForbiddenError,
    IllegalTransitionError,
    NotFoundError,
    ProposalValidationError,
)

HTTP_422_UNPROCESSABLE = getattr(
    status, "HTTP_422_UNPROCESSABLE_CONTENT", status.HTTP_422_UNPROCESSABLE_ENTITY
)

_STATUS_BY_ERROR: tuple[tuple[type[Exception], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (IllegalTransitionError, status.HTTP_400_BAD_REQUEST),
    (ProposalValidationError, HTTP_422_UNPROCESSABLE),
)


def raise_proposal_http_exception(exc: Exception) -> NoReturn:
    # subclasses (ForbiddenFieldError, TransitionPreconditionError) map with their parent
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            raise HTTPException(status_code=status_code, detail=str(exc)) from exc
    raise exc
