import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from proposal_lifecycle.api.observability import setup_observability
from proposal_lifecycle.api.routers.notifications import router as notifications_router
from proposal_lifecycle.api.routers.proposals import (
    get_proposal_lifecycle_authority,
)
from proposal_lifecycle.api.routers.proposals import router as proposals_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    # fail fast on a misconfigured store
    get_proposal_lifecycle_authority()
    yield


app = FastAPI(
    title="Proposal Lifecycle API",
    version="0.1.0",
    description=(
        "Single authority for proposal content updates and status transitions.\n\n"
        "Every mutation is authorized, applied atomically with its audit entry, and "
        "followed by idempotent notification fan-out."
    ),
    openapi_tags=[
        {
            "name": "Proposal Lifecycle",
            "description": "Proposal creation, section updates, transitions and audit trail.",
        },
        {
            "name": "Proposal Notifications",
            "description": "Recipient inbox for lifecycle notifications.",
        },
    ],
    lifespan=_app_lifespan,
)

setup_observability(app)
app.include_router(proposals_router)
app.include_router(notifications_router)


@app.exception_handler(Exception)
async def unhandled_exception_to_problem_details(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception while serving request", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred.",
            "instance": str(request.url.path),
        },
    )


@app.get("/health", tags=["Proposal Lifecycle"], summary="Liveness Probe")
def health() -> dict[str, str]:
    return {"status": "ok"}
