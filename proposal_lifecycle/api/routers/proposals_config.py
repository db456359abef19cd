import os
from typing import cast

from proposal_lifecycle.core.proposals.models import REVIEWER_ROLES
from proposal_lifecycle.core.proposals.repository import ProposalRepository
from proposal_lifecycle.infrastructure.proposals import (
    InMemoryProposalRepository,
    PostgresProposalRepository,
    SqliteProposalRepository,
)

_BACKENDS = {"IN_MEMORY", "SQLITE", "POSTGRES"}


def proposal_store_backend_name() -> str:
    backend = os.getenv("PROPOSAL_STORE_BACKEND", "IN_MEMORY").strip().upper()
    if backend not in _BACKENDS:
        raise RuntimeError(f"PROPOSAL_STORE_BACKEND_UNSUPPORTED:{backend}")
    return backend


def proposal_postgres_dsn() -> str:
    return os.getenv("PROPOSAL_POSTGRES_DSN", "").strip()


def proposal_sqlite_path() -> str:
    return os.getenv("PROPOSAL_SQLITE_PATH", ".data/proposals.sqlite").strip()


def require_complete_sections_enabled() -> bool:
    return _env_flag("PROPOSAL_REQUIRE_COMPLETE_SECTIONS", True)


def defer_notifications_enabled() -> bool:
    return _env_flag("PROPOSAL_DEFER_NOTIFICATIONS", False)


def notification_max_attempts() -> int:
    attempts = _env_int("PROPOSAL_NOTIFICATION_MAX_ATTEMPTS", 3)
    if attempts < 1:
        raise RuntimeError("PROPOSAL_NOTIFICATION_MAX_ATTEMPTS_INVALID")
    return attempts


def reviewer_seed_actors() -> list[tuple[str, str]]:
    """Parses `PROPOSAL_REVIEWER_IDS` as `actor_id[:role]` entries, role defaulting to admin."""
    seeds: list[tuple[str, str]] = []
    for entry in os.getenv("PROPOSAL_REVIEWER_IDS", "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        actor_id, _, role = entry.partition(":")
        actor_id = actor_id.strip()
        role = role.strip().lower() or "admin"
        if not actor_id or role not in REVIEWER_ROLES:
            raise RuntimeError(f"PROPOSAL_REVIEWER_IDS_INVALID:{entry}")
        seeds.append((actor_id, role))
    return seeds


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise RuntimeError(f"{name}_INVALID") from exc


def _postgres_connection_exception_types() -> tuple[type[BaseException], ...]:
    types: list[type[BaseException]] = [
        ConnectionError,
        OSError,
        TimeoutError,
        TypeError,
        ValueError,
    ]
    try:
        import psycopg
    except ImportError:
        pass
    else:
        types.append(psycopg.Error)
    return tuple(types)


def build_repository() -> ProposalRepository:
    backend = proposal_store_backend_name()
    if backend == "POSTGRES":
        dsn = proposal_postgres_dsn()
        if not dsn:
            raise RuntimeError("PROPOSAL_POSTGRES_DSN_REQUIRED")
        try:
            return cast(ProposalRepository, PostgresProposalRepository(dsn=dsn))
        except RuntimeError:
            raise
        except _postgres_connection_exception_types() as exc:
            raise RuntimeError("PROPOSAL_POSTGRES_CONNECTION_FAILED") from exc
    if backend == "SQLITE":
        return cast(
            ProposalRepository, SqliteProposalRepository(database_path=proposal_sqlite_path())
        )
    return cast(ProposalRepository, InMemoryProposalRepository())
