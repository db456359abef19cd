"""
FILE: tests/conftest.py
Shared fixtures for proposal lifecycle tests.
"""

from pathlib import Path

import pytest

from proposal_lifecycle.core.proposals import Caller, ProposalLifecycleAuthority
from proposal_lifecycle.infrastructure.proposals import InMemoryProposalRepository
from tests.shared.factories import EVENT_SECTION, ORGANIZATION_SECTION, FrozenClock


def _has_marker(item: pytest.Item, name: str) -> bool:
    return item.get_closest_marker(name) is not None


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        if (
            _has_marker(item, "unit")
            or _has_marker(item, "integration")
            or _has_marker(item, "e2e")
        ):
            continue

        path = Path(str(item.fspath)).as_posix().lower()
        if "/tests/integration/" in path or "_integration.py" in path:
            item.add_marker(pytest.mark.integration)
            continue
        if "/tests/e2e/" in path:
            item.add_marker(pytest.mark.e2e)
            continue
        item.add_marker(pytest.mark.unit)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def repository() -> InMemoryProposalRepository:
    repo = InMemoryProposalRepository()
    repo.upsert_actor(actor_id="admin_1", role="admin")
    repo.upsert_actor(actor_id="admin_2", role="head_admin")
    repo.upsert_actor(actor_id="student_1", role="student")
    repo.upsert_actor(actor_id="manager_1", role="manager")
    return repo


@pytest.fixture
def authority(repository, clock) -> ProposalLifecycleAuthority:
    return ProposalLifecycleAuthority(repository=repository, clock=clock)


@pytest.fixture
def student() -> Caller:
    return Caller(actor_id="student_1", role="student")


@pytest.fixture
def other_student() -> Caller:
    return Caller(actor_id="student_2", role="student")


@pytest.fixture
def admin() -> Caller:
    return Caller(actor_id="admin_1", role="admin")


@pytest.fixture
def manager() -> Caller:
    return Caller(actor_id="manager_1", role="manager")


@pytest.fixture
def draft_proposal(authority, student):
    return authority.create_proposal(
        caller=student, organization=ORGANIZATION_SECTION, event=EVENT_SECTION
    ).proposal


@pytest.fixture
def pending_proposal(authority, student, draft_proposal):
    return authority.apply_transition(
        proposal_id=draft_proposal.proposal_id,
        from_status="draft",
        to_status="pending",
        caller=student,
    ).proposal


@pytest.fixture(autouse=True)
def proposal_runtime_test_harness(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PROPOSAL_STORE_BACKEND", "IN_MEMORY")
    monkeypatch.delenv("PROPOSAL_DEFER_NOTIFICATIONS", raising=False)
    monkeypatch.delenv("PROPOSAL_REQUIRE_COMPLETE_SECTIONS", raising=False)
    monkeypatch.delenv("PROPOSAL_NOTIFICATION_MAX_ATTEMPTS", raising=False)
    monkeypatch.delenv("PROPOSAL_REVIEWER_IDS", raising=False)
    from proposal_lifecycle.api.routers.proposals import (
        reset_proposal_lifecycle_authority_for_tests,
    )

    reset_proposal_lifecycle_authority_for_tests()
    yield
    reset_proposal_lifecycle_authority_for_tests()
