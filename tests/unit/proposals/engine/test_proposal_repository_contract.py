import uuid

import pytest

from proposal_lifecycle.core.proposals.models import (
    AuditEntryRecord,
    NotificationRecord,
    ProposalRecord,
)
from proposal_lifecycle.infrastructure.proposals import (
    InMemoryProposalRepository,
    SqliteProposalRepository,
)
from tests.shared.factories import EVENT_SECTION, FROZEN_NOW


@pytest.fixture(params=["IN_MEMORY", "SQLITE"])
def store(request, tmp_path):
    if request.param == "SQLITE":
        return SqliteProposalRepository(database_path=str(tmp_path / "proposals.sqlite"))
    return InMemoryProposalRepository()


def _new_proposal(owner_id: str = "student_1") -> ProposalRecord:
    return ProposalRecord(
        proposal_uuid=str(uuid.uuid4()),
        owner_id=owner_id,
        status="draft",
        event=dict(EVENT_SECTION),
        created_at=FROZEN_NOW,
        updated_at=FROZEN_NOW,
    )


def _audit(record_id: int, action_type: str = "UPDATE") -> AuditEntryRecord:
    return AuditEntryRecord(
        actor_id="student_1",
        action_type=action_type,
        table_name="proposals",
        record_id=record_id,
        detail={"section": "event"},
        created_at=FROZEN_NOW,
    )


def _notification(proposal: ProposalRecord, recipient_id: str, key: str) -> NotificationRecord:
    return NotificationRecord(
        notification_uuid=str(uuid.uuid4()),
        recipient_id=recipient_id,
        sender_id="admin_1",
        notification_type="proposal_status_change",
        message="Your proposal has been approved.",
        related_proposal_id=proposal.proposal_id,
        related_proposal_uuid=proposal.proposal_uuid,
        transition_key=key,
        created_at=FROZEN_NOW,
    )


def _insert(store) -> ProposalRecord:
    with store.transaction() as transaction:
        return transaction.insert_proposal(_new_proposal())


def test_insert_and_lookup_by_id_and_uuid(store):
    created = _insert(store)

    assert created.proposal_id is not None
    assert store.get_proposal(proposal_id=created.proposal_id) == created
    assert store.get_proposal_by_uuid(proposal_uuid=created.proposal_uuid) == created
    assert store.get_proposal(proposal_id=created.proposal_id + 100) is None
    assert store.get_proposal_by_uuid(proposal_uuid="missing") is None


def test_compare_and_set_only_applies_from_expected_status(store):
    created = _insert(store)
    submitted = created.model_copy(update={"status": "pending", "submitted_at": FROZEN_NOW})

    with store.transaction() as transaction:
        assert transaction.compare_and_set_status(proposal=submitted, expected_status="draft")
    with store.transaction() as transaction:
        assert not transaction.compare_and_set_status(proposal=submitted, expected_status="draft")

    stored = store.get_proposal(proposal_id=created.proposal_id)
    assert stored.status == "pending"
    assert stored.submitted_at == FROZEN_NOW


def test_failed_transaction_rolls_back_status_and_audit(store):
    created = _insert(store)
    approved = created.model_copy(update={"status": "pending"})

    with pytest.raises(RuntimeError, match="audit sink down"):
        with store.transaction() as transaction:
            transaction.compare_and_set_status(proposal=approved, expected_status="draft")
            transaction.insert_audit_entry(_audit(created.proposal_id))
            raise RuntimeError("audit sink down")

    assert store.get_proposal(proposal_id=created.proposal_id).status == "draft"
    assert store.list_audit_entries(table_name="proposals", record_id=created.proposal_id) == []


def test_section_update_and_soft_delete(store):
    created = _insert(store)
    content = {**EVENT_SECTION, "event_venue": "Gym"}

    with store.transaction() as transaction:
        assert transaction.update_section_fields(
            proposal_id=created.proposal_id,
            section="event",
            content=content,
            updated_at=FROZEN_NOW,
        )
        assert transaction.get_proposal(proposal_id=created.proposal_id).event == content
        assert transaction.mark_deleted(proposal_id=created.proposal_id, updated_at=FROZEN_NOW)
        assert not transaction.mark_deleted(proposal_id=created.proposal_id, updated_at=FROZEN_NOW)

    stored = store.get_proposal(proposal_id=created.proposal_id)
    assert stored.event["event_venue"] == "Gym"
    assert stored.is_deleted is True


def test_audit_entries_are_listed_in_append_order(store):
    created = _insert(store)
    with store.transaction() as transaction:
        first = transaction.insert_audit_entry(_audit(created.proposal_id, "CREATE"))
        second = transaction.insert_audit_entry(_audit(created.proposal_id, "APPROVE"))

    entries = store.list_audit_entries(table_name="proposals", record_id=created.proposal_id)
    assert [entry.audit_id for entry in entries] == [first.audit_id, second.audit_id]
    assert [entry.action_type for entry in entries] == ["CREATE", "APPROVE"]
    assert entries[0].detail == {"section": "event"}


def test_notification_insert_is_deduplicated_per_transition(store):
    created = _insert(store)

    assert store.insert_notification(_notification(created, "student_1", "pending:approved:4"))
    assert not store.insert_notification(_notification(created, "student_1", "pending:approved:4"))
    assert store.insert_notification(_notification(created, "student_1", "pending:approved:9"))
    assert store.insert_notification(_notification(created, "student_2", "pending:approved:4"))

    assert len(store.list_notifications(recipient_id="student_1")) == 2
    assert len(store.list_notifications(recipient_id="student_2")) == 1


def test_mark_notification_read_is_scoped_to_recipient(store):
    created = _insert(store)
    store.insert_notification(_notification(created, "student_1", "pending:approved:4"))
    (notification,) = store.list_notifications(recipient_id="student_1")

    assert (
        store.mark_notification_read(
            notification_id=notification.notification_id,
            recipient_id="student_2",
            read_at=FROZEN_NOW,
        )
        is None
    )
    read = store.mark_notification_read(
        notification_id=notification.notification_id,
        recipient_id="student_1",
        read_at=FROZEN_NOW,
    )
    assert read.is_read is True
    assert read.read_at == FROZEN_NOW
    assert store.list_notifications(recipient_id="student_1", unread_only=True) == []
    assert store.get_notification(notification_id=notification.notification_id) == read


def test_actor_directory_lists_ids_by_role(store):
    store.upsert_actor(actor_id="admin_2", role="head_admin")
    store.upsert_actor(actor_id="admin_1", role="admin")
    store.upsert_actor(actor_id="student_1", role="student")
    store.upsert_actor(actor_id="student_1", role="admin")

    assert store.list_actor_ids_by_roles(roles=["admin", "head_admin"]) == [
        "admin_1",
        "admin_2",
        "student_1",
    ]
    assert store.list_actor_ids_by_roles(roles=["reviewer"]) == []


def test_list_proposals_filters_pages_and_skips_deleted(store):
    with store.transaction() as transaction:
        first = transaction.insert_proposal(_new_proposal())
        second = transaction.insert_proposal(_new_proposal())
        foreign = transaction.insert_proposal(_new_proposal(owner_id="student_2"))
        deleted = transaction.insert_proposal(_new_proposal())
    with store.transaction() as transaction:
        transaction.compare_and_set_status(
            proposal=first.model_copy(update={"status": "pending"}), expected_status="draft"
        )
        transaction.mark_deleted(proposal_id=deleted.proposal_id, updated_at=FROZEN_NOW)

    page, next_cursor = store.list_proposals(owner_id=None, status=None, limit=2, cursor=None)
    rest, last_cursor = store.list_proposals(
        owner_id=None, status=None, limit=2, cursor=next_cursor
    )
    owned, _ = store.list_proposals(owner_id="student_1", status=None, limit=10, cursor=None)
    pending, _ = store.list_proposals(owner_id=None, status="pending", limit=10, cursor=None)

    assert [row.proposal_id for row in page] == [foreign.proposal_id, second.proposal_id]
    assert next_cursor == second.proposal_id
    assert [row.proposal_id for row in rest] == [first.proposal_id]
    assert last_cursor is None
    assert [row.proposal_id for row in owned] == [second.proposal_id, first.proposal_id]
    assert [row.proposal_id for row in pending] == [first.proposal_id]


def test_mark_all_notifications_read_only_touches_the_recipient(store):
    proposal = _insert(store)
    store.insert_notification(_notification(proposal, "student_1", "a"))
    store.insert_notification(_notification(proposal, "student_1", "b"))
    store.insert_notification(_notification(proposal, "student_2", "a"))

    assert store.mark_all_notifications_read(recipient_id="student_1", read_at=FROZEN_NOW) == 2
    assert store.mark_all_notifications_read(recipient_id="student_1", read_at=FROZEN_NOW) == 0
    assert store.list_notifications(recipient_id="student_1", unread_only=True) == []
    (other,) = store.list_notifications(recipient_id="student_2", unread_only=True)
    assert other.is_read is False
