"""Assignment engine and OTP service."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from assignments import Assignee
from errors import (
    AlreadyAssignedError, AssignmentNotActiveError, AssignmentNotFoundError,
    AssignmentOwnershipError, TicketNotEligibleError, TicketNotFoundError,
)
from models import Assignment, AssignmentStatus, Ticket


@pytest.fixture
def paid_ticket(pipeline, make_request):
    return pipeline.purchase(make_request())


GUEST = Assignee(name="Neema Mushi", phone="255754000111", email="neema@example.com")


def test_assign_paid_ticket(db, assignment_engine, notifier, paid_ticket):
    assignment_id = assignment_engine.assign(paid_ticket.ticket_id, GUEST, "agent-1")

    with db.get_session() as session:
        assignment = session.get(Assignment, assignment_id)
        assert assignment.status == AssignmentStatus.ACTIVE
        assert assignment.assigned_to == "Neema Mushi"
        assert assignment.meta["original_owner"]["name"] == "Amina Juma"
        assert assignment.meta["require_otp"] is False

        ticket = session.get(Ticket, paid_ticket.ticket_id)
        assert ticket.is_assigned
        assert ticket.meta["assignment"]["assignment_id"] == assignment_id
        # Ownership lives on the assignment; purchaser fields stay as sold
        assert ticket.purchaser_name == "Amina Juma"

    assert notifier.messages[-1][0] == GUEST.phone
    assert paid_ticket.ticket_code in notifier.messages[-1][1]


def test_unpaid_ticket_is_not_eligible(assignment_engine, pipeline, catalog_ids, make_request):
    pending = pipeline.purchase(make_request(payment_method_id=catalog_ids["mpesa"]))

    with pytest.raises(TicketNotEligibleError):
        assignment_engine.assign(pending.ticket_id, GUEST, "agent-1")


def test_used_ticket_is_not_eligible(assignment_engine, verifier, paid_ticket):
    verifier.verify(paid_ticket.ticket_code)

    with pytest.raises(TicketNotEligibleError):
        assignment_engine.assign(paid_ticket.ticket_id, GUEST, "agent-1")


def test_missing_ticket(assignment_engine):
    with pytest.raises(TicketNotFoundError):
        assignment_engine.assign(424242, GUEST, "agent-1")


def test_second_assignment_is_rejected(assignment_engine, paid_ticket):
    assignment_engine.assign(paid_ticket.ticket_id, GUEST, "agent-1")

    with pytest.raises(AlreadyAssignedError):
        assignment_engine.assign(paid_ticket.ticket_id, Assignee(name="Someone Else"), "agent-2")


def test_concurrent_assignment_exclusivity(db, assignment_engine, paid_ticket):
    """Test agents racing to assign one ticket: exactly one succeeds"""
    def attempt(n):
        try:
            return assignment_engine.assign(paid_ticket.ticket_id, Assignee(name=f"Guest {n}"), f"agent-{n}")
        except AlreadyAssignedError:
            return None

    with ThreadPoolExecutor(max_workers=6) as executor:
        outcomes = list(executor.map(attempt, range(6)))

    assert len([o for o in outcomes if o is not None]) == 1
    with db.get_session() as session:
        active = session.query(Assignment).filter(
            Assignment.ticket_id == paid_ticket.ticket_id,
            Assignment.status == AssignmentStatus.ACTIVE
        ).count()
        assert active == 1


def test_cancel_then_reassign(db, assignment_engine, paid_ticket):
    first = assignment_engine.assign(paid_ticket.ticket_id, GUEST, "agent-1")

    assert assignment_engine.cancel(first, "agent-1", reason="wrong person")
    with db.get_session() as session:
        assert session.get(Ticket, paid_ticket.ticket_id).is_assigned is False
        assert session.get(Assignment, first).meta["cancel_reason"] == "wrong person"

    second = assignment_engine.assign(paid_ticket.ticket_id, Assignee(name="Right Person"), "agent-2")
    assert second != first


def test_cancel_rules(assignment_engine, paid_ticket):
    assignment_id = assignment_engine.assign(paid_ticket.ticket_id, GUEST, "agent-1")

    with pytest.raises(AssignmentOwnershipError):
        assignment_engine.cancel(assignment_id, "agent-2")

    assignment_engine.cancel(assignment_id, "agent-1")
    with pytest.raises(AssignmentNotActiveError):
        assignment_engine.cancel(assignment_id, "agent-1")
    with pytest.raises(AssignmentNotFoundError):
        assignment_engine.cancel(987654, "agent-1")


def test_otp_flags_are_recorded(db, assignment_engine, paid_ticket):
    assignment_id = assignment_engine.assign(
        paid_ticket.ticket_id, GUEST, "agent-1", require_otp=True, otp_verified=True
    )
    with db.get_session() as session:
        assignment = session.get(Assignment, assignment_id)
        assert assignment.otp_required and assignment.otp_verified
        assert assignment.meta["otp_verified"] is True


def test_scan_for_assignment(assignment_engine, paid_ticket):
    summary = assignment_engine.scan_for_assignment(f" {paid_ticket.ticket_code.lower()} ")

    assert summary["ticket_id"] == paid_ticket.ticket_id
    assert summary["is_valid"]
    assert not summary["is_assigned"]
    assert summary["event"]["session_time"] == "10:00 - 14:00"

    assignment_engine.assign(paid_ticket.ticket_id, GUEST, "agent-1")
    summary = assignment_engine.scan_for_assignment(paid_ticket.ticket_code)
    assert summary["is_assigned"]
    assert summary["assigned_to"] == GUEST.name

    with pytest.raises(TicketNotFoundError):
        assignment_engine.scan_for_assignment("TK999999999999")


def test_agent_history(assignment_engine, pipeline, make_request):
    tickets = [pipeline.purchase(make_request()) for _ in range(3)]
    ids = [assignment_engine.assign(t.ticket_id, GUEST, "agent-7") for t in tickets]
    assignment_engine.assign(pipeline.purchase(make_request()).ticket_id, GUEST, "agent-8")

    history = assignment_engine.agent_assignments("agent-7", limit=2)

    assert [h["id"] for h in history] == [ids[2], ids[1]]
    assert history[0]["day_name"] == "Christmas Eve"


# ============================================================================
# OTP
# ============================================================================

def test_otp_verifies_once(otp_service, notifier):
    otp_service.generate("255754000111")
    code = notifier.last_otp("255754000111")

    assert len(code) == 6
    assert otp_service.verify("255754000111", code)
    assert not otp_service.verify("255754000111", code)


def test_otp_rejects_wrong_phone_and_code(otp_service, notifier):
    otp_service.generate("255754000111")
    code = notifier.last_otp("255754000111")
    wrong = "000000" if code != "000000" else "111111"

    assert not otp_service.verify("255754000222", code)
    assert not otp_service.verify("255754000111", wrong)
    assert otp_service.verify("255754000111", code)


def test_otp_expires(otp_service, notifier, clock):
    otp_service.generate("255754000111")
    code = notifier.last_otp("255754000111")

    clock.now = clock.now + timedelta(minutes=11)

    assert not otp_service.verify("255754000111", code)


def test_new_otp_invalidates_previous(otp_service, notifier):
    otp_service.generate("255754000111")
    old = notifier.last_otp("255754000111")
    otp_service.generate("255754000111")
    new = notifier.last_otp("255754000111")

    if old != new:
        assert not otp_service.verify("255754000111", old)
    assert otp_service.verify("255754000111", new)


def test_check_eligible_matches_assign_rules(db, assignment_engine, pipeline, catalog_ids, make_request, paid_ticket):
    assignment_engine.check_eligible(paid_ticket.ticket_id)

    assignment_engine.assign(paid_ticket.ticket_id, GUEST, "agent-1")
    with pytest.raises(AlreadyAssignedError):
        assignment_engine.check_eligible(paid_ticket.ticket_id)

    pending = pipeline.purchase(make_request(payment_method_id=catalog_ids["mpesa"]))
    with pytest.raises(TicketNotEligibleError):
        assignment_engine.check_eligible(pending.ticket_id)
    with pytest.raises(TicketNotFoundError):
        assignment_engine.check_eligible(424242)

    with db.get_session() as session:
        assert session.query(Assignment).filter(Assignment.ticket_id == pending.ticket_id).count() == 0
