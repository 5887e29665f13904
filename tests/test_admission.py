from datetime import date, datetime

import pytest

from atelier.core import admission
from atelier.core.admission import AdmissionTicket, Ok, claim, evaluate, reserve
from atelier.core.attendance import cancel_occurrence
from atelier.core.enrollments import change_enrollment_slots, create_enrollment
from atelier.core.errors import ErrorKind, Rejected

from conftest import FRIDAY_18, MONDAY_10, WEDNESDAY_10


def test_reserve_reports_remaining_seats(studio, db):
    _, professor = studio
    decision = reserve(db, professor.id, MONDAY_10, 2025, 3)
    assert isinstance(decision, Ok)
    assert decision.capacity_left == 1
    assert decision.version == 1


def test_enrollment_beyond_capacity_is_refused(studio, make, db):
    branch, professor = studio
    for _ in range(2):
        make.enrollment(make.student(branch), professor, 2025, 3, [MONDAY_10])

    result = create_enrollment(db, make.student(branch).id, professor.id, branch.id, 2025, 3, [MONDAY_10])

    assert isinstance(result, Rejected)
    assert result.kind == ErrorKind.CAPACITY_EXCEEDED
    assert result.status_code == 409


def test_one_free_day_is_enough_for_a_single_date(studio, make, db):
    branch, professor = studio
    cancelled = make.enrollment(make.student(branch), professor, 2025, 3, [MONDAY_10])
    make.enrollment(make.student(branch), professor, 2025, 3, [MONDAY_10])
    assert not isinstance(
        cancel_occurrence(db, cancelled.id, datetime(2025, 3, 17, 10), marked_by="staff"),
        Rejected,
    )
    db.commit()

    monthly = evaluate(db, professor.id, MONDAY_10, 2025, 3)
    assert monthly.kind == ErrorKind.CAPACITY_EXCEEDED

    single = evaluate(db, professor.id, MONDAY_10, 2025, 3, day=date(2025, 3, 17))
    assert isinstance(single, AdmissionTicket)
    assert single.capacity_left == 1


def test_slot_must_be_in_the_schedule(studio, db):
    _, professor = studio
    result = evaluate(db, professor.id, FRIDAY_18, 2025, 3)
    assert result.kind == ErrorKind.SLOT_NOT_IN_SCHEDULE

    result = evaluate(db, professor.id, MONDAY_10, 2025, 2)
    assert result.kind == ErrorKind.SCHEDULE_NOT_FOUND


def test_day_must_fall_on_the_slot(studio, db):
    _, professor = studio
    result = evaluate(db, professor.id, MONDAY_10, 2025, 3, day=date(2025, 3, 4))
    assert result.kind == ErrorKind.INVALID_INPUT

    ticket = evaluate(db, professor.id, MONDAY_10, 2025, 3, day=date(2025, 3, 31))
    assert isinstance(ticket, AdmissionTicket)


def test_changing_slots_does_not_count_the_enrollment_twice(studio, make, db):
    branch, professor = studio
    make.enrollment(make.student(branch), professor, 2025, 3, [WEDNESDAY_10])
    enrollment = make.enrollment(make.student(branch), professor, 2025, 3, [WEDNESDAY_10])

    result = change_enrollment_slots(db, enrollment.id, [WEDNESDAY_10, MONDAY_10])

    assert not isinstance(result, Rejected)
    assert sorted(result.slot_values()) == [MONDAY_10, WEDNESDAY_10]


def _capacity_one(make):
    branch = make.branch()
    professor = make.professor(branch, capacity=1)
    make.schedule(professor, 2025, 3, [MONDAY_10])
    return professor


def test_concurrent_first_claims_admit_only_one(make, session_factory):
    professor = _capacity_one(make)
    first, second = session_factory(), session_factory()
    try:
        ticket = evaluate(second, professor.id, MONDAY_10, 2025, 3)
        assert ticket.ledger_version is None

        assert isinstance(reserve(first, professor.id, MONDAY_10, 2025, 3), Ok)
        first.commit()

        lost = claim(second, ticket)
        assert isinstance(lost, Rejected)
        assert lost.kind == ErrorKind.CAPACITY_EXCEEDED
        second.rollback()
    finally:
        first.close()
        second.close()


def test_concurrent_claims_on_an_existing_ledger_admit_only_one(make, session_factory):
    professor = _capacity_one(make)
    assert isinstance(reserve(make.db, professor.id, MONDAY_10, 2025, 3), Ok)
    make.db.commit()

    first, second = session_factory(), session_factory()
    try:
        ticket = evaluate(second, professor.id, MONDAY_10, 2025, 3)
        assert ticket.ledger_version == 1

        won = reserve(first, professor.id, MONDAY_10, 2025, 3)
        assert won.version == 2
        first.commit()

        lost = claim(second, ticket)
        assert isinstance(lost, Rejected)
        assert lost.kind == ErrorKind.CAPACITY_EXCEEDED
        second.rollback()
    finally:
        first.close()
        second.close()


def test_unchallenged_claim_succeeds(make, session_factory):
    professor = _capacity_one(make)
    session = session_factory()
    try:
        ticket = evaluate(session, professor.id, MONDAY_10, 2025, 3)
        assert isinstance(claim(session, ticket), Ok)
        session.commit()
    finally:
        session.close()


@pytest.mark.parametrize("ledger_exists", [False, True])
def test_admission_committed_while_occupancy_is_read_wins(make, session_factory, monkeypatch, ledger_exists):
    professor = _capacity_one(make)
    if ledger_exists:
        # an earlier admission on the slot that was later given back
        enrollment = make.enrollment(make.student(professor.branch), professor, 2025, 3, [MONDAY_10])
        enrollment.assigned = False
        make.db.commit()

    first, second = session_factory(), session_factory()
    real_view = admission.load_professor_view
    interleaved = []

    def view_after_a_competing_admission(*args, **kwargs):
        if not interleaved:
            interleaved.append(True)
            assert isinstance(reserve(first, professor.id, MONDAY_10, 2025, 3), Ok)
            first.commit()
        return real_view(*args, **kwargs)

    monkeypatch.setattr(admission, "load_professor_view", view_after_a_competing_admission)
    try:
        lost = reserve(second, professor.id, MONDAY_10, 2025, 3)
        assert interleaved
        assert isinstance(lost, Rejected)
        assert lost.kind == ErrorKind.CAPACITY_EXCEEDED
        second.rollback()
    finally:
        first.close()
        second.close()
