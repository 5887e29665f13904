from datetime import date, datetime, timedelta

import pytest

from atelier.core.adhoc_sessions import (
    create_adhoc_session, list_adhoc_sessions, register_walk_in, remove_adhoc_session
)
from atelier.core.attendance import (
    cancel_occurrence, class_status, mark_attendance, remove_occurrence
)
from atelier.core.errors import ErrorKind, Rejected
from atelier.core.reschedules import create_reschedule
from atelier.core.resolver import OccurrenceOrigin, resolve_professor_month, resolve_student_month
from atelier.models import (
    AttendanceOrigin, AttendanceRecord, AttendanceStatus, RecordState, RescheduleRequest, UserRole
)

from conftest import MONDAY_10, WEDNESDAY_10

THIRD_MONDAY = datetime(2025, 3, 17, 10)
THURSDAY = date(2025, 3, 13)


@pytest.fixture
def full_monday(studio, make):
    branch, professor = studio
    staff = make.staff(branch)
    students = [make.student(branch) for _ in range(2)]
    enrollments = [make.enrollment(s, professor, 2025, 3, [MONDAY_10]) for s in students]
    return branch, professor, staff, students, enrollments


def _monday(db, professor, day):
    for o in resolve_professor_month(db, professor.id, 2025, 3):
        if o.day == day and o.slot == MONDAY_10:
            return o
    raise AssertionError(f"no Monday class on {day}")


def test_cancelled_class_frees_its_seat_for_that_day(full_monday, db):
    _, professor, staff, students, enrollments = full_monday

    record = cancel_occurrence(db, enrollments[0].id, THIRD_MONDAY, marked_by=staff.id)
    db.commit()

    assert record.state == RecordState.REMOVED
    assert record.status == AttendanceStatus.EXCUSED
    assert _monday(db, professor, date(2025, 3, 17)).capacity_left == 1
    assert _monday(db, professor, date(2025, 3, 24)).capacity_left == 0
    days = [o.day.day for o in resolve_student_month(db, students[0].id, 2025, 3)]
    assert days == [3, 10, 24]


def test_marking_a_cancelled_class_brings_it_back(full_monday, db):
    _, professor, staff, students, enrollments = full_monday
    cancelled = cancel_occurrence(db, enrollments[0].id, THIRD_MONDAY, marked_by=staff.id)
    db.commit()

    marked = mark_attendance(db, enrollments[0].id, THIRD_MONDAY, AttendanceStatus.PRESENT, marked_by=staff.id)
    db.commit()

    assert marked.id == cancelled.id
    assert marked.state == RecordState.ACTIVE
    assert _monday(db, professor, date(2025, 3, 17)).capacity_left == 0
    mine = {o.day: o for o in resolve_student_month(db, students[0].id, 2025, 3)}
    assert mine[date(2025, 3, 17)].attendance_status == AttendanceStatus.PRESENT.value


def test_marking_needs_a_real_class_and_a_staff_status(full_monday, db):
    _, _, staff, _, enrollments = full_monday
    off_slot = mark_attendance(db, enrollments[0].id, datetime(2025, 3, 18, 10), AttendanceStatus.ABSENT, staff.id)
    wrong_status = mark_attendance(db, enrollments[0].id, THIRD_MONDAY, AttendanceStatus.RESCHEDULED, staff.id)
    other_month = mark_attendance(db, enrollments[0].id, datetime(2025, 4, 7, 10), AttendanceStatus.ABSENT, staff.id)

    assert off_slot.kind == ErrorKind.INVALID_INPUT
    assert wrong_status.kind == ErrorKind.INVALID_INPUT
    assert other_month.kind == ErrorKind.INVALID_INPUT


def test_marking_a_rescheduled_class_links_the_move(full_monday, db):
    branch, _, staff, students, enrollments = full_monday
    moved = create_reschedule(
        db, branch.id, enrollments[0].id,
        from_date=datetime(2025, 3, 10, 10), slot_to=WEDNESDAY_10,
        actor_id=students[0].id, actor_role=UserRole.STUDENT,
        to_date=datetime(2025, 3, 12, 10),
    )
    db.commit()

    record = mark_attendance(db, enrollments[0].id, datetime(2025, 3, 12, 10), AttendanceStatus.ABSENT, staff.id)
    db.commit()

    assert record.reschedule_id == moved.reschedule.id
    assert record.slot == WEDNESDAY_10


def test_class_status(full_monday, db):
    _, professor, staff, students, enrollments = full_monday
    branch_id = enrollments[0].branch_id
    mark_attendance(db, enrollments[0].id, THIRD_MONDAY, AttendanceStatus.PRESENT, marked_by=staff.id)
    db.commit()

    attended = class_status(db, students[0].id, professor.id, branch_id, THIRD_MONDAY, now=THIRD_MONDAY)
    assert attended["attended"] is True
    assert attended["reschedulable"] is False

    open_class = class_status(db, students[1].id, professor.id, branch_id, THIRD_MONDAY, now=THIRD_MONDAY)
    assert open_class["attended"] is False
    assert open_class["too_old"] is False
    assert open_class["reschedulable"] is True

    later = THIRD_MONDAY + timedelta(days=7, minutes=1)
    stale = class_status(db, students[1].id, professor.id, branch_id, THIRD_MONDAY, now=later)
    assert stale["too_old"] is True
    assert stale["reschedulable"] is False


def test_remove_reschedule_in_occurrence(full_monday, db):
    branch, _, _, students, enrollments = full_monday
    moved = create_reschedule(
        db, branch.id, enrollments[0].id,
        from_date=datetime(2025, 3, 10, 10), slot_to=WEDNESDAY_10,
        actor_id=students[0].id, actor_role=UserRole.STUDENT,
        to_date=datetime(2025, 3, 12, 10),
    )
    db.commit()

    missing = remove_occurrence(db, enrollments[0].id, "reschedule-in")
    assert missing.kind == ErrorKind.INVALID_INPUT

    result = remove_occurrence(db, enrollments[0].id, "reschedule-in", reschedule_id=moved.reschedule.id)
    db.commit()
    assert result == {"origin": "reschedule-in", "deleted": 1}
    assert db.query(RescheduleRequest).count() == 0

    assert remove_occurrence(db, enrollments[0].id, "base").kind == ErrorKind.INVALID_INPUT


def test_walk_ins_fill_an_extra_class(studio, make, db):
    branch, professor = studio
    first, second = make.student(branch), make.student(branch)
    session = create_adhoc_session(db, professor.id, branch.id, THURSDAY, 1020, 1080, capacity=1)
    db.commit()

    registered = register_walk_in(db, session.id, first.id)
    db.commit()
    assert registered.origin == AttendanceOrigin.ADHOC
    assert registered.adhoc_session_id == session.id

    again = register_walk_in(db, session.id, first.id)
    assert again.id == registered.id

    full = register_walk_in(db, session.id, second.id)
    assert isinstance(full, Rejected)
    assert full.kind == ErrorKind.CAPACITY_EXCEEDED
    db.rollback()

    extra = [o for o in resolve_student_month(db, first.id, 2025, 3) if o.origin == OccurrenceOrigin.ADHOC]
    assert len(extra) == 1
    assert extra[0].start == datetime(2025, 3, 13, 17)
    assert extra[0].capacity_left == 0
    assert extra[0].attendance_id == registered.id


def test_duplicate_extra_class_is_refused(studio, db):
    branch, professor = studio
    create_adhoc_session(db, professor.id, branch.id, THURSDAY, 1020, 1080)
    db.commit()

    duplicate = create_adhoc_session(db, professor.id, branch.id, THURSDAY, 1020, 1080)
    assert duplicate.kind == ErrorKind.INVALID_INPUT
    db.rollback()

    invalid = create_adhoc_session(db, professor.id, branch.id, THURSDAY, 1080, 1020)
    assert invalid.kind == ErrorKind.INVALID_INPUT


def test_removing_an_extra_class_removes_its_attendance(studio, make, db):
    branch, professor = studio
    student = make.student(branch)
    session = create_adhoc_session(db, professor.id, branch.id, THURSDAY, 1020, 1080, capacity=4)
    register_walk_in(db, session.id, student.id)
    db.commit()

    result = remove_adhoc_session(db, session.id)
    db.commit()

    assert result["removed_attendance"] == 1
    assert list_adhoc_sessions(db, professor.id, branch.id, 2025, 3) == []
    live = db.query(AttendanceRecord).filter(AttendanceRecord.state == RecordState.ACTIVE).count()
    assert live == 0
    assert all(o.origin != OccurrenceOrigin.ADHOC for o in resolve_professor_month(db, professor.id, 2025, 3))
    assert resolve_student_month(db, student.id, 2025, 3) == []

    # the slot can be offered again once the previous one is gone
    reopened = create_adhoc_session(db, professor.id, branch.id, THURSDAY, 1020, 1080)
    assert not isinstance(reopened, Rejected)


def test_removing_a_walk_in_through_the_student_calendar(studio, make, db):
    branch, professor = studio
    student = make.student(branch)
    enrollment = make.enrollment(student, professor, 2025, 3, [MONDAY_10])
    session = create_adhoc_session(db, professor.id, branch.id, THURSDAY, 1020, 1080, capacity=4)
    record = register_walk_in(db, session.id, student.id)
    db.commit()

    result = remove_occurrence(db, enrollment.id, "adhoc", attendance_id=record.id)
    db.commit()

    assert result == {"origin": "adhoc", "updated": 1}
    origins = {o.origin for o in resolve_student_month(db, student.id, 2025, 3)}
    assert origins == {OccurrenceOrigin.BASE}


def test_removed_walk_in_gives_the_seat_back(studio, make, db):
    branch, professor = studio
    first, second = make.student(branch), make.student(branch)
    enrollment = make.enrollment(first, professor, 2025, 3, [MONDAY_10])
    session = create_adhoc_session(db, professor.id, branch.id, THURSDAY, 1020, 1080, capacity=1)
    record = register_walk_in(db, session.id, first.id)
    db.commit()
    assert register_walk_in(db, session.id, second.id).kind == ErrorKind.CAPACITY_EXCEEDED

    remove_occurrence(db, enrollment.id, "adhoc", attendance_id=record.id)
    db.commit()

    assert session.participants == []
    admitted = register_walk_in(db, session.id, second.id)
    db.commit()
    assert not isinstance(admitted, Rejected)
    assert session.participants == [second.id]
