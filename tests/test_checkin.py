from datetime import date, datetime, timedelta

import pytest
from jose import jwt

from atelier.config import settings
from atelier.core.adhoc_sessions import create_adhoc_session, register_walk_in
from atelier.core.checkin import (
    CheckInOutcomeKind, CheckInWindow, build_class_key, check_in, decode_class_key
)
from atelier.core.errors import ErrorKind, Rejected
from atelier.core.reschedules import create_reschedule
from atelier.core.slots import Slot, slot_key
from atelier.models import AttendanceRecord, AttendanceStatus, UserRole

from conftest import FRIDAY_18, MONDAY_10, WEDNESDAY_10

START = datetime(2025, 3, 3, 10, 0)


@pytest.fixture
def enrolled(studio, make):
    branch, professor = studio
    student = make.student(branch)
    enrollment = make.enrollment(student, professor, 2025, 3, [MONDAY_10])
    return branch, professor, student, enrollment


def _key(branch, professor, start=START, slot=MONDAY_10):
    return build_class_key(branch.id, start, professor.id, slot)


def test_default_window_is_pinned():
    window = CheckInWindow.from_settings()
    assert window.open_offset == timedelta(minutes=165)
    assert window.close_offset == timedelta(minutes=360)


@pytest.mark.parametrize("offset, inside", [
    (timedelta(minutes=165) - timedelta(seconds=1), False),
    (timedelta(minutes=165), True),
    (timedelta(minutes=300), True),
    (timedelta(minutes=360) - timedelta(seconds=1), True),
    (timedelta(minutes=360), False),
    (timedelta(0), False),
])
def test_window_bounds(offset, inside):
    assert CheckInWindow.from_settings().contains(START, START + offset) is inside


def test_class_key_round_trip():
    token = build_class_key("branch-1", START, "prof-1", MONDAY_10, enrollment_id="enr-1")
    key = decode_class_key(token)
    assert key.branch_id == "branch-1"
    assert key.start == START
    assert key.professor_id == "prof-1"
    assert key.slot == MONDAY_10
    assert key.enrollment_id == "enr-1"


def test_foreign_or_garbled_keys_are_invalid():
    claims = {"b": "branch-1", "st": START.isoformat(), "sl": slot_key("prof-1", MONDAY_10)}
    foreign = jwt.encode(claims, "someone-else", algorithm="HS256")
    assert decode_class_key(foreign).kind == ErrorKind.INVALID_TOKEN
    assert decode_class_key("not-a-token").kind == ErrorKind.INVALID_TOKEN


def test_key_with_missing_fields_is_invalid():
    token = jwt.encode({"b": "branch-1"}, settings.CLASS_KEY_SECRET, algorithm=settings.ALGORITHM)
    assert decode_class_key(token).kind == ErrorKind.INVALID_TOKEN


def test_enrolled_student_checks_in_once(enrolled, db):
    branch, professor, student, enrollment = enrolled
    token = _key(branch, professor)
    now = START + timedelta(minutes=170)

    first = check_in(db, token, student.id, now=now)
    db.commit()
    assert first.outcome == CheckInOutcomeKind.REGULAR

    second = check_in(db, token, student.id, now=now + timedelta(minutes=5))
    db.commit()
    assert second.outcome == CheckInOutcomeKind.PRE_SCHEDULED
    assert second.attendance_id == first.attendance_id

    rows = db.query(AttendanceRecord).filter(AttendanceRecord.student_id == student.id).all()
    assert len(rows) == 1
    assert rows[0].status == AttendanceStatus.PRESENT
    assert rows[0].enrollment_id == enrollment.id
    assert rows[0].slot == MONDAY_10


def test_scan_outside_the_window_writes_nothing(enrolled, db):
    branch, professor, student, _ = enrolled
    token = _key(branch, professor)

    early = check_in(db, token, student.id, now=START + timedelta(minutes=165) - timedelta(seconds=1))
    late = check_in(db, token, student.id, now=START + timedelta(minutes=360))

    assert early.kind == ErrorKind.OUT_OF_WINDOW
    assert late.kind == ErrorKind.OUT_OF_WINDOW
    assert db.query(AttendanceRecord).count() == 0


def test_tampered_key_is_refused(enrolled, db):
    branch, professor, student, _ = enrolled
    claims = {"b": branch.id, "st": START.isoformat(), "sl": slot_key(professor.id, MONDAY_10)}
    forged = jwt.encode(claims, "not-the-secret", algorithm="HS256")
    result = check_in(db, forged, student.id, now=START + timedelta(minutes=170))
    assert result.kind == ErrorKind.INVALID_TOKEN


def test_student_without_enrollment_is_refused(enrolled, make, db):
    branch, professor, _, _ = enrolled
    stranger = make.student(branch)
    result = check_in(db, _key(branch, professor), stranger.id, now=START + timedelta(minutes=170))
    assert isinstance(result, Rejected)
    assert result.kind == ErrorKind.NOT_ENROLLED


def test_slot_outside_the_schedule_is_refused(enrolled, db):
    branch, professor, student, _ = enrolled
    friday = datetime(2025, 3, 7, 18, 0)
    result = check_in(
        db, _key(branch, professor, friday, FRIDAY_18), student.id,
        now=friday + timedelta(minutes=170),
    )
    assert result.kind == ErrorKind.SLOT_NOT_IN_SCHEDULE


def test_rescheduled_class_checks_in_on_its_new_date(enrolled, db):
    branch, professor, student, enrollment = enrolled
    moved = create_reschedule(
        db, branch.id, enrollment.id,
        from_date=datetime(2025, 3, 10, 10), slot_to=WEDNESDAY_10,
        actor_id=student.id, actor_role=UserRole.STUDENT,
        to_date=datetime(2025, 3, 12, 10),
    )
    db.commit()

    wednesday = datetime(2025, 3, 12, 10)
    result = check_in(
        db, _key(branch, professor, wednesday, WEDNESDAY_10), student.id,
        now=wednesday + timedelta(minutes=200),
    )
    db.commit()

    assert result.outcome == CheckInOutcomeKind.RESCHEDULE
    record = db.get(AttendanceRecord, result.attendance_id)
    assert record.reschedule_id == moved.reschedule.id
    assert record.enrollment_id == enrollment.id


def test_walk_in_is_marked_present_from_its_registration(studio, make, db):
    branch, professor = studio
    student = make.student(branch)
    session = create_adhoc_session(db, professor.id, branch.id, date(2025, 3, 13), 1020, 1080, capacity=3)
    registered = register_walk_in(db, session.id, student.id)
    db.commit()
    assert registered.status == AttendanceStatus.ABSENT

    start = datetime(2025, 3, 13, 17, 0)
    result = check_in(
        db, _key(branch, professor, start, Slot(4, 1020, 1080)), student.id,
        now=start + timedelta(minutes=180),
    )
    db.commit()

    assert result.outcome == CheckInOutcomeKind.PRE_SCHEDULED
    assert result.attendance_id == registered.id
    db.refresh(registered)
    assert registered.status == AttendanceStatus.PRESENT
