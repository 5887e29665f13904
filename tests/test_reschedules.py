from datetime import date, datetime

from atelier.core.errors import ErrorKind, Rejected
from atelier.core.reschedules import (
    create_reschedule, delete_reschedule, nearest_date_for_slot, reschedule_options
)
from atelier.core.resolver import OccurrenceOrigin, resolve_professor_month, resolve_student_month
from atelier.models import RescheduleRequest, UserRole

from conftest import FRIDAY_18, MONDAY_10, WEDNESDAY_10

SECOND_MONDAY = datetime(2025, 3, 10, 10)
FOLLOWING_WEDNESDAY = datetime(2025, 3, 12, 10)


def _move(db, branch, enrollment, actor, role, **kwargs):
    kwargs.setdefault("slot_to", WEDNESDAY_10)
    kwargs.setdefault("from_date", SECOND_MONDAY)
    return create_reschedule(
        db, branch.id, enrollment.id,
        actor_id=actor.id, actor_role=role, **kwargs
    )


def test_nearest_date_prefers_the_closest_weekday():
    assert nearest_date_for_slot(SECOND_MONDAY, WEDNESDAY_10) == FOLLOWING_WEDNESDAY
    # Friday the 7th is closer than Friday the 14th
    assert nearest_date_for_slot(SECOND_MONDAY, FRIDAY_18) == datetime(2025, 3, 7, 18)


def test_student_moves_one_class_per_month(studio, make, db):
    branch, professor = studio
    student = make.student(branch)
    enrollment = make.enrollment(student, professor, 2025, 3, [MONDAY_10])

    first = _move(db, branch, enrollment, student, UserRole.STUDENT, to_date=FOLLOWING_WEDNESDAY)
    db.commit()
    assert first.created
    assert first.reschedule.slot_from_value == MONDAY_10

    second = _move(
        db, branch, enrollment, student, UserRole.STUDENT,
        from_date=datetime(2025, 3, 17, 10), to_date=datetime(2025, 3, 19, 10),
    )
    assert isinstance(second, Rejected)
    assert second.kind == ErrorKind.DUPLICATE_RESCHEDULE
    assert second.status_code == 403


def test_staff_overwrite_the_existing_move(studio, make, db):
    branch, professor = studio
    student = make.student(branch)
    staff = make.staff(branch)
    enrollment = make.enrollment(student, professor, 2025, 3, [MONDAY_10])
    first = _move(db, branch, enrollment, student, UserRole.STUDENT, to_date=FOLLOWING_WEDNESDAY)
    db.commit()

    again = _move(
        db, branch, enrollment, staff, UserRole.STAFF,
        from_date=datetime(2025, 3, 17, 10), to_date=datetime(2025, 3, 19, 10),
    )
    db.commit()

    assert not again.created
    assert again.reschedule.id == first.reschedule.id
    assert again.reschedule.to_date == datetime(2025, 3, 19, 10)
    assert db.query(RescheduleRequest).count() == 1


def test_destination_date_is_inferred_from_the_slot(studio, make, db):
    branch, professor = studio
    student = make.student(branch)
    enrollment = make.enrollment(student, professor, 2025, 3, [MONDAY_10])

    result = _move(db, branch, enrollment, student, UserRole.STUDENT)

    assert result.reschedule.to_date == FOLLOWING_WEDNESDAY
    assert result.reschedule.to_professor_id == professor.id


def test_destination_outside_the_window_is_refused(studio, make, db):
    branch, professor = studio
    student = make.student(branch)
    enrollment = make.enrollment(student, professor, 2025, 3, [MONDAY_10])

    too_far = _move(db, branch, enrollment, student, UserRole.STUDENT, to_date=datetime(2025, 3, 19, 10))
    too_early = _move(
        db, branch, enrollment, student, UserRole.STUDENT,
        from_date=datetime(2025, 3, 17, 10), to_date=datetime(2025, 3, 5, 10),
    )
    wrong_day = _move(db, branch, enrollment, student, UserRole.STUDENT, to_date=datetime(2025, 3, 13, 10))

    assert too_far.kind == ErrorKind.INVALID_INPUT
    assert too_early.kind == ErrorKind.INVALID_INPUT
    assert wrong_day.kind == ErrorKind.INVALID_INPUT


def test_earlier_destination_inside_the_window_is_accepted(studio, make, db):
    branch, professor = studio
    student = make.student(branch)
    enrollment = make.enrollment(student, professor, 2025, 3, [MONDAY_10])

    result = _move(db, branch, enrollment, student, UserRole.STUDENT, to_date=datetime(2025, 3, 5, 10))

    assert not isinstance(result, Rejected)
    assert result.reschedule.to_date == datetime(2025, 3, 5, 10)


def test_unknown_source_class_is_refused(studio, make, db):
    branch, professor = studio
    student = make.student(branch)
    enrollment = make.enrollment(student, professor, 2025, 3, [MONDAY_10])

    result = _move(db, branch, enrollment, student, UserRole.STUDENT, from_date=datetime(2025, 3, 11, 10))
    assert result.kind == ErrorKind.INVALID_INPUT


def test_students_cannot_move_other_students(studio, make, db):
    branch, professor = studio
    owner = make.student(branch)
    other = make.student(branch)
    enrollment = make.enrollment(owner, professor, 2025, 3, [MONDAY_10])

    result = _move(db, branch, enrollment, other, UserRole.STUDENT, to_date=FOLLOWING_WEDNESDAY)
    assert result.kind == ErrorKind.FORBIDDEN


def test_full_destination_is_refused(make, db):
    branch = make.branch()
    professor = make.professor(branch, capacity=1)
    make.schedule(professor, 2025, 3, [MONDAY_10, WEDNESDAY_10])
    mover = make.student(branch)
    enrollment = make.enrollment(mover, professor, 2025, 3, [MONDAY_10])
    make.enrollment(make.student(branch), professor, 2025, 3, [WEDNESDAY_10])

    result = _move(db, branch, enrollment, mover, UserRole.STUDENT, to_date=FOLLOWING_WEDNESDAY)
    assert result.kind == ErrorKind.CAPACITY_EXCEEDED


def test_move_to_another_professor(studio, make, db):
    branch, professor = studio
    other = make.professor(branch, capacity=3)
    make.schedule(other, 2025, 3, [FRIDAY_18])
    student = make.student(branch)
    enrollment = make.enrollment(student, professor, 2025, 3, [MONDAY_10])

    _move(
        db, branch, enrollment, student, UserRole.STUDENT,
        slot_to=FRIDAY_18, to_date=datetime(2025, 3, 14, 18), to_professor_id=other.id,
    )
    db.commit()

    fridays = {o.day: o for o in resolve_professor_month(db, other.id, 2025, 3)}
    assert fridays[date(2025, 3, 14)].origin == OccurrenceOrigin.RESCHEDULE_IN
    assert fridays[date(2025, 3, 14)].capacity_left == 2
    assert fridays[date(2025, 3, 7)].capacity_left == 3

    mondays = {o.day: o for o in resolve_professor_month(db, professor.id, 2025, 3) if o.slot == MONDAY_10}
    assert mondays[date(2025, 3, 10)].taken == 0
    assert mondays[date(2025, 3, 3)].taken == 1


def test_deleting_a_move_restores_the_original_class(studio, make, db):
    branch, professor = studio
    student = make.student(branch)
    enrollment = make.enrollment(student, professor, 2025, 3, [MONDAY_10])
    moved = _move(db, branch, enrollment, student, UserRole.STUDENT, to_date=FOLLOWING_WEDNESDAY)
    db.commit()
    reschedule_id = moved.reschedule.id
    assert date(2025, 3, 10) not in [o.day for o in resolve_student_month(db, student.id, 2025, 3)]

    assert not isinstance(delete_reschedule(db, reschedule_id), Rejected)
    db.commit()

    days = [o.day.day for o in resolve_student_month(db, student.id, 2025, 3)]
    assert days == [3, 10, 17, 24]
    assert delete_reschedule(db, reschedule_id).kind == ErrorKind.NOT_FOUND


def test_options_cover_the_branch_around_the_class(studio, make, db):
    branch, professor = studio
    student = make.student(branch)
    enrollment = make.enrollment(student, professor, 2025, 3, [MONDAY_10])
    evenings = make.professor(branch, capacity=1)
    make.schedule(evenings, 2025, 3, [FRIDAY_18])
    make.enrollment(make.student(branch), evenings, 2025, 3, [FRIDAY_18])

    options = reschedule_options(
        db, branch.id, enrollment.id, SECOND_MONDAY,
        actor_id=student.id, actor_role=UserRole.STUDENT, now=datetime(2025, 3, 1),
    )

    assert [(o["to"], o["professor_id"]) for o in options] == [
        ("2025-03-05T10:00:00", professor.id),
        ("2025-03-07T18:00:00", evenings.id),
        ("2025-03-12T10:00:00", professor.id),
        ("2025-03-14T18:00:00", evenings.id),
    ]
    assert options[0]["capacity_left"] == 2
    assert options[1]["capacity_left"] == 0
    assert options[1]["status"] == "full"
    assert options[1]["slot_to"] == FRIDAY_18.to_dict()

    later = reschedule_options(
        db, branch.id, enrollment.id, SECOND_MONDAY,
        actor_id=student.id, actor_role=UserRole.STUDENT, now=datetime(2025, 3, 6),
    )
    assert [o["to"] for o in later][0] == "2025-03-07T18:00:00"


def test_options_skip_dates_past_the_monthly_cap(studio, make, db):
    branch, professor = studio
    student = make.student(branch)
    enrollment = make.enrollment(student, professor, 2025, 3, [WEDNESDAY_10])

    options = reschedule_options(
        db, branch.id, enrollment.id, datetime(2025, 3, 26, 10),
        actor_id=student.id, actor_role=UserRole.STUDENT, now=datetime(2025, 3, 1),
    )

    # the 31st is the fifth Monday of March
    assert [o["to"] for o in options] == ["2025-03-24T10:00:00"]


def test_options_are_private_to_the_student(studio, make, db):
    branch, professor = studio
    enrollment = make.enrollment(make.student(branch), professor, 2025, 3, [MONDAY_10])

    result = reschedule_options(
        db, branch.id, enrollment.id, SECOND_MONDAY,
        actor_id=make.student(branch).id, actor_role=UserRole.STUDENT,
    )
    assert result.kind == ErrorKind.FORBIDDEN
