import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Date, Text, ForeignKey,
    Enum as SQLEnum, JSON, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import relationship, declarative_base

from atelier.core.slots import Slot

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


class UserRole(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    PROFESSOR = "professor"
    STUDENT = "student"


class EnrollmentState(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    EXCUSED = "excused"
    RESCHEDULED = "rescheduled"


class AttendanceOrigin(str, Enum):
    REGULAR = "regular"
    ADHOC = "adhoc"


class RecordState(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


# Unique indexes treat NULLs as distinct, so these single-valued markers
# scope a unique constraint to the rows that carry them.
ACTIVE_MARKER = 1
ADHOC_MARKER = "adhoc"


"""
branches and people
"""
class Branch(Base):
    __tablename__ = "branches"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)

    users = relationship("User", back_populates="branch", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Branch {self.name}>"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    branch_id = Column(String(36), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    fullname = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(SQLEnum(UserRole), nullable=False)
    # seats per class occurrence, professors only
    capacity = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    branch = relationship("Branch", back_populates="users")

    __table_args__ = (
        Index("idx_user_branch_role", "branch_id", "role"),
    )

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"


##### weekly schedule versions
class WeeklyScheduleVersion(Base):
    __tablename__ = "schedule_versions"

    id = Column(String(36), primary_key=True, default=new_id)
    professor_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    branch_id = Column(String(36), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    effective_from = Column(DateTime, nullable=False)
    effective_to = Column(DateTime, nullable=True)  # NULL = open-ended
    created_at = Column(DateTime, default=datetime.now)

    slots = relationship(
        "ScheduleSlot",
        back_populates="version",
        cascade="all, delete-orphan",
        order_by=lambda: (ScheduleSlot.day_of_week, ScheduleSlot.start_minute),
    )

    __table_args__ = (
        Index("idx_schedule_professor_from", "professor_id", "effective_from"),
    )

    def slot_values(self):
        return [s.as_slot() for s in self.slots]

    def covers(self, instant: datetime) -> bool:
        if self.effective_from > instant:
            return False
        return self.effective_to is None or self.effective_to > instant

    def __repr__(self):
        return f"<WeeklyScheduleVersion {self.professor_id} {self.effective_from:%Y-%m-%d}>"


class ScheduleSlot(Base):
    __tablename__ = "schedule_slots"

    id = Column(String(36), primary_key=True, default=new_id)
    version_id = Column(String(36), ForeignKey("schedule_versions.id", ondelete="CASCADE"), nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)

    version = relationship("WeeklyScheduleVersion", back_populates="slots")

    __table_args__ = (
        UniqueConstraint("version_id", "day_of_week", "start_minute", "end_minute", name="unique_version_slot"),
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="check_schedule_slot_dow"),
        CheckConstraint("start_minute < end_minute", name="check_schedule_slot_range"),
    )

    def as_slot(self) -> Slot:
        return Slot(self.day_of_week, self.start_minute, self.end_minute)


####### enrollments
class Enrollment(Base):
    __tablename__ = "enrollments"

    id = Column(String(36), primary_key=True, default=new_id)
    student_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    professor_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    branch_id = Column(String(36), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    state = Column(SQLEnum(EnrollmentState), nullable=False, default=EnrollmentState.ACTIVE)
    active_marker = Column(Integer, nullable=True, default=ACTIVE_MARKER)
    assigned = Column(Boolean, nullable=False, default=False)
    # payment bookkeeping lives outside the engine; kept opaque
    payment = Column(JSON, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    chosen_slots = relationship(
        "EnrollmentSlot",
        back_populates="enrollment",
        cascade="all, delete-orphan",
        order_by=lambda: (EnrollmentSlot.day_of_week, EnrollmentSlot.start_minute),
    )
    reschedules = relationship("RescheduleRequest", back_populates="enrollment", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint(
            "student_id", "professor_id", "year", "month", "active_marker",
            name="unique_active_enrollment_month",
        ),
        CheckConstraint("month >= 1 AND month <= 12", name="check_enrollment_month"),
        Index("idx_enrollment_professor_month", "professor_id", "year", "month"),
        Index("idx_enrollment_student_month", "student_id", "year", "month"),
    )

    @property
    def is_active(self) -> bool:
        return self.state == EnrollmentState.ACTIVE

    def set_state(self, state: EnrollmentState):
        self.state = state
        self.active_marker = ACTIVE_MARKER if state == EnrollmentState.ACTIVE else None

    def slot_values(self):
        return [s.as_slot() for s in self.chosen_slots]

    def __repr__(self):
        return f"<Enrollment {self.student_id} with {self.professor_id} {self.year}-{self.month:02d}>"


class EnrollmentSlot(Base):
    __tablename__ = "enrollment_slots"

    id = Column(String(36), primary_key=True, default=new_id)
    enrollment_id = Column(String(36), ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)

    enrollment = relationship("Enrollment", back_populates="chosen_slots")

    __table_args__ = (
        UniqueConstraint("enrollment_id", "day_of_week", "start_minute", "end_minute", name="unique_enrollment_slot"),
        Index("idx_enrollment_slot_lookup", "day_of_week", "start_minute", "end_minute"),
    )

    def as_slot(self) -> Slot:
        return Slot(self.day_of_week, self.start_minute, self.end_minute)


class RescheduleRequest(Base):
    __tablename__ = "reschedule_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    enrollment_id = Column(String(36), ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    branch_id = Column(String(36), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    from_professor_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    to_professor_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    from_date = Column(DateTime, nullable=False)
    to_date = Column(DateTime, nullable=False)
    slot_from = Column(JSON, nullable=False)
    slot_to = Column(JSON, nullable=False)
    reason = Column(Text, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    enrollment = relationship("Enrollment", back_populates="reschedules")

    __table_args__ = (
        UniqueConstraint("enrollment_id", "year", "month", name="unique_reschedule_enrollment_month"),
        Index("idx_reschedule_to", "to_professor_id", "to_date"),
        Index("idx_reschedule_from", "from_professor_id", "from_date"),
        Index("idx_reschedule_student", "student_id", "year", "month"),
    )

    @property
    def slot_from_value(self) -> Slot:
        return Slot.from_dict(self.slot_from)

    @property
    def slot_to_value(self) -> Slot:
        return Slot.from_dict(self.slot_to)

    def __repr__(self):
        return f"<RescheduleRequest {self.from_date} -> {self.to_date}>"


class AdhocSession(Base):
    __tablename__ = "adhoc_sessions"

    id = Column(String(36), primary_key=True, default=new_id)
    professor_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    branch_id = Column(String(36), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)
    capacity = Column(Integer, nullable=False, default=10)
    participants = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)
    state = Column(SQLEnum(RecordState), nullable=False, default=RecordState.ACTIVE)
    active_marker = Column(Integer, nullable=True, default=ACTIVE_MARKER)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    attendance_records = relationship("AttendanceRecord", back_populates="adhoc_session")

    __table_args__ = (
        UniqueConstraint(
            "professor_id", "branch_id", "date", "start_minute", "end_minute", "active_marker",
            name="unique_active_adhoc_session",
        ),
        CheckConstraint("capacity >= 1", name="check_adhoc_capacity"),
        Index("idx_adhoc_professor_date", "professor_id", "date"),
    )

    @property
    def slot(self) -> Slot:
        return Slot(self.day_of_week, self.start_minute, self.end_minute)

    def remove(self):
        self.state = RecordState.REMOVED
        self.active_marker = None

    def drop_participant(self, student_id: str):
        # reassigned so the JSON column is flagged dirty
        self.participants = [p for p in self.participants or [] if p != student_id]

    def __repr__(self):
        return f"<AdhocSession {self.professor_id} {self.date}>"


##### attendance
class AttendanceRecord(Base):
    __tablename__ = "attendance_records"

    id = Column(String(36), primary_key=True, default=new_id)
    enrollment_id = Column(String(36), ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=True)
    adhoc_session_id = Column(String(36), ForeignKey("adhoc_sessions.id", ondelete="CASCADE"), nullable=True)
    student_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    professor_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    branch_id = Column(String(36), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    date = Column(DateTime, nullable=False)
    status = Column(SQLEnum(AttendanceStatus), nullable=False)
    origin = Column(SQLEnum(AttendanceOrigin), nullable=False, default=AttendanceOrigin.REGULAR)
    adhoc_marker = Column(String(10), nullable=True)
    slot_snapshot = Column(JSON, nullable=True)
    reschedule_id = Column(String(36), ForeignKey("reschedule_requests.id", ondelete="SET NULL"), nullable=True)
    state = Column(SQLEnum(RecordState), nullable=False, default=RecordState.ACTIVE)
    marked_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    marked_at = Column(DateTime, default=datetime.now)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    adhoc_session = relationship("AdhocSession", back_populates="attendance_records")

    __table_args__ = (
        UniqueConstraint("enrollment_id", "date", name="unique_regular_enrollment_date"),
        UniqueConstraint(
            "student_id", "professor_id", "branch_id", "date", "adhoc_marker",
            name="unique_adhoc_attendance",
        ),
        Index("idx_attendance_professor_date", "professor_id", "date"),
        Index("idx_attendance_student_date", "student_id", "date"),
    )

    @property
    def removed(self) -> bool:
        return self.state == RecordState.REMOVED

    @property
    def slot(self):
        return Slot.from_dict(self.slot_snapshot) if self.slot_snapshot else None

    def __repr__(self):
        return f"<AttendanceRecord {self.student_id} {self.date} {self.status}>"


class SlotLedger(Base):
    """Admission version counter for one professor slot in one month."""
    __tablename__ = "slot_ledgers"

    id = Column(String(36), primary_key=True, default=new_id)
    professor_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    slot_key = Column(String(120), nullable=False)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    __table_args__ = (
        UniqueConstraint("professor_id", "slot_key", "year", "month", name="unique_slot_ledger"),
    )

    def __repr__(self):
        return f"<SlotLedger {self.slot_key} {self.year}-{self.month:02d} v{self.version}>"


class DisabledClass(Base):
    """A class occurrence staff switched off; informational, seats are not touched."""
    __tablename__ = "disabled_classes"

    id = Column(String(36), primary_key=True, default=new_id)
    professor_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    branch_id = Column(String(36), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    enrollment_id = Column(String(36), ForeignKey("enrollments.id", ondelete="SET NULL"), nullable=True)
    slot_key = Column(String(120), nullable=False)
    start = Column(DateTime, nullable=False)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.now)

    __table_args__ = (
        UniqueConstraint("slot_key", "start", name="unique_disabled_class"),
        Index("idx_disabled_professor_start", "professor_id", "start"),
    )

    def __repr__(self):
        return f"<DisabledClass {self.slot_key} {self.start}>"
