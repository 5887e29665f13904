import os

# settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from atelier.config import settings
from atelier.core.enrollments import create_enrollment
from atelier.core.errors import Rejected
from atelier.core.schedule_store import apply_schedule_from_month
from atelier.core.slots import Slot
from atelier.database import get_db, make_engine
from atelier.main import app
from atelier.models import Base, Branch, User, UserRole

MONDAY_10 = Slot(1, 600, 720)
WEDNESDAY_10 = Slot(3, 600, 720)
FRIDAY_18 = Slot(5, 1080, 1140)
SUNDAY_9 = Slot(0, 540, 600)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'atelier.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class Factory:
    """Committed fixture rows; every helper leaves the session clean."""

    def __init__(self, db):
        self.db = db
        self._count = 0

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def branch(self, name="Main"):
        return self._save(Branch(name=name))

    def user(self, branch, role, capacity=None):
        self._count += 1
        return self._save(User(
            branch_id=branch.id,
            fullname=f"{role.value} {self._count}",
            email=f"{role.value}{self._count}@example.com",
            role=role,
            capacity=capacity,
        ))

    def professor(self, branch, capacity=2):
        return self.user(branch, UserRole.PROFESSOR, capacity=capacity)

    def student(self, branch):
        return self.user(branch, UserRole.STUDENT)

    def staff(self, branch):
        return self.user(branch, UserRole.STAFF)

    def schedule(self, professor, year, month, slots):
        result = apply_schedule_from_month(
            self.db, professor.id, professor.branch_id, year, month, slots
        )
        assert not isinstance(result, Rejected), result
        self.db.commit()
        return result["version"]

    def enrollment(self, student, professor, year, month, slots):
        enrollment = create_enrollment(
            self.db, student.id, professor.id, professor.branch_id, year, month, slots
        )
        assert not isinstance(enrollment, Rejected), enrollment
        self.db.commit()
        return enrollment


@pytest.fixture
def make(db):
    return Factory(db)


@pytest.fixture
def studio(make):
    """One branch, a professor of capacity 2 teaching Monday and Wednesday 10-12 in March 2025."""
    branch = make.branch()
    professor = make.professor(branch, capacity=2)
    make.schedule(professor, 2025, 3, [MONDAY_10, WEDNESDAY_10])
    return branch, professor


def token_for(user, role=None, branch_id=None):
    claims = {
        "user_id": user.id,
        "role": (role or user.role).value,
        "branch_id": branch_id or user.branch_id,
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def auth(user, **kwargs):
    return {"Authorization": f"Bearer {token_for(user, **kwargs)}"}


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
