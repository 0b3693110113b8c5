import os
import tempfile
from pathlib import Path
from types import SimpleNamespace

os.environ["DATABASE_URL"] = f"sqlite:///{Path(tempfile.gettempdir()) / 'levelquiz_test.db'}"

import jwt
import pytest

from levelquiz.config import settings
from levelquiz.database import Base, SessionLocal, engine
from levelquiz.models import Level, Subject, User


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seeded(db):
    """A subject with four levels (sort order 1-4) and two users."""
    subject = Subject(name="Mathematics", icon="", sort_order=1)
    db.add(subject)
    db.flush()
    levels = [Level(subject_id=subject.id, name=f"Level {i}", sort_order=i) for i in range(1, 5)]
    learner = User(display_name="learner")
    other = User(display_name="other")
    db.add_all([*levels, learner, other])
    db.commit()
    return SimpleNamespace(
        subject_id=subject.id,
        level_ids=[level.id for level in levels],
        user_id=learner.id,
        other_user_id=other.id,
    )


@pytest.fixture
def headers_for():
    def _headers(user_id: int):
        token = jwt.encode({"user_id": user_id}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
        return {"Authorization": f"Bearer {token}"}

    return _headers
