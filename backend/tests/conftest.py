import os, tempfile
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from main import app
from db import Base, get_db, configure_sqlite
from models import User
from storage import Storage

@pytest.fixture(scope="session")
def tmp_db_path():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    return path

@pytest.fixture(scope="session")
def test_engine(tmp_db_path):
    url = f"sqlite:///{tmp_db_path}"
    # foreign keys on, savepoints usable for per-row import isolation
    engine = configure_sqlite(create_engine(url, connect_args={"check_same_thread": False}))
    Base.metadata.create_all(bind=engine)
    return engine

@pytest.fixture(scope="session")
def TestingSessionLocal(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

@pytest.fixture(scope="session", autouse=True)
def override_di(TestingSessionLocal):
    def _get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()
    app.dependency_overrides[get_db] = _get_db

def _seed_user(SessionFactory, email, **fields):
    """Create or update a user in a short-lived session; returns the id.

    The session is closed before returning so no read lock outlives the seed.
    """
    db = SessionFactory()
    try:
        user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if user is None:
            user = User(email=email, **fields)
            db.add(user)
        else:
            for key, value in fields.items():
                setattr(user, key, value)
        db.commit()
        return user.id
    finally:
        db.close()

@pytest.fixture(scope="session")
def users(TestingSessionLocal):
    return {
        "owner": _seed_user(TestingSessionLocal, "owner@school.test", first_name="Olive", last_name="Tan", user_type="HOD"),
        "other": _seed_user(TestingSessionLocal, "other@school.test", first_name="Oscar", last_name="Lim", user_type="HOD"),
        "admin": _seed_user(TestingSessionLocal, "admin@school.test", first_name="Ada", user_type="Master Admin"),
    }

@pytest.fixture
def make_user(TestingSessionLocal):
    def _make(email, **fields):
        return _seed_user(TestingSessionLocal, email, **fields)
    return _make

@pytest.fixture
def storage(TestingSessionLocal):
    db = TestingSessionLocal()
    try:
        yield Storage(db)
    finally:
        db.close()

@pytest.fixture
def owner_hdr(users):
    return {"X-User-Id": users["owner"]}

@pytest.fixture
def other_hdr(users):
    return {"X-User-Id": users["other"]}

@pytest.fixture
def admin_hdr(users):
    return {"X-User-Id": users["admin"]}

@pytest.fixture
def client():
    return TestClient(app)
