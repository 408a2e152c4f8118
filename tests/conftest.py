import os
import tempfile

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "unit-test-signing-key-0123456789abcdefghijkl")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("VM_CONTROLLER", "local")

test_db_path = os.path.join(tempfile.gettempdir(), "test_cloudpanel.db")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{test_db_path}")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from passlib.context import CryptContext  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from cloudpanel.auth.auth import create_access_token  # noqa: E402
from cloudpanel.core.database import Base, get_db  # noqa: E402
from cloudpanel.main import app  # noqa: E402
from cloudpanel.users.models import Role, User  # noqa: E402

SQLALCHEMY_DATABASE_URL = f"sqlite:///{test_db_path}"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    pool_pre_ping=True,
    echo=False,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Cheap hashing keeps the suite fast
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=4)


def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


def pytest_sessionfinish(session, exitstatus):
    """Remove the test database file at the end of the session"""
    try:
        if os.path.exists(test_db_path):
            os.remove(test_db_path)
    except OSError:
        pass


@pytest.fixture(scope="function")
def db():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        with engine.connect() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())
            conn.commit()


@pytest.fixture(scope="session")
def base_client():
    """Base TestClient for session scope"""
    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="function")
def client(db, base_client):
    yield base_client


def _create_user(db, username, email, password, role, is_approved):
    user = User(
        username=username,
        email=email,
        hashed_password=pwd_context.hash(password),
        role=role,
        is_approved=is_approved,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def test_user(db):
    return _create_user(
        db, "testuser", "test@example.com", "testpassword", Role.user, True
    )


@pytest.fixture
def admin_user(db):
    return _create_user(
        db, "admin", "admin@example.com", "adminpassword", Role.admin, True
    )


@pytest.fixture
def unapproved_user(db):
    return _create_user(
        db, "pending", "pending@example.com", "pendingpassword", Role.user, False
    )


def get_auth_headers(username: str):
    token = create_access_token(data={"sub": username})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(test_user):
    return get_auth_headers(test_user.username)


@pytest.fixture
def admin_headers(admin_user):
    return get_auth_headers(admin_user.username)
