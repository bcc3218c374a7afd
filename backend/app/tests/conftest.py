import os
os.environ["TESTING"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret")
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from app.main import app
from app.database import Base, get_db
from app.auth import create_access_token
from app import models, notify
from app.services import workflow_templates

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def clear_outbox():
    notify.EMAIL_OUTBOX.clear()
    yield
    notify.EMAIL_OUTBOX.clear()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def make_user():
    """Create a committed user, optionally holding roles; returns (user_id, headers)."""

    def _make(*, is_admin: bool = False, roles: tuple = (), email: str | None = None):
        email = email or f"user-{uuid.uuid4()}@example.com"
        session = TestingSessionLocal()
        try:
            user = models.User(email=email, hashed_password="placeholder", is_admin=is_admin)
            session.add(user)
            session.flush()
            for role_id in roles:
                session.add(models.UserRole(user_id=user.id, role_id=role_id))
            session.commit()
            token = create_access_token({"sub": email})
            return user.id, {"Authorization": f"Bearer {token}"}
        finally:
            session.close()

    return _make


@pytest.fixture
def make_role():
    def _make(*, permissions: tuple = (), department_id=None, name: str | None = None):
        session = TestingSessionLocal()
        try:
            role = models.Role(
                name=name or f"role-{uuid.uuid4().hex[:8]}",
                permissions=list(permissions),
                department_id=department_id,
            )
            session.add(role)
            session.commit()
            return role.id
        finally:
            session.close()

    return _make


@pytest.fixture
def make_department():
    def _make(name: str | None = None):
        session = TestingSessionLocal()
        try:
            department = models.Department(name=name or f"dept-{uuid.uuid4().hex[:8]}")
            session.add(department)
            session.commit()
            return department.id
        finally:
            session.close()

    return _make


@pytest.fixture
def make_project():
    def _make(name: str = "Website relaunch"):
        session = TestingSessionLocal()
        try:
            project = models.Project(name=name)
            session.add(project)
            session.commit()
            return project.id
        finally:
            session.close()

    return _make


@pytest.fixture
def make_template():
    """Persist a graph given as (nodes, connections) payload dicts; returns the template id."""

    def _make(nodes, connections, *, activate: bool = True, name: str = "Delivery approval"):
        session = TestingSessionLocal()
        try:
            template = workflow_templates.create_template(session, name)
            workflow_templates.replace_template_graph(session, template.id, nodes, connections)
            if activate:
                workflow_templates.activate_template(session, template.id)
            session.commit()
            return template.id
        finally:
            session.close()

    return _make


@pytest.fixture
def session_factory():
    """Independent sessions on the test database, for interleaving two requests."""

    return TestingSessionLocal
