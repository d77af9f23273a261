import os
os.environ["TESTING"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from openbench.main import app
from openbench.database import Base, DATABASE_URL, enable_sqlite_foreign_keys, get_db
from openbench import auth, models, notify

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
enable_sqlite_foreign_keys(engine)
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
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_user():
    """
    purpose: create an active user and a bearer token for it
    outputs: callable returning (user id uuid, auth headers dict)
    """

    def _make(*, full_name: str | None = None, is_admin: bool = False):
        email = f"user-{uuid.uuid4()}@example.com"
        db = TestingSessionLocal()
        user = models.User(email=email, full_name=full_name, is_admin=is_admin)
        db.add(user)
        db.commit()
        db.refresh(user)
        user_id = user.id
        db.close()
        token = auth.create_access_token({"sub": email})
        return user_id, {"Authorization": f"Bearer {token}"}

    return _make


def design_payload(**overrides):
    payload = {
        "title": "Plant growth under coloured light",
        "summary": "Compare seedling height under red and blue light.",
        "hypothesis": "Blue light produces shorter, sturdier seedlings.",
        "discipline_tags": ["biology"],
        "difficulty_level": "High School",
        "steps": [
            {"step_number": 1, "instruction": "Plant 20 seeds in identical pots."},
            {"step_number": 2, "instruction": "Place pots under filtered lamps."},
        ],
        "materials": [{"material_id": "mat-seeds", "quantity": "20"}],
        "research_questions": [
            {"question": "How tall are seedlings after 14 days?", "expected_data_type": "numeric"}
        ],
        "independent_variables": [
            {"name": "light colour", "type": "categorical", "values_or_range": "red, blue"}
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def design_factory(client):
    """
    purpose: create designs through the API, optionally published
    outputs: callable returning the design json
    """

    def _create(headers, *, publish: bool = False, **overrides):
        resp = client.post("/api/designs", json=design_payload(**overrides), headers=headers)
        assert resp.status_code == 201, resp.text
        design = resp.json()
        if publish:
            resp = client.post(f"/api/designs/{design['id']}/publish", json={}, headers=headers)
            assert resp.status_code == 200, resp.text
            design = resp.json()
        return design

    return _create
