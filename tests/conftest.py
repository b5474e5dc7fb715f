import datetime
from datetime import timezone
from types import SimpleNamespace

import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import database
from main import app, get_db

DOMAIN = auth.ALLOWED_EMAIL_DOMAIN


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def token_for(email: str, role: str) -> str:
    return auth.create_access_token({"sub": email, "role": role})


@pytest.fixture()
def db():
    """A fresh in-memory MongoDB per test, with the production indexes."""
    mongo = mongomock.MongoClient()
    mock_db = mongo["mpms_test"]
    database.ensure_indexes(mock_db)
    yield mock_db
    mongo.close()


@pytest.fixture()
def client(db):
    """Test client wired to the in-memory database via dependency override."""
    app.dependency_overrides[get_db] = lambda: db
    # no context manager: startup would try to reach a real MongoDB
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db):
    """Inserts a user (and a mentor profile for mentors); returns (id, headers)."""

    def _make(name, role="STUDENT", capacity=10, current_load=0, accepting=True):
        email = f"{name.lower().replace(' ', '.')}{DOMAIN}"
        user_id = str(db.users.insert_one({
            "name": name,
            "email": email,
            "hashedPassword": "not-used-in-tests",
            "role": role,
            "department": "CSE",
            "semester": 6 if role == "STUDENT" else None,
            "createdAt": datetime.datetime.now(timezone.utc),
        }).inserted_id)

        if role == "MENTOR":
            db.mentor_profiles.insert_one({
                "userId": user_id,
                "specializationTags": ["ml"],
                "capacity": capacity,
                "currentLoad": current_load,
                "acceptingRequests": accepting,
            })
        return user_id, auth_header(token_for(email, role))

    return _make


@pytest.fixture()
def seed(make_user):
    """Admin, faculty, two students and four mentors."""
    people = SimpleNamespace()
    people.admin, people.admin_h = make_user("Ada Admin", "ADMIN")
    people.faculty, people.faculty_h = make_user("Farah Faculty", "PBL_FACULTY")
    people.student, people.student_h = make_user("Sam Student", "STUDENT")
    people.student2, people.student2_h = make_user("Tia Student", "STUDENT")
    people.mentor_a, people.mentor_a_h = make_user("Arun Mentor", "MENTOR")
    people.mentor_b, people.mentor_b_h = make_user("Bela Mentor", "MENTOR")
    people.mentor_c, people.mentor_c_h = make_user("Chen Mentor", "MENTOR")
    people.mentor_d, people.mentor_d_h = make_user("Dev Mentor", "MENTOR")
    return people


def send_request(client, headers, mentor_id, message="Please mentor me"):
    return client.post("/mentors/requests", headers=headers, json={"mentorId": mentor_id, "message": message})


@pytest.fixture()
def accepted_project(client, seed, db):
    """Sam is accepted by mentor A; returns the created project id."""
    r = send_request(client, seed.student_h, seed.mentor_a)
    assert r.status_code == 201, r.text
    r = client.patch(f"/mentors/requests/{r.json()['id']}", headers=seed.mentor_a_h, json={"status": "ACCEPTED"})
    assert r.status_code == 200, r.text
    project = db.projects.find_one({"mentorId": seed.mentor_a})
    return str(project["_id"])
