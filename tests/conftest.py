import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import database
from auth import create_access_token
from main import app


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    test_db = client["therabook_test"]
    database.ensure_indexes(test_db)
    yield test_db
    client.close()


@pytest.fixture
def client(db):
    app.dependency_overrides[database.get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(role="patient", **fields):
        doc = {
            "name": fields.pop("name", f"{role.title()} User"),
            "email": f"{role}-{ObjectId()}@example.com",
            "role": role,
            "is_active": True,
            "is_verified": True,
            "profile": {},
        }
        doc.update(fields)
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        return doc

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user):
        token = create_access_token(str(user["_id"]), user["role"])
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def make_therapist(db, make_user):
    """Therapist user with a separate therapistprofile document."""

    def _make(fee=999.0, availability=None, **profile_fields):
        user = make_user("therapist", name=profile_fields.pop("name", "Dr. Asha Rao"))
        profile = {
            "user_id": user["_id"],
            "display_name": user["name"],
            "specializations": ["Anxiety", "CBT"],
            "consultation_fee": fee,
            "currency": "INR",
            "availability": availability or [],
            "is_approved": True,
        }
        profile.update(profile_fields)
        profile["_id"] = db["therapistprofile"].insert_one(profile).inserted_id
        return user, profile

    return _make


@pytest.fixture
def legacy_therapist(make_user):
    """Therapist whose professional data is embedded in the user document."""
    return make_user(
        "therapist",
        name="Dr. Vikram Mehta",
        therapist_profile={
            "displayName": "Dr. Vikram Mehta",
            "consultationFee": 700,
            "specializations": ["Speech Therapy"],
            "availability": [],
        },
    )
