"""
Shared fixtures: a fresh mongomock database per test and a TestClient wired to it.
"""

from uuid import uuid4

import mongomock
import pytest
from fastapi.testclient import TestClient

from accounts import hash_password
from database import create_document, ensure_indexes
from main import app, get_db
from schemas import Dog as DogSchema, Role, Session as SessionSchema, User as UserSchema

PASSWORD = "secret-pass"
PASSWORD_HASH = hash_password(PASSWORD)


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    database = client["kennel_messenger_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(username, role=Role.CUSTOMER):
        user = UserSchema(
            email=f"{username}@example.com",
            username=username,
            password_hash=PASSWORD_HASH,
            role=role,
            is_verified=True,
        )
        user_id = create_document(db, "user", user)
        token = uuid4().hex
        create_document(db, "session", SessionSchema(user_id=user_id, token=token, role=role))
        return {"id": user_id, "token": token, "headers": {"Authorization": f"Bearer {token}"}}

    return _make


@pytest.fixture
def make_dog(db):
    def _make(breeder_id, name="Biscuit", breed="Beagle", status="published", visibility="public"):
        dog = DogSchema(
            breeder_id=breeder_id,
            name=name,
            breed=breed,
            status=status,
            visibility=visibility,
            slug=f"{name.lower()}-{uuid4().hex[:6]}",
        )
        return create_document(db, "dog", dog)

    return _make


@pytest.fixture
def customer(make_user):
    return make_user("alice")


@pytest.fixture
def breeder(make_user):
    return make_user("bob", Role.BREEDER)


@pytest.fixture
def dog(make_dog, breeder):
    return make_dog(breeder["id"])
