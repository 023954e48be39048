import os

import mongomock
import pytest

os.environ["DATABASE_URL"] = "mongodb://localhost:27017"
os.environ["DATABASE_NAME"] = "campus_revival_test"

# Every MongoClient built after this point is an in-memory mongomock client
_mongo_patch = mongomock.patch(servers=(("localhost", 27017),))
_mongo_patch.start()

from fastapi.testclient import TestClient  # noqa: E402

import database  # noqa: E402
import main  # noqa: E402
import schools  # noqa: E402
import users  # noqa: E402
from auth import issue_token  # noqa: E402


@pytest.fixture(autouse=True)
def clean_db():
    for name in database.db.list_collection_names():
        database.db[name].delete_many({})
    main.rate_limiter.store.clear()
    yield


@pytest.fixture
def db():
    return database.db


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def factory(name="Test User", role="adopter", leader=False, password="password123"):
        counter["n"] += 1
        user = users.register(name, f"user{counter['n']}@campusmail.org", password)
        changes = {}
        if role != "adopter":
            changes["role"] = role
        if leader:
            changes["isVerifiedLeader"] = True
        if changes:
            db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
            user = db["user"].find_one({"_id": user["_id"]})
        token = issue_token(str(user["_id"]))
        return user, {"Authorization": f"Bearer {token}"}

    return factory


@pytest.fixture
def make_school():
    counter = {"n": 0}

    def factory(**overrides):
        counter["n"] += 1
        data = {
            "name": f"University {counter['n']}",
            "lat": 51.5,
            "lng": -0.12,
            "address": f"{counter['n']} College Road, London, WC1E 6BT",
        }
        status = overrides.pop("status", "active")
        data.update(overrides)
        return schools.create_school(data, status=status)

    return factory
