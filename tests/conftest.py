import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from bson.objectid import ObjectId
from pymongo import errors

os.environ["RATELIMIT_ENABLED"] = "false"
os.environ.pop("MONGODB_URI", None)
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import app as app_module  # noqa: E402


def _matches(doc, query):
    if not query:
        return True
    for key, value in query.items():
        actual = doc.get(key)
        if isinstance(value, dict):
            if "$in" in value and actual not in value["$in"]:
                return False
            if "$gt" in value and (actual is None or actual <= value["$gt"]):
                return False
        elif actual != value:
            return False
    return True


class FakeCursor:
    def __init__(self, docs):
        self._docs = list(docs)

    def sort(self, key, direction):
        reverse = direction == -1
        return FakeCursor(sorted(self._docs, key=lambda d: d.get(key), reverse=reverse))

    def limit(self, count):
        return FakeCursor(self._docs[:count])

    def __iter__(self):
        return iter(self._docs)


class FakeCheckinsCollection:
    def __init__(self):
        self.docs: list[dict] = []

    def insert_one(self, doc):
        stored = dict(doc)
        stored.setdefault("_id", ObjectId())
        self.docs.append(stored)
        return type("InsertResult", (), {"inserted_id": stored["_id"]})()

    def find(self, query=None):
        return FakeCursor([dict(doc) for doc in self.docs if _matches(doc, query)])

    def add(self, venue_id, crowd_level=3, minutes_ago=5, music="background", atmosphere="lively", wait="5-10 min"):
        self.docs.append({
            "_id": ObjectId(),
            "venueId": venue_id,
            "crowdLevel": crowd_level,
            "musicVibe": music,
            "atmosphere": atmosphere,
            "waitTime": wait,
            "createdAt": datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        })


class FakeVenuesCollection:
    def __init__(self, docs):
        self.docs = list(docs)

    def find_one(self, query):
        for doc in self.docs:
            if _matches(doc, query):
                return dict(doc)
        return None

    def find(self, query=None):
        return FakeCursor([dict(doc) for doc in self.docs if _matches(doc, query)])


class BrokenCollection:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise errors.ServerSelectionTimeoutError("mongo is down")
        return fail


VENUES = [
    {"_id": "coral-bay-id", "name": "Coral Bay", "category": "Lounge", "slug": "coral-bay", "image": "https://img.example.com/coral.jpg"},
    {"_id": "jjs-id", "name": "JJ's Irish Pub", "category": "Pub", "slug": "jjs-irish-pub"},
    {"_id": "meisei-id", "name": "Meisei", "category": "Restaurant", "slug": "meisei"},
]


@pytest.fixture
def client():
    return app_module.app.test_client()


@pytest.fixture
def checkins(monkeypatch):
    coll = FakeCheckinsCollection()
    monkeypatch.setattr(app_module, "checkins_collection", coll)
    return coll


@pytest.fixture
def venues(monkeypatch):
    coll = FakeVenuesCollection(VENUES)
    monkeypatch.setattr(app_module, "venues_collection", coll)
    return coll
