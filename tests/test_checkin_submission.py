import pytest

import app
from conftest import BrokenCollection


def _payload(**overrides):
    payload = {
        "venueId": "coral-bay-id",
        "crowdLevel": 4,
        "musicVibe": "dj",
        "atmosphere": "lively",
        "waitTime": "15-20 min",
    }
    payload.update(overrides)
    return payload


@pytest.mark.parametrize("level", [1, 2, 3, 4, 5])
def test_valid_crowd_levels_are_stored_verbatim(client, checkins, venues, level):
    resp = client.post("/api/vibe-check/checkin", json=_payload(crowdLevel=level))

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["checkIn"]["crowdLevel"] == level
    assert body["checkIn"]["venueId"] == "coral-bay-id"
    assert body["checkIn"]["id"]
    assert body["checkIn"]["createdAt"].endswith("Z")
    assert len(checkins.docs) == 1
    assert checkins.docs[0]["crowdLevel"] == level


@pytest.mark.parametrize("level", [0, 6, -1, 3.5, "3", True, None])
def test_invalid_crowd_levels_are_rejected(client, checkins, venues, level):
    resp = client.post("/api/vibe-check/checkin", json=_payload(crowdLevel=level))

    assert resp.status_code == 400
    body = resp.get_json()
    assert body["message"] == "Invalid check-in"
    assert any(err["loc"][0] == "crowdLevel" for err in body["errors"])
    assert checkins.docs == []


@pytest.mark.parametrize("field,value", [
    ("musicVibe", "techno"),
    ("musicVibe", "DJ"),
    ("atmosphere", "rowdy"),
    ("atmosphere", ""),
])
def test_values_outside_enumerations_are_rejected(client, checkins, venues, field, value):
    resp = client.post("/api/vibe-check/checkin", json=_payload(**{field: value}))

    assert resp.status_code == 400
    assert checkins.docs == []


@pytest.mark.parametrize("venue_id", ["", "../etc/passwd", "x" * 65, None])
def test_malformed_venue_ids_are_rejected(client, checkins, venues, venue_id):
    resp = client.post("/api/vibe-check/checkin", json=_payload(venueId=venue_id))

    assert resp.status_code == 400
    assert checkins.docs == []


def test_unknown_venue_is_not_found(client, checkins, venues):
    resp = client.post("/api/vibe-check/checkin", json=_payload(venueId="nowhere"))

    assert resp.status_code == 404
    assert resp.get_json()["message"] == "Venue not found."
    assert checkins.docs == []


def test_unknown_fields_are_rejected(client, checkins, venues):
    resp = client.post("/api/vibe-check/checkin", json=_payload(rating=5))

    assert resp.status_code == 400
    assert checkins.docs == []


def test_body_must_be_an_object(client, checkins, venues):
    resp = client.post("/api/vibe-check/checkin", json=[_payload()])

    assert resp.status_code == 400
    assert checkins.docs == []


def test_wait_time_defaults_when_omitted(client, checkins, venues):
    payload = _payload()
    payload.pop("waitTime")

    resp = client.post("/api/vibe-check/checkin", json=payload)

    assert resp.status_code == 201
    assert resp.get_json()["checkIn"]["waitTime"] == "5-10 min"


def test_identical_submissions_create_two_checkins(client, checkins, venues):
    first = client.post("/api/vibe-check/checkin", json=_payload())
    second = client.post("/api/vibe-check/checkin", json=_payload())

    assert first.status_code == 201
    assert second.status_code == 201
    assert first.get_json()["checkIn"]["id"] != second.get_json()["checkIn"]["id"]
    assert len(checkins.docs) == 2

    vibes = client.get("/api/vibe-check").get_json()["venues"]
    assert len(vibes) == 1
    assert vibes[0]["totalCheckins"] == 2


def test_store_outage_on_write_is_a_submission_error(client, venues, monkeypatch):
    monkeypatch.setattr(app, "checkins_collection", BrokenCollection())

    resp = client.post("/api/vibe-check/checkin", json=_payload())

    assert resp.status_code == 503
    assert "try again" in resp.get_json()["message"]


def test_unconfigured_store_rejects_writes(client, venues, monkeypatch):
    monkeypatch.setattr(app, "checkins_collection", None)

    resp = client.post("/api/vibe-check/checkin", json=_payload())

    assert resp.status_code == 503


def test_venue_directory_outage(client, checkins, monkeypatch):
    monkeypatch.setattr(app, "venues_collection", BrokenCollection())

    resp = client.post("/api/vibe-check/checkin", json=_payload())

    assert resp.status_code == 503
    assert checkins.docs == []


def test_hex_looking_string_venue_id_is_found(client, checkins, venues):
    venues.docs.append({"_id": "65a1f0c2e4b0a1b2c3d4e5f6", "name": "Block 338", "category": "Bar"})

    resp = client.post("/api/vibe-check/checkin", json=_payload(venueId="65a1f0c2e4b0a1b2c3d4e5f6"))

    assert resp.status_code == 201
    assert checkins.docs[0]["venueId"] == "65a1f0c2e4b0a1b2c3d4e5f6"


def test_object_id_venue_is_found(client, checkins, venues):
    oid = app.ObjectId("65a1f0c2e4b0a1b2c3d4e5f7")
    venues.docs.append({"_id": oid, "name": "Calexico", "category": "Bar"})

    resp = client.post("/api/vibe-check/checkin", json=_payload(venueId=str(oid)))

    assert resp.status_code == 201
