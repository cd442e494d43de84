"""Vibe Check domain: enumerations, request schema, errors and aggregation."""
import re
from datetime import datetime, timedelta, timezone
from typing import Literal

from pydantic import BaseModel, Field, StrictInt

# --- Enumerations ---
CROWD_LEVELS = {
    1: "Empty",
    2: "Quiet",
    3: "Buzzing",
    4: "Packed",
    5: "Insane!",
}
MUSIC_VIBES = ("none", "background", "dj", "live", "party")
ATMOSPHERES = ("chill", "lively", "romantic", "wild", "classy")

DEFAULT_CROWD_LEVEL = 3
DEFAULT_MUSIC_VIBE = "background"
DEFAULT_ATMOSPHERE = "lively"
DEFAULT_WAIT_TIME = "5-10 min"

VENUE_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"

# --- Aggregation policy ---
DEFAULT_WINDOW = timedelta(hours=3)
DEFAULT_TRENDING_WINDOW = timedelta(minutes=60)
DEFAULT_TRENDING_MIN_CHECKINS = 3
DEFAULT_TRENDING_TOP_K = 5


# --- Errors ---
class VibeCheckError(Exception):
    """Base class for Vibe Check failures."""


class RetrievalError(VibeCheckError):
    """Check-ins or venues could not be read."""


class SubmissionError(VibeCheckError):
    """A validated check-in could not be written."""


class CheckInRejected(VibeCheckError):
    """The service refused a check-in (bad payload or unknown venue)."""

    def __init__(self, message: str, errors: list | None = None, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []
        self.status = status


# --- Schemas ---
class CheckInRequest(BaseModel):
    venueId: str = Field(..., pattern=VENUE_ID_PATTERN)
    crowdLevel: StrictInt = Field(..., ge=1, le=5)
    musicVibe: Literal["none", "background", "dj", "live", "party"]
    atmosphere: Literal["chill", "lively", "romantic", "wild", "classy"]
    waitTime: str = Field(DEFAULT_WAIT_TIME, max_length=40)

    class Config:
        extra = "forbid"


def is_valid_venue_id(value) -> bool:
    return isinstance(value, str) and re.fullmatch(VENUE_ID_PATTERN, value) is not None


def crowd_label(level) -> str:
    return CROWD_LEVELS.get(level, CROWD_LEVELS[DEFAULT_CROWD_LEVEL])


# --- Time helpers ---
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            if text.endswith("Z"):
                return datetime.fromisoformat(text[:-1]).replace(tzinfo=timezone.utc)
            dt = datetime.fromisoformat(text)
            if dt.tzinfo is None:
                return dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)
        except ValueError:
            return None
    return None


def isoformat_or_none(value) -> str | None:
    dt = parse_datetime(value)
    if not dt:
        return None
    return dt.isoformat().replace("+00:00", "Z")


def humanize_age(then: datetime, now: datetime) -> str:
    """Render the age of ``then`` relative to ``now`` ("10 min ago")."""
    seconds = max(0, int((now - then).total_seconds()))
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes} min ago"
    hours = minutes // 60
    if hours < 24:
        return "1 hour ago" if hours == 1 else f"{hours} hours ago"
    days = hours // 24
    return "1 day ago" if days == 1 else f"{days} days ago"


# --- Serialization ---
def serialize_venue(doc: dict) -> dict:
    data = dict(doc or {})
    raw_id = data.pop("_id", None)
    venue_id = str(raw_id) if raw_id is not None else str(data.get("id") or "")
    return {
        "id": venue_id,
        "name": data.get("name") or venue_id,
        "category": data.get("category") or "",
        "slug": data.get("slug") or "",
        "image": data.get("image") or None,
    }


def serialize_checkin(doc: dict) -> dict:
    data = dict(doc or {})
    raw_id = data.pop("_id", None)
    return {
        "id": str(raw_id) if raw_id is not None else data.get("id"),
        "venueId": data.get("venueId"),
        "crowdLevel": data.get("crowdLevel"),
        "musicVibe": data.get("musicVibe"),
        "atmosphere": data.get("atmosphere"),
        "waitTime": data.get("waitTime") or "",
        "createdAt": isoformat_or_none(data.get("createdAt")),
    }


# --- Aggregation ---
def live_checkins(checkins, now: datetime, window: timedelta = DEFAULT_WINDOW) -> list[tuple[datetime, dict]]:
    """Pair each check-in inside the recency window with its parsed timestamp."""
    cutoff = now - window
    live = []
    for doc in checkins:
        created = parse_datetime(doc.get("createdAt"))
        if created is None or created <= cutoff:
            continue
        if not doc.get("venueId"):
            continue
        live.append((created, doc))
    return live


def aggregate_vibes(
    checkins,
    venues: dict[str, dict],
    now: datetime | None = None,
    window: timedelta = DEFAULT_WINDOW,
    trending_window: timedelta = DEFAULT_TRENDING_WINDOW,
    trending_min_checkins: int = DEFAULT_TRENDING_MIN_CHECKINS,
    trending_top_k: int = DEFAULT_TRENDING_TOP_K,
) -> list[dict]:
    """Build the ranked VenueVibe list from raw check-ins.

    ``venues`` maps venue id to directory metadata. Venues without a live
    check-in never appear in the result.
    """
    now = now or utcnow()
    groups: dict[str, list[tuple[datetime, dict]]] = {}
    for created, doc in live_checkins(checkins, now, window):
        groups.setdefault(str(doc["venueId"]), []).append((created, doc))

    trending_cutoff = now - trending_window
    entries = []
    for venue_id, group in groups.items():
        group.sort(key=lambda item: item[0], reverse=True)
        latest_at, latest = group[0]
        meta = serialize_venue(venues.get(venue_id) or {"_id": venue_id})
        score = sum(1 for created, _ in group if created > trending_cutoff)
        entries.append({
            "id": venue_id,
            "venueId": venue_id,
            "name": meta["name"],
            "category": meta["category"],
            "slug": meta["slug"],
            "image": meta["image"],
            "crowdLevel": latest.get("crowdLevel"),
            "crowdLabel": crowd_label(latest.get("crowdLevel")),
            "musicVibe": latest.get("musicVibe"),
            "atmosphere": latest.get("atmosphere"),
            "waitTime": latest.get("waitTime") or "",
            "totalCheckins": len(group),
            "trendingScore": score,
            "trending": False,
            "lastUpdated": humanize_age(latest_at, now),
            "lastUpdatedAt": isoformat_or_none(latest_at),
            "_latest": latest_at,
        })

    ranked = sorted(
        entries,
        key=lambda e: (e["trendingScore"], e["totalCheckins"], e["_latest"]),
        reverse=True,
    )
    for entry in ranked[: max(trending_top_k, 0)]:
        if entry["trendingScore"] >= trending_min_checkins:
            entry["trending"] = True

    hot = [e for e in ranked if e["trending"]]
    rest = [e for e in entries if not e["trending"]]
    rest.sort(key=lambda e: (e["crowdLevel"] or 0, e["_latest"]), reverse=True)

    result = []
    for entry in hot + rest:
        entry.pop("_latest")
        result.append(entry)
    return result
