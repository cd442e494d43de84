"""HTTP client for the Vibe Check API.

Network failures on reads surface as ``RetrievalError``; ``load_vibes`` turns
them into an explicit error state that still carries a small built-in venue
list for display, so an empty night and a failed fetch never look alike.
"""
import logging
import os
from dataclasses import dataclass, field

import requests

from vibes import CheckInRejected, RetrievalError, SubmissionError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = os.environ.get("VIBE_API_BASE_URL", "http://localhost:5000")
DEFAULT_TIMEOUT = 5

LOADING = "loading"
LOADED = "loaded"
ERROR = "error"

FALLBACK_VENUES = (
    {
        "id": "1",
        "venueId": "1",
        "name": "Coral Bay",
        "slug": "coral-bay",
        "category": "Lounge",
        "image": None,
        "crowdLevel": 4,
        "crowdLabel": "Packed",
        "musicVibe": "dj",
        "atmosphere": "lively",
        "waitTime": "15-20 min",
        "lastUpdated": "10 min ago",
        "totalCheckins": 23,
        "trending": True,
    },
    {
        "id": "2",
        "venueId": "2",
        "name": "JJ's Irish Pub",
        "slug": "jjs-irish-pub",
        "category": "Pub",
        "image": None,
        "crowdLevel": 3,
        "crowdLabel": "Buzzing",
        "musicVibe": "live",
        "atmosphere": "lively",
        "waitTime": "No wait",
        "lastUpdated": "25 min ago",
        "totalCheckins": 15,
        "trending": True,
    },
    {
        "id": "3",
        "venueId": "3",
        "name": "Meisei",
        "slug": "meisei",
        "category": "Restaurant",
        "image": None,
        "crowdLevel": 2,
        "crowdLabel": "Quiet",
        "musicVibe": "background",
        "atmosphere": "classy",
        "waitTime": "5-10 min",
        "lastUpdated": "1 hour ago",
        "totalCheckins": 8,
        "trending": False,
    },
)


@dataclass
class VibeFeed:
    status: str = LOADING
    venues: list = field(default_factory=list)
    error: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.status == LOADED and not self.venues

    @property
    def display_venues(self) -> list:
        if self.status == ERROR:
            return [dict(v) for v in FALLBACK_VENUES]
        return list(self.venues)


def _error_message(response, default: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return default
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return default


class VibeCheckClient:
    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout: float = DEFAULT_TIMEOUT, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _get_json(self, path: str, params: dict | None = None) -> dict:
        try:
            response = self.session.get(self._url(path), params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise RetrievalError(f"GET {path} failed: {exc}") from exc
        if response.status_code != 200:
            raise RetrievalError(_error_message(response, f"GET {path} returned {response.status_code}"))
        try:
            data = response.json()
        except ValueError as exc:
            raise RetrievalError(f"GET {path} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise RetrievalError(f"GET {path} returned {type(data).__name__}, expected an object")
        return data

    def fetch_vibes(self, limit: int | None = None) -> list:
        params = {"limit": limit} if limit else None
        data = self._get_json("/api/vibe-check", params=params)
        return list(data.get("venues") or [])

    def fetch_venues(self, category: str | None = None) -> list:
        params = {"category": category} if category else None
        data = self._get_json("/api/vibe-check/venues", params=params)
        return list(data.get("venues") or [])

    def load_vibes(self, limit: int | None = None) -> VibeFeed:
        try:
            venues = self.fetch_vibes(limit=limit)
        except RetrievalError as exc:
            logger.warning(f"Error fetching vibes: {exc}")
            return VibeFeed(status=ERROR, error=str(exc))
        return VibeFeed(status=LOADED, venues=venues)

    def submit_checkin(self, checkin: dict) -> dict:
        """Post one check-in and return the stored record.

        Raises ``CheckInRejected`` when the service refuses the payload and
        ``SubmissionError`` when it could not be delivered or stored.
        """
        path = "/api/vibe-check/checkin"
        try:
            response = self.session.post(self._url(path), json=checkin, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise SubmissionError(f"Check-in could not be sent: {exc}") from exc
        if response.status_code in (400, 404, 422):
            errors = []
            try:
                errors = response.json().get("errors") or []
            except (ValueError, AttributeError):
                pass
            raise CheckInRejected(
                _error_message(response, "Check-in was rejected."),
                errors=errors,
                status=response.status_code,
            )
        if response.status_code not in (200, 201):
            raise SubmissionError(_error_message(response, f"Check-in failed with status {response.status_code}"))
        try:
            return response.json()["checkIn"]
        except (ValueError, KeyError, TypeError) as exc:
            raise SubmissionError("Check-in response was malformed") from exc
