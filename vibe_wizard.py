"""Check-in wizard: venue -> crowd -> vibe -> done.

States and events are immutable values and ``transition`` is a pure
function over them. ``VibeCheckSession`` owns the current state and runs the
one side effect (the submission) through a ``VibeCheckClient``.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import ClassVar, Union

from vibes import (
    ATMOSPHERES,
    CROWD_LEVELS,
    DEFAULT_ATMOSPHERE,
    DEFAULT_CROWD_LEVEL,
    DEFAULT_MUSIC_VIBE,
    DEFAULT_WAIT_TIME,
    MUSIC_VIBES,
    CheckInRejected,
    RetrievalError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Draft:
    venue: dict | None = None
    crowdLevel: int = DEFAULT_CROWD_LEVEL
    atmosphere: str = DEFAULT_ATMOSPHERE
    musicVibe: str = DEFAULT_MUSIC_VIBE
    waitTime: str = DEFAULT_WAIT_TIME

    @property
    def venue_id(self) -> str | None:
        if not self.venue:
            return None
        return self.venue.get("id") or self.venue.get("venueId")

    def to_checkin(self) -> dict:
        return {
            "venueId": self.venue_id,
            "crowdLevel": self.crowdLevel,
            "musicVibe": self.musicVibe,
            "atmosphere": self.atmosphere,
            "waitTime": self.waitTime,
        }


# --- States ---
@dataclass(frozen=True)
class ChoosingVenue:
    step: ClassVar[str] = "venue"
    draft: Draft = field(default_factory=Draft)


@dataclass(frozen=True)
class ChoosingCrowd:
    step: ClassVar[str] = "crowd"
    draft: Draft


@dataclass(frozen=True)
class ChoosingVibe:
    step: ClassVar[str] = "vibe"
    draft: Draft
    submitting: bool = False
    error: str | None = None


@dataclass(frozen=True)
class Done:
    step: ClassVar[str] = "done"
    draft: Draft
    checkIn: dict = field(default_factory=dict)


WizardState = Union[ChoosingVenue, ChoosingCrowd, ChoosingVibe, Done]


# --- Events ---
@dataclass(frozen=True)
class SelectVenue:
    venue: dict


@dataclass(frozen=True)
class PickCrowdLevel:
    level: int


@dataclass(frozen=True)
class SetAtmosphere:
    value: str


@dataclass(frozen=True)
class SetMusicVibe:
    value: str


@dataclass(frozen=True)
class SetWaitTime:
    value: str


@dataclass(frozen=True)
class Back:
    pass


@dataclass(frozen=True)
class Submit:
    pass


@dataclass(frozen=True)
class SubmitSucceeded:
    checkIn: dict


@dataclass(frozen=True)
class SubmitFailed:
    message: str


@dataclass(frozen=True)
class Reset:
    pass


WizardEvent = Union[
    SelectVenue, PickCrowdLevel, SetAtmosphere, SetMusicVibe, SetWaitTime,
    Back, Submit, SubmitSucceeded, SubmitFailed, Reset,
]


def initial_state() -> ChoosingVenue:
    return ChoosingVenue()


def _valid_level(level) -> bool:
    return isinstance(level, int) and not isinstance(level, bool) and level in CROWD_LEVELS


def transition(state: WizardState, event: WizardEvent) -> WizardState:
    """Return the state that follows ``event``.

    Pairs without a listed move (including out-of-range values) leave the
    state unchanged.
    """
    if isinstance(event, Reset):
        return initial_state()

    if isinstance(state, ChoosingVenue):
        if isinstance(event, SelectVenue) and event.venue and (event.venue.get("id") or event.venue.get("venueId")):
            return ChoosingCrowd(draft=replace(state.draft, venue=dict(event.venue)))
        return state

    if isinstance(state, ChoosingCrowd):
        if isinstance(event, PickCrowdLevel) and _valid_level(event.level):
            return ChoosingVibe(draft=replace(state.draft, crowdLevel=event.level))
        if isinstance(event, Back):
            return ChoosingVenue(draft=state.draft)
        return state

    if isinstance(state, ChoosingVibe):
        if state.submitting:
            if isinstance(event, SubmitSucceeded):
                return Done(draft=state.draft, checkIn=dict(event.checkIn or {}))
            if isinstance(event, SubmitFailed):
                return replace(state, submitting=False, error=event.message)
            return state
        if isinstance(event, SetAtmosphere) and event.value in ATMOSPHERES:
            return replace(state, draft=replace(state.draft, atmosphere=event.value))
        if isinstance(event, SetMusicVibe) and event.value in MUSIC_VIBES:
            return replace(state, draft=replace(state.draft, musicVibe=event.value))
        if isinstance(event, SetWaitTime) and isinstance(event.value, str):
            return replace(state, draft=replace(state.draft, waitTime=event.value.strip()[:40]))
        if isinstance(event, Back):
            return ChoosingCrowd(draft=state.draft)
        if isinstance(event, Submit):
            return replace(state, submitting=True, error=None)
        return state

    # Done only leaves through Reset
    return state


class VibeCheckSession:
    """One visitor's Vibe Check dialog: the live feed plus the wizard."""

    def __init__(self, client):
        self.client = client
        self.state: WizardState = initial_state()
        self.feed = None
        self.venue_choices: list = []

    @property
    def step(self) -> str:
        return self.state.step

    def open(self):
        self.feed = self.client.load_vibes()
        try:
            self.venue_choices = self.client.fetch_venues()
        except RetrievalError as exc:
            logger.warning(f"Venue directory unavailable, offering feed venues: {exc}")
            self.venue_choices = self.feed.display_venues
        return self.feed

    def dispatch(self, event: WizardEvent) -> WizardState:
        self.state = transition(self.state, event)
        if isinstance(self.state, ChoosingVibe) and self.state.submitting:
            self.state = transition(self.state, self._submit(self.state.draft))
            if isinstance(self.state, Done):
                self.feed = self.client.load_vibes()
        return self.state

    def _submit(self, draft: Draft):
        try:
            return SubmitSucceeded(self.client.submit_checkin(draft.to_checkin()))
        except CheckInRejected as exc:
            return SubmitFailed(exc.message)
        except Exception as exc:
            logger.error(f"Error submitting check-in: {exc}")
            return SubmitFailed("We couldn't save your check-in. Please try again.")

    def close(self):
        """Abandon the dialog; nothing is persisted before Submit."""
        self.state = initial_state()
