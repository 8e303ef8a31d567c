"""
Service events for external observers.

Events carry identifiers, identities and opaque handles only. No attribute
value, in clear or encrypted form, is ever part of an event.
"""

import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PROFILE_PUBLISHED = "profile.published"
    PREFERENCE_SUBMITTED = "preference.submitted"
    MATCH_COMPUTED = "match.computed"
    MATCH_MADE_PUBLIC = "match.made_public"


class MatchEvent(BaseModel):
    """Immutable event record."""
    model_config = ConfigDict(frozen=True)

    type: EventType


class ProfilePublished(MatchEvent):
    type: EventType = EventType.PROFILE_PUBLISHED
    profile_id: int
    owner: str


class PreferenceSubmitted(MatchEvent):
    type: EventType = EventType.PREFERENCE_SUBMITTED
    pref_id: int
    requester: str


class MatchComputed(MatchEvent):
    type: EventType = EventType.MATCH_COMPUTED
    profile_id: int
    pref_id: int
    handle: str


class MatchMadePublic(MatchEvent):
    type: EventType = EventType.MATCH_MADE_PUBLIC
    profile_id: int
    pref_id: int


Subscriber = Callable[[MatchEvent], None]

DEFAULT_MAX_HISTORY = 1000


class EventBus:
    """
    Synchronous publish/subscribe with a bounded in-memory history.

    The service only publishes after a call has committed, so observers
    never see events of aborted calls. A failing subscriber is logged and
    skipped; it never turns a committed call into an error.
    """

    def __init__(self, max_history: int = DEFAULT_MAX_HISTORY):
        if max_history < 1:
            raise ValueError("max_history must be positive")
        self._subscribers: Dict[int, Subscriber] = {}
        self._next_token = 0
        self._max_history = max_history
        self.history: List[MatchEvent] = []

    def subscribe(self, callback: Subscriber) -> int:
        self._next_token += 1
        self._subscribers[self._next_token] = callback
        return self._next_token

    def unsubscribe(self, token: int) -> bool:
        return self._subscribers.pop(token, None) is not None

    def publish(self, event: MatchEvent) -> int:
        """
        Record and deliver an event.

        Returns:
            number of subscribers that accepted the event
        """
        self.history.append(event)
        if len(self.history) > self._max_history:
            self.history = self.history[-self._max_history:]
        logger.info("event %s %s", event.type.value, event.model_dump(exclude={"type"}))

        delivered = 0
        for token, callback in list(self._subscribers.items()):
            try:
                callback(event)
            except Exception:
                logger.exception("subscriber %d failed on %s", token, event.type.value)
                continue
            delivered += 1
        return delivered

    def of_type(self, event_type: EventType) -> List[MatchEvent]:
        return [event for event in self.history if event.type == event_type]

    def last(self, event_type: Optional[EventType] = None) -> Optional[MatchEvent]:
        events = self.history if event_type is None else self.of_type(event_type)
        return events[-1] if events else None
