from __future__ import annotations
import datetime
import enum
import json
import logging
import os
import threading
from typing import TYPE_CHECKING, Any

import jsonschema

from .storage import Storage

if TYPE_CHECKING:
    from . import FeatureState


logger = logging.getLogger(__name__)

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.UTC)
_MICROSECOND = datetime.timedelta(microseconds=1)

with open(os.path.join(os.path.dirname(__file__), "event_schema.json")) as f:
    _event_schema = json.load(f)


class InvalidEventKind(ValueError):
    pass


class InvalidArgumentCount(ValueError):
    pass


class EventKind(enum.Enum):
    UPDATE = "update"


# Number of arguments each event handler is dispatched with.
_event_argument_counts: dict[EventKind, int] = {
    EventKind.UPDATE: 2,
}


def _event_kind(name: Any, feature_name: str | None = None) -> EventKind:
    try:
        return EventKind(name)
    except ValueError:
        where = f" for feature {feature_name}" if feature_name is not None else ""
        raise InvalidEventKind(f"invalid event kind {name!r}{where}") from None


class Event:
    """
    A single audit log entry. created_at is a timezone aware UTC datetime with
    microsecond resolution.
    """

    __slots__ = ("name", "data", "created_at")
    name: EventKind
    data: dict[str, Any]
    created_at: datetime.datetime

    def __init__(self, name: EventKind, data: dict[str, Any], created_at: datetime.datetime):
        self.name = name
        self.data = data
        self.created_at = created_at

    @property
    def timestamp(self) -> int:
        """
        Microseconds since the unix epoch. Integer arithmetic on timedeltas
        keeps this exact, unlike scaling a float timestamp.
        """
        return (self.created_at - _EPOCH) // _MICROSECOND

    def serialize(self) -> str:
        # created_at keeps members of identical diffs distinct in the sorted set.
        return json.dumps({"name": self.name.value, "data": self.data, "created_at": self.timestamp})

    @staticmethod
    def from_raw(value: str, score: float, feature_name: str | None = None) -> Event:
        """
        Rebuild an event from a stored log member and its score. The score is
        the negated microsecond timestamp.
        """
        payload = json.loads(value)
        jsonschema.validate(payload, _event_schema)
        kind = _event_kind(payload["name"], feature_name)
        created_at = _EPOCH + datetime.timedelta(microseconds=-int(score))
        return Event(kind, payload["data"], created_at)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Event):
            return NotImplemented
        return (self.name, self.data, self.created_at) == (other.name, other.data, other.created_at)

    def __repr__(self) -> str:
        return f"Event({self.name.value!r}, {self.data!r}, {self.created_at.isoformat()!r})"


class EventLog:
    """
    Bounded per-feature log of audit events. Each feature's events live in one
    sorted set scored by the negated timestamp so ascending rank order is most
    recent first.
    """

    def __init__(self, storage: Storage, history_length: int = 50):
        if history_length < 1:
            raise ValueError("history_length must be at least 1")
        self._storage = storage
        self.history_length = history_length

    @staticmethod
    def _key(feature_name: str) -> str:
        return f"feature:{feature_name}:logging:events"

    def append(self, feature_name: str, event: Event):
        key = self._key(feature_name)
        self._storage.sorted_set_add(key, -event.timestamp, event.serialize())
        self._storage.sorted_set_trim(key, self.history_length, -1)
        logger.debug("appended %s event for feature %s", event.name.value, feature_name)

    def last(self, feature_name: str) -> Event | None:
        entries = self._storage.sorted_set_range(self._key(feature_name), 0, 0)
        if not entries:
            return None
        value, score = entries[0]
        return Event.from_raw(value, score, feature_name)

    def all(self, feature_name: str) -> list[Event]:
        """
        All retained events, most recent first.
        """
        entries = self._storage.sorted_set_range(self._key(feature_name), 0, -1)
        return [Event.from_raw(value, score, feature_name) for value, score in entries]

    def updated_at(self, feature_name: str) -> datetime.datetime | None:
        event = self.last(feature_name)
        return event.created_at if event is not None else None


class DiffLogger:
    """
    Records the difference between successive feature states into an
    EventLog. Events are dispatched by kind through log(), which validates
    both the kind and the number of arguments before calling the handler.
    """

    def __init__(self, events: EventLog):
        self.events = events
        self._mu = threading.Lock()
        self._last_created_at: datetime.datetime | None = None
        self._handlers = {
            EventKind.UPDATE: self.update,
        }

    def _now(self) -> datetime.datetime:
        """
        Wall clock time, bumped by a microsecond when it does not advance past
        the previous event of this logger.
        """
        with self._mu:
            now = datetime.datetime.now(datetime.UTC)
            if self._last_created_at is not None and now <= self._last_created_at:
                now = self._last_created_at + _MICROSECOND
            self._last_created_at = now
            return now

    @staticmethod
    def diff(before: FeatureState, after: FeatureState, created_at: datetime.datetime | None = None) -> Event:
        before_fields = before.to_dict()
        after_fields = after.to_dict()
        change: dict[str, dict[str, Any]] = {"before": {}, "after": {}}
        for field in before_fields:
            if field not in after_fields or before_fields[field] == after_fields[field]:
                continue
            change["before"][field] = before_fields[field]
            change["after"][field] = after_fields[field]
        if created_at is None:
            created_at = datetime.datetime.now(datetime.UTC)
        return Event(EventKind.UPDATE, change, created_at)

    def update(self, before: FeatureState, after: FeatureState) -> Event:
        # An update with no changed fields is still logged.
        event = self.diff(before, after, self._now())
        self.events.append(after.name, event)
        return event

    def log(self, kind: EventKind | str, *args: Any) -> Any:
        kind = _event_kind(kind)
        expected = _event_argument_counts[kind]
        if len(args) != expected:
            raise InvalidArgumentCount(f"invalid number of arguments for event {kind.value!r}: expected {expected} but got {len(args)}")
        return self._handlers[kind](*args)
