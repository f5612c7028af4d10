from __future__ import annotations
import ipaddress
import logging
import re
import threading
import time
import zlib
from collections.abc import Callable, Iterable
from typing import Any

import dill
from prometheus_client import Histogram

from .audit import DiffLogger, Event, EventKind, EventLog, InvalidArgumentCount, InvalidEventKind
from .storage import LegacyStore, MemoryStorage, RedisLegacyStore, RedisStorage, Storage

__all__ = [
    "ActivationEvaluator",
    "DiffLogger",
    "Event",
    "EventKind",
    "EventLog",
    "FeatureState",
    "GroupRegistry",
    "InvalidArgumentCount",
    "InvalidEventKind",
    "LegacyStore",
    "MemoryStorage",
    "RedisLegacyStore",
    "RedisStorage",
    "Rollout",
    "Storage",
    "bucket",
    "bucket_ip",
]


logger = logging.getLogger(__name__)

# An actor is any object with an `id` attribute. Group predicates receive the
# actor as is.
Actor = Any
Predicate = Callable[[Actor], bool]


_leading_int_re = re.compile(r"\s*([+-]?\d+(?:_\d+)*)")


def _to_int(s: str) -> int:
    """
    Parse the leading integer of s, ignoring anything after it. Single
    underscores between digits are accepted ("1_0" is 10). Strings without a
    leading integer parse to 0.
    """
    m = _leading_int_re.match(s)
    return int(m.group(1)) if m else 0


def bucket(actor_id: Any) -> int:
    """
    Hashes the given actor id to an integer in the range [0, 100).

    Stability of this hash is crucial: it decides which actors fall inside a
    percentage rollout, and has to agree across processes, restarts and with
    buckets assigned by other implementations reading the same storage.
    """
    return zlib.crc32(str(actor_id).encode("utf-8")) % 100


def bucket_ip(ip: str) -> int:
    """
    Folds the dotted quad ip into a single integer, one octet per byte, and
    returns it modulo 100.

    Octets are parsed leniently: a non numeric octet contributes 0 and
    trailing garbage after the digits is ignored. Existing rollouts depend on
    these buckets so malformed input is bucketed rather than rejected.
    """
    total = 0
    for octet in ip.split("."):
        total = (total << 8) + _to_int(octet)
    return total % 100


def _actor_id(actor: Actor) -> str:
    return str(getattr(actor, "id", actor))


def _split_csv(s: str) -> list[str]:
    return [v for v in s.split(",") if v]


class FeatureState:
    """
    Persisted activation state of a single feature.

    A new FeatureState is clear: percentage 0 and no users, groups or ips.
    """

    __slots__ = ("name", "percentage", "users", "groups", "ips")
    name: str
    percentage: int
    users: set[str]
    groups: set[str]
    ips: set[str]

    def __init__(
        self,
        name: str,
        percentage: int = 0,
        users: Iterable[Any] = (),
        groups: Iterable[Any] = (),
        ips: Iterable[str] = (),
    ):
        self.name = name
        self.percentage = int(percentage)
        self.users = set(str(u) for u in users)
        self.groups = set(str(g) for g in groups)
        self.ips = set(str(i) for i in ips)

    @staticmethod
    def deserialize(name: str, raw: str | None) -> FeatureState:
        """
        Parse the `percentage|users|groups|ips` record. Missing or empty
        records yield the clear state.
        """
        if not raw:
            return FeatureState(name)
        raw_percentage, raw_users, raw_groups, raw_ips = (raw.split("|") + ["", "", ""])[:4]
        return FeatureState(
            name,
            percentage=_to_int(raw_percentage),
            users=_split_csv(raw_users),
            groups=_split_csv(raw_groups),
            ips=_split_csv(raw_ips),
        )

    def serialize(self) -> str:
        # Members are sorted so the same state always serializes identically.
        return "|".join(
            [
                str(self.percentage),
                ",".join(sorted(self.users)),
                ",".join(sorted(self.groups)),
                ",".join(sorted(self.ips)),
            ]
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "percentage": self.percentage,
            "groups": sorted(self.groups),
            "users": sorted(self.users),
            "ips": sorted(self.ips),
        }

    def copy(self) -> FeatureState:
        return FeatureState(self.name, self.percentage, self.users, self.groups, self.ips)

    def set_percentage(self, percentage: int):
        # Not clamped. Buckets are always below 100 so anything >= 100 is
        # fully on and anything <= 0 is fully off for bucketed evaluation.
        self.percentage = int(percentage)

    def add_user(self, user: Actor):
        self.users.add(_actor_id(user))

    def remove_user(self, user: Actor):
        self.users.discard(_actor_id(user))

    def add_group(self, group: Any):
        self.groups.add(str(group))

    def remove_group(self, group: Any):
        self.groups.discard(str(group))

    def add_ip(self, ip: str):
        """
        Allow-list the given ip. Invalid addresses are ignored.
        """
        if not isinstance(ip, str):
            logger.debug("ignoring non string ip %r for feature %s", ip, self.name)
            return
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            logger.debug("ignoring invalid ip %r for feature %s", ip, self.name)
            return
        self.ips.add(ip)

    def remove_ip(self, ip: str):
        self.ips.discard(str(ip))

    def clear(self):
        self.percentage = 0
        self.users = set()
        self.groups = set()
        self.ips = set()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureState):
            return NotImplemented
        return self.name == other.name and self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"FeatureState({self.name!r}, {self.serialize()!r})"


def _all(actor: Actor) -> bool:
    return True


class GroupRegistry:
    """
    Named predicates over actors. The `all` group is always defined and
    matches every actor.
    """

    __slots__ = ("_predicates",)

    def __init__(self):
        self._predicates: dict[str, Predicate] = {"all": _all}

    @staticmethod
    def from_bytes(b: bytes) -> GroupRegistry:
        obj = dill.loads(b)
        assert isinstance(obj, GroupRegistry)
        return obj

    def to_bytes(self) -> bytes:
        # dill, unlike pickle, handles lambdas and closures.
        return dill.dumps(self)

    def __getstate__(self):
        return self._predicates

    def __setstate__(self, state):
        self._predicates = state

    def define(self, name: Any, predicate: Predicate | None = None):
        """
        Register predicate under name, replacing any existing one. When called
        without a predicate, returns a decorator.
        """
        if predicate is None:

            def decorator(f: Predicate) -> Predicate:
                self.define(name, f)
                return f

            return decorator
        if not callable(predicate):
            raise TypeError(f"predicate must be callable, not {type(predicate).__name__}")
        self._predicates[str(name)] = predicate
        return predicate

    def evaluate(self, name: Any, actor: Actor) -> bool:
        """
        Evaluate the named predicate for actor. Undefined groups never match.
        Exceptions raised by the predicate propagate.
        """
        predicate = self._predicates.get(str(name))
        if predicate is None:
            return False
        return bool(predicate(actor))

    def names(self) -> set[str]:
        return set(self._predicates)

    def __contains__(self, name: object) -> bool:
        return str(name) in self._predicates


_prom_eval_duration = Histogram(
    "rollout_evaluation_seconds",
    "Feature activation evaluation duration in seconds",
    buckets=[1e-6, 1e-5, 1e-4, 1e-3, 1e-2, 1e-1],
    labelnames=["feature", "kind", "active"],
)


class ActivationEvaluator:
    """
    Decides whether a feature is active for a user or an ip given its state.
    """

    def __init__(self, groups: GroupRegistry | None = None):
        self.groups = groups if groups is not None else GroupRegistry()

    def _record_eval_metrics(self, state: FeatureState, kind: str, active: bool, dur: float):
        _prom_eval_duration.labels(feature=state.name, kind=kind, active=str(active)).observe(dur)

    def active_for_user(self, state: FeatureState, actor: Actor | None) -> bool:
        start = time.perf_counter()
        if actor is None:
            # Anonymous actors have nothing to bucket or match against.
            active = state.percentage == 100
        else:
            actor_id = _actor_id(actor)
            active = bucket(actor_id) < state.percentage or actor_id in state.users or any(self.groups.evaluate(g, actor) for g in sorted(state.groups))
        self._record_eval_metrics(state, "user", active, time.perf_counter() - start)
        return active

    def active_for_ip(self, state: FeatureState, ip: str | None) -> bool:
        start = time.perf_counter()
        if ip is None:
            active = state.percentage == 100
        else:
            active = bucket_ip(ip) < state.percentage or ip in state.ips
        self._record_eval_metrics(state, "ip", active, time.perf_counter() - start)
        return active


class Rollout:
    """
    Feature activation backed by a Storage.

    Every mutation loads the feature, changes it and saves it back. Within one
    Rollout these cycles are serialized. Rollouts in other processes sharing
    the same storage are not coordinated with and the last write wins.

    storage: Where features are persisted.
    groups: Group predicates to evaluate against. A new registry holding only
        the `all` group is created if not given.
    legacy: Consulted once for features missing from storage. Migrated
        features are saved immediately.
    audit: Records a diff of every mutation.
    """

    _features_key = "feature:__features__"

    def __init__(
        self,
        storage: Storage,
        groups: GroupRegistry | None = None,
        legacy: LegacyStore | None = None,
        audit: DiffLogger | None = None,
    ):
        self._storage = storage
        self._evaluator = ActivationEvaluator(groups)
        self._legacy = legacy
        self._audit = audit
        self._mu = threading.RLock()

    @property
    def groups(self) -> GroupRegistry:
        return self._evaluator.groups

    @property
    def audit(self) -> DiffLogger | None:
        return self._audit

    @staticmethod
    def _key(name: str) -> str:
        return f"feature:{name}"

    def get(self, name: str) -> FeatureState:
        name = str(name)
        raw = self._storage.get(self._key(name))
        if raw is not None or self._legacy is None:
            return FeatureState.deserialize(name, raw)
        with self._mu:
            # Another caller may have migrated the feature while we waited.
            raw = self._storage.get(self._key(name))
            if raw is not None:
                return FeatureState.deserialize(name, raw)
            info = self._legacy.info(name)
            state = FeatureState(
                name,
                percentage=info.get("percentage", 0),
                users=info.get("users", []),
                groups=info.get("groups", []),
            )
            self.save(state)
        logger.info("migrated legacy feature %s", name)
        return state

    def save(self, state: FeatureState):
        self._storage.set(self._key(state.name), state.serialize())
        names = self.features()
        if state.name not in names:
            names.append(state.name)
            self._storage.set(self._features_key, ",".join(names))
        logger.debug("saved feature %s", state.name)

    def features(self) -> list[str]:
        return _split_csv(self._storage.get(self._features_key) or "")

    def _with_feature(self, name: str, mutate: Callable[[FeatureState], Any]):
        with self._mu:
            state = self.get(name)
            before = state.copy()
            mutate(state)
            self.save(state)
            if self._audit is not None:
                self._audit.log(EventKind.UPDATE, before, state)

    def activate(self, name: str):
        self._with_feature(name, lambda f: f.set_percentage(100))

    def deactivate(self, name: str):
        self._with_feature(name, lambda f: f.clear())

    def activate_percentage(self, name: str, percentage: int):
        self._with_feature(name, lambda f: f.set_percentage(percentage))

    def deactivate_percentage(self, name: str):
        self._with_feature(name, lambda f: f.set_percentage(0))

    def activate_group(self, name: str, group: Any):
        self._with_feature(name, lambda f: f.add_group(group))

    def deactivate_group(self, name: str, group: Any):
        self._with_feature(name, lambda f: f.remove_group(group))

    def activate_user(self, name: str, user: Actor):
        self._with_feature(name, lambda f: f.add_user(user))

    def deactivate_user(self, name: str, user: Actor):
        self._with_feature(name, lambda f: f.remove_user(user))

    def activate_ip(self, name: str, ip: str):
        self._with_feature(name, lambda f: f.add_ip(ip))

    def deactivate_ip(self, name: str, ip: str):
        self._with_feature(name, lambda f: f.remove_ip(ip))

    def define_group(self, group: Any, predicate: Predicate | None = None):
        return self.groups.define(group, predicate)

    def active_in_group(self, group: Any, actor: Actor) -> bool:
        return self.groups.evaluate(group, actor)

    def active(self, name: str, actor: Actor | None = None) -> bool:
        return self._evaluator.active_for_user(self.get(name), actor)

    def active_ip(self, name: str, ip: str | None = None) -> bool:
        return self._evaluator.active_for_ip(self.get(name), ip)
