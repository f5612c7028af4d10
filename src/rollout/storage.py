from __future__ import annotations
import logging
import threading
from abc import abstractmethod

import redis


logger = logging.getLogger(__name__)

ScoredMember = tuple[str, float]


class Storage:
    """
    The key-value and sorted-set contract that feature persistence and the
    audit event log are written against. Sorted-set operations follow Redis
    semantics: members are ordered by ascending score (ties by member), rank
    ranges are inclusive and negative ranks count from the end.
    """

    @abstractmethod
    def get(self, key: str) -> str | None: ...

    @abstractmethod
    def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    def sorted_set_add(self, key: str, score: float, member: str) -> None: ...

    @abstractmethod
    def sorted_set_trim(self, key: str, start: int, end: int) -> None:
        """
        Remove the members ranked start..end (inclusive).
        """

    @abstractmethod
    def sorted_set_range(self, key: str, start: int, end: int) -> list[ScoredMember]:
        """
        Return (member, score) pairs ranked start..end (inclusive).
        """


def _rank_range(n: int, start: int, end: int) -> range:
    if start < 0:
        start = max(n + start, 0)
    if end < 0:
        end = n + end
    else:
        end = min(end, n - 1)
    if start > end:
        return range(0)
    return range(start, end + 1)


class MemoryStorage(Storage):
    """
    In-process storage. MemoryStorage is thread-safe.
    """

    def __init__(self):
        self._mu = threading.Lock()
        self._values: dict[str, str] = {}
        self._sorted_sets: dict[str, dict[str, float]] = {}

    def get(self, key: str) -> str | None:
        with self._mu:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._mu:
            self._values[key] = value

    def _ordered(self, key: str) -> list[ScoredMember]:
        zset = self._sorted_sets.get(key, {})
        return sorted(zset.items(), key=lambda x: (x[1], x[0]))

    def sorted_set_add(self, key: str, score: float, member: str) -> None:
        with self._mu:
            self._sorted_sets.setdefault(key, {})[member] = float(score)

    def sorted_set_trim(self, key: str, start: int, end: int) -> None:
        with self._mu:
            ordered = self._ordered(key)
            zset = self._sorted_sets.get(key)
            for i in _rank_range(len(ordered), start, end):
                del zset[ordered[i][0]]

    def sorted_set_range(self, key: str, start: int, end: int) -> list[ScoredMember]:
        with self._mu:
            ordered = self._ordered(key)
            return [ordered[i] for i in _rank_range(len(ordered), start, end)]


def _decode(v: str | bytes) -> str:
    # Clients created without decode_responses hand back bytes.
    if isinstance(v, bytes):
        return v.decode("utf-8")
    return v


class RedisStorage(Storage):
    """
    Storage backed by a redis client. Connection handling, timeouts and
    retries are left to the client.
    """

    def __init__(self, client: redis.Redis):
        self._client = client

    @staticmethod
    def from_url(url: str) -> RedisStorage:
        return RedisStorage(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> str | None:
        v = self._client.get(key)
        return None if v is None else _decode(v)

    def set(self, key: str, value: str) -> None:
        self._client.set(key, value)

    def sorted_set_add(self, key: str, score: float, member: str) -> None:
        self._client.zadd(key, {member: score})

    def sorted_set_trim(self, key: str, start: int, end: int) -> None:
        self._client.zremrangebyrank(key, start, end)

    def sorted_set_range(self, key: str, start: int, end: int) -> list[ScoredMember]:
        return [(_decode(m), float(s)) for m, s in self._client.zrange(key, start, end, withscores=True)]


class LegacyStore:
    """
    One-shot source of features persisted in a pre-migration format. Only
    consulted when the primary storage has no record for a feature.
    """

    @abstractmethod
    def info(self, name: str) -> dict:
        """
        Return {"percentage": int, "users": [...], "groups": [...]} for the
        named feature.
        """


class RedisLegacyStore(LegacyStore):
    """
    Reads features stored in the legacy layout, one redis key per field:

    - feature:<name>:percentage -> integer string
    - feature:<name>:users -> set of user ids
    - feature:<name>:groups -> set of group names
    """

    def __init__(self, client: redis.Redis):
        self._client = client

    def info(self, name: str) -> dict:
        key = f"feature:{name}"
        percentage = self._client.get(f"{key}:percentage")
        users = self._client.smembers(f"{key}:users") or set()
        groups = self._client.smembers(f"{key}:groups") or set()
        logger.debug("read legacy feature %s", name)
        return {
            "percentage": int(_decode(percentage)) if percentage is not None else 0,
            "users": sorted(_decode(u) for u in users),
            "groups": sorted(_decode(g) for g in groups),
        }
