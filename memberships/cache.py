from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from typing import Dict, List, Optional

import redis

from .subscription import Subscription

logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = 1


class AccessSnapshotCache:
    """Redis-backed cache of a member's subscription snapshots with in-memory fallback."""

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: int = 300, client=None) -> None:
        self._ttl_seconds = ttl_seconds
        self._redis = client
        self._mem: Dict[str, tuple[int, dict]] = {}

        if self._redis is None and redis_url:
            try:
                self._redis = redis.from_url(redis_url, decode_responses=True)
                self._redis.ping()
            except redis.RedisError as exc:
                logger.warning("Redis unavailable, using in-memory access cache", extra={"error": str(exc)})
                self._redis = None

    @property
    def uses_redis(self) -> bool:
        return self._redis is not None

    @staticmethod
    def _require_member_id(member_id: str) -> str:
        normalized = str(member_id).strip()
        if not normalized:
            raise ValueError("member_id is required")
        return normalized

    @staticmethod
    def _key(member_id: str) -> str:
        return f"memberships:access:v{CACHE_SCHEMA_VERSION}:{member_id}"

    def get(self, member_id: str) -> Optional[List[Subscription]]:
        key = self._key(self._require_member_id(member_id))

        if self._redis is not None:
            raw = self._redis.get(key)
            if not raw:
                return None
            return _decode_snapshot(json.loads(raw))

        data = self._mem.get(key)
        if not data:
            return None

        cached_at, payload = data
        if int(time.time()) - cached_at > self._ttl_seconds:
            self._mem.pop(key, None)
            return None
        return _decode_snapshot(payload)

    def set(self, member_id: str, subscriptions: List[Subscription], *, ttl_seconds: Optional[int] = None) -> None:
        key = self._key(self._require_member_id(member_id))
        ttl = ttl_seconds or self._ttl_seconds
        payload = _encode_snapshot(member_id, subscriptions)

        if self._redis is not None:
            self._redis.setex(key, ttl, json.dumps(payload))
            return

        self._mem[key] = (int(time.time()), payload)

    def invalidate(self, member_id: str) -> None:
        key = self._key(self._require_member_id(member_id))
        if self._redis is not None:
            self._redis.delete(key)
        self._mem.pop(key, None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _encode_snapshot(member_id: str, subscriptions: List[Subscription]) -> dict:
    return {
        "schema_version": CACHE_SCHEMA_VERSION,
        "member_id": member_id,
        "subscriptions": [
            {
                "id": sub.id,
                "membership_id": sub.membership_id,
                "state": sub.state.value,
                "start_date": _iso(sub.start_date),
                "trial_end": _iso(sub.trial_end),
                "expire_date": _iso(sub.expire_date),
                "grace_until": _iso(sub.grace_until),
                "gateway_id": sub.gateway_id,
                "version": sub.version,
            }
            for sub in subscriptions
        ],
    }


def _decode_snapshot(raw: dict) -> List[Subscription]:
    if int(raw.get("schema_version", CACHE_SCHEMA_VERSION)) != CACHE_SCHEMA_VERSION:
        raise ValueError("Unsupported access cache schema version")

    return [
        Subscription(
            id=item["id"],
            member_id=raw["member_id"],
            membership_id=item["membership_id"],
            state=item["state"],
            start_date=_parse(item["start_date"]),
            trial_end=_parse(item.get("trial_end")),
            expire_date=_parse(item.get("expire_date")),
            grace_until=_parse(item.get("grace_until")),
            gateway_id=item.get("gateway_id"),
            version=int(item.get("version", 0)),
        )
        for item in raw["subscriptions"]
    ]
