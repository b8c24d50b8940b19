"""
Per-chain cache of LMS collections.

One LMS sync chain fetches groups, users and courses once and shares them
across the steps through a ``SyncSessionCache`` passed explicitly to each
step. The cache expires after its TTL; an expired cache answers every lookup
as a miss so stale data is never served.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from partner_sync.utils.timeutils import isoformat, utcnow

DEFAULT_TTL = timedelta(minutes=60)

CACHE_KINDS = ("groups", "users", "courses", "group_counts", "partner_groups")


class SyncSessionCache:
    """Collections cached for one sync chain, with hit/miss accounting."""

    def __init__(
        self,
        session_id: str,
        *,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_id = session_id
        self.ttl = ttl
        self._clock = clock
        self.created_at = clock()
        self.refreshed_at = self.created_at
        self._data: dict[str, Any] = {}
        self.hits = 0
        self.misses = 0
        self.api_calls_saved = 0

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    @property
    def expires_at(self) -> datetime:
        return self.refreshed_at + self.ttl

    @property
    def is_expired(self) -> bool:
        return self._clock() >= self.expires_at

    def refresh(self) -> None:
        """Restart the TTL window without dropping cached data."""
        self.refreshed_at = self._clock()

    def clear_cache(self, kind: str | None = None) -> None:
        if kind is None:
            self._data.clear()
            return
        if kind not in CACHE_KINDS:
            raise ValueError(f"Unknown cache kind: {kind}")
        self._data.pop(kind, None)

    # ------------------------------------------------------------------
    # Generic access
    # ------------------------------------------------------------------

    def _get(self, kind: str):
        if self.is_expired or kind not in self._data:
            self.misses += 1
            return None
        self.hits += 1
        self.api_calls_saved += 1
        return self._data[kind]

    def _set(self, kind: str, value) -> None:
        self._data[kind] = value

    def get_groups(self) -> list[dict] | None:
        return self._get("groups")

    def set_groups(self, groups: list[dict]) -> None:
        self._set("groups", list(groups))
        self._set(
            "group_counts",
            {str(group["id"]): int((group.get("attributes") or {}).get("user_count") or 0) for group in groups},
        )

    def get_users(self) -> list[dict] | None:
        return self._get("users")

    def set_users(self, users: list[dict]) -> None:
        self._set("users", list(users))

    def get_courses(self) -> list[dict] | None:
        return self._get("courses")

    def set_courses(self, courses: list[dict]) -> None:
        self._set("courses", list(courses))

    def get_group_counts(self) -> dict[str, int] | None:
        return self._get("group_counts")

    def set_partner_groups(self, mapping: dict[int, str]) -> None:
        self._set("partner_groups", dict(mapping))

    def get_partner_group_id(self, partner_id: int) -> str | None:
        mapping = self._get("partner_groups")
        if mapping is None:
            return None
        return mapping.get(partner_id)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        lookups = self.hits + self.misses
        return {
            "session_id": self.session_id,
            "cache_hits": self.hits,
            "cache_misses": self.misses,
            "api_calls_saved": self.api_calls_saved,
            "hit_rate": round(self.hits / lookups * 100, 1) if lookups else 0.0,
            "age_seconds": round((self._clock() - self.created_at).total_seconds(), 1),
            "expires_at": isoformat(self.expires_at),
            "expired": self.is_expired,
            "cached": sorted(self._data),
        }


class SyncSessionManager:
    """
    Holds the one active session cache of this process.

    ``init`` replaces any previous session; when that session had not yet
    expired its stats are logged with a warning before it is discarded.
    ``get`` discards an expired session lazily.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._current: SyncSessionCache | None = None

    def init(self, session_id: str | None = None) -> SyncSessionCache:
        previous = self._current
        if previous is not None and not previous.is_expired:
            self.logger.warning(
                "Replacing active sync session %s before it expired",
                previous.session_id,
                extra={"sync_session_stats": previous.get_stats()},
            )
        self._current = SyncSessionCache(session_id or uuid.uuid4().hex, ttl=self.ttl, clock=self._clock)
        return self._current

    def get(self) -> SyncSessionCache | None:
        current = self._current
        if current is not None and current.is_expired:
            self.logger.info("Discarding expired sync session %s", current.session_id)
            self._current = None
            return None
        return current

    def end(self, session: SyncSessionCache | None = None) -> dict | None:
        """Close ``session`` (or the current one) and return its final stats."""
        target = session or self._current
        if target is None:
            return None
        stats = target.get_stats()
        target.clear_cache()
        if self._current is target:
            self._current = None
        return stats
