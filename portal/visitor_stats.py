from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def visitor_id(client_address: str, user_agent: str) -> str:
    """One-way pseudonymous id for a (address, user agent) pair."""
    raw = f"{client_address or 'unknown'}|{user_agent or 'unknown'}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class DailyBucket:
    visits: int = 0
    uniques: int = 0
    seen_ids: set[str] = field(default_factory=set)

    def to_dict(self) -> dict:
        return {
            "visits": self.visits,
            "uniques": self.uniques,
            "uniqueIds": sorted(self.seen_ids),
        }


@dataclass
class VisitorState:
    total_visitors: int = 0
    unique_visitors: set[str] = field(default_factory=set)
    daily_stats: dict[str, DailyBucket] = field(default_factory=dict)
    last_updated: str = field(default_factory=lambda: _iso(utc_now()))

    def to_dict(self) -> dict:
        return {
            "totalVisitors": self.total_visitors,
            "uniqueVisitors": sorted(self.unique_visitors),
            "dailyStats": {day: b.to_dict() for day, b in sorted(self.daily_stats.items())},
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VisitorState":
        """Build state from a persisted document.

        Counts that are missing or not numeric fall back to 0. A bucket's
        ``uniques`` is taken from its id list so the two cannot disagree.
        """
        if not isinstance(data, dict):
            raise ValueError("visitor snapshot is not a JSON object")
        state = cls()
        try:
            state.total_visitors = max(0, int(data.get("totalVisitors") or 0))
        except (TypeError, ValueError):
            state.total_visitors = 0
        state.unique_visitors = {str(v) for v in data.get("uniqueVisitors") or []}
        for day, raw in (data.get("dailyStats") or {}).items():
            if not isinstance(raw, dict):
                continue
            ids = {str(v) for v in raw.get("uniqueIds") or []}
            try:
                visits = int(raw.get("visits") or 0)
            except (TypeError, ValueError):
                visits = 0
            state.daily_stats[str(day)] = DailyBucket(
                visits=max(visits, len(ids)), uniques=len(ids), seen_ids=ids,
            )
        if data.get("lastUpdated"):
            state.last_updated = str(data["lastUpdated"])
        return state


def restore(path: str | os.PathLike) -> VisitorState:
    """Load the visitor snapshot. Any read or parse fault yields an empty state."""
    p = Path(path)
    if not p.exists():
        logger.info("No visitor data at %s, starting from zero", p)
        return VisitorState()
    try:
        state = VisitorState.from_dict(json.loads(p.read_text(encoding="utf-8")))
    except Exception:
        logger.exception("Failed to load visitor data from %s, starting from zero", p)
        return VisitorState()
    logger.info(
        "Loaded visitor data from %s: %d total, %d unique",
        p, state.total_visitors, len(state.unique_visitors),
    )
    return state


class VisitorStatsTracker:
    """Per-day deduplicated page-view counter persisted to a single JSON file."""

    def __init__(
        self,
        path: str | os.PathLike,
        state: VisitorState | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._path = Path(path)
        self._state = state if state is not None else VisitorState()
        self._clock = clock
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: str | os.PathLike, clock: Callable[[], datetime] = utc_now) -> "VisitorStatsTracker":
        return cls(path, restore(path), clock=clock)

    @property
    def path(self) -> Path:
        return self._path

    def _today(self) -> str:
        return self._clock().astimezone(timezone.utc).strftime("%Y-%m-%d")

    def record_visit(self, client_address: str, user_agent: str) -> bool:
        """Count a page view. Returns False if this visitor was already counted today."""
        vid = visitor_id(client_address, user_agent)
        today = self._today()
        with self._lock:
            bucket = self._state.daily_stats.setdefault(today, DailyBucket())
            if vid in bucket.seen_ids:
                logger.debug("Repeat visit ignored for %s (%s)", today, vid[:12])
                return False
            self._state.total_visitors += 1
            self._state.unique_visitors.add(vid)
            bucket.visits += 1
            bucket.uniques += 1
            bucket.seen_ids.add(vid)
            self._state.last_updated = _iso(self._clock())
            self._persist_locked()
            logger.info(
                "New visit for %s (%s): total=%d unique=%d",
                today, vid[:12], self._state.total_visitors, len(self._state.unique_visitors),
            )
        return True

    def get_stats(self) -> dict:
        today = self._today()
        with self._lock:
            bucket = self._state.daily_stats.get(today)
            return {
                "totalVisitors": self._state.total_visitors,
                "uniqueVisitors": len(self._state.unique_visitors),
                "todayVisitors": bucket.visits if bucket else 0,
                "todayUniqueVisitors": bucket.uniques if bucket else 0,
                "dailyStats": {day: b.to_dict() for day, b in sorted(self._state.daily_stats.items())},
                "lastUpdated": self._state.last_updated,
            }

    def persist(self) -> bool:
        with self._lock:
            return self._persist_locked()

    def _persist_locked(self) -> bool:
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(self._state.to_dict(), indent=2), encoding="utf-8")
            os.replace(tmp, self._path)
        except Exception:
            logger.exception("Failed to save visitor data to %s", self._path)
            return False
        return True
