from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from merchantsync.config import QUOTA_ADMIT_THRESHOLD_PCT, QUOTA_LIMITS
from merchantsync.errors import QuotaExceededError
from merchantsync.repo import Repo
from merchantsync.util import Clock, next_local_midnight


logger = logging.getLogger(__name__)


class QuotaGate:
    """
    Daily remote-call budget, keyed by subscription tier and reset at local midnight.

    Only ``record_usage`` mutates the counter; ``status``/``admit`` are pure reads.
    A counter whose day has passed reads as empty, and the next ``record_usage``
    starts a fresh day at ``cost`` instead of adding to the stale total.
    """

    def __init__(
        self,
        repo: Repo,
        *,
        clock: Clock,
        tier: str = "free",
        threshold_pct: float = QUOTA_ADMIT_THRESHOLD_PCT,
    ):
        self.repo = repo
        self.clock = clock
        self.tier = tier if tier in QUOTA_LIMITS else "free"
        self.threshold_pct = threshold_pct

    @property
    def limit(self) -> int:
        return QUOTA_LIMITS[self.tier]

    def _current(self, counter: dict[str, Any] | None, now: datetime) -> dict[str, Any] | None:
        """``counter`` if it belongs to today's quota period, else None."""
        if not counter:
            return None
        if counter.get("date") != now.date().isoformat():
            return None
        try:
            reset_at = datetime.fromisoformat(str(counter.get("reset_at")))
        except ValueError:
            return None
        return counter if now < reset_at else None

    def record_usage(self, action: str, cost: int = 1) -> None:
        now = self.clock()
        with self.repo.transaction() as conn:
            counter = self._current(self.repo.load_quota(conn), now)
            if counter is not None:
                total = counter["total"] + cost
                by_action = dict(counter["by_action"])
                by_action[action] = int(by_action.get(action, 0)) + cost
                reset_at = counter["reset_at"]
            else:
                total = cost
                by_action = {action: cost}
                reset_at = next_local_midnight(now).isoformat()
            self.repo.save_quota(
                conn,
                day=now.date().isoformat(),
                total=total,
                by_action=by_action,
                reset_at=reset_at,
            )

    def status(self) -> dict[str, Any]:
        now = self.clock()
        counter = self._current(self.repo.load_quota(), now)
        if counter is not None:
            used = counter["total"]
            by_action = counter["by_action"]
            reset_at = datetime.fromisoformat(counter["reset_at"])
        else:
            used = 0
            by_action = {}
            reset_at = next_local_midnight(now)
        limit = self.limit
        return {
            "used": used,
            "limit": limit,
            "remaining": max(0, limit - used),
            "percentage": round(used / limit * 100, 1) if limit > 0 else 0.0,
            "by_action": by_action,
            "reset_at": reset_at.isoformat(),
            "tier": self.tier,
        }

    def admit(self, action: str) -> bool:
        st = self.status()
        ok = st["percentage"] < self.threshold_pct
        if not ok:
            logger.warning(
                "quota gate refused %s: %s/%s calls (%.1f%%)",
                action,
                st["used"],
                st["limit"],
                st["percentage"],
            )
        return ok

    def ensure_admitted(self, action: str) -> None:
        """Raise ``QuotaExceededError`` when ``admit`` would refuse ``action``."""
        if self.admit(action):
            return
        st = self.status()
        raise QuotaExceededError(
            used=st["used"],
            limit=st["limit"],
            reset_at=datetime.fromisoformat(st["reset_at"]),
            now=self.clock(),
        )
