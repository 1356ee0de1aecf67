from __future__ import annotations

import logging
import sqlite3
from datetime import date, timedelta
from typing import Any

from merchantsync.config import ARCHIVE_RETENTION_WEEKS, ROLLING_WINDOW_DAYS
from merchantsync.repo import METRIC_FIELDS, Repo
from merchantsync.util import Clock, iso_week_key, iter_days


logger = logging.getLogger(__name__)


def _empty_metrics() -> dict[str, Any]:
    return {"clicks": 0, "impressions": 0, "conversions": 0.0, "conversion_value": 0.0}


def _accumulate(target: dict[str, Any], source: dict[str, Any]) -> None:
    for f in METRIC_FIELDS:
        target[f] += source.get(f) or 0


def with_derived_rates(metrics: dict[str, Any]) -> dict[str, Any]:
    clicks = metrics["clicks"]
    impressions = metrics["impressions"]
    metrics["ctr"] = round(clicks / impressions * 100, 2) if impressions > 0 else 0.0
    metrics["conversion_rate"] = round(metrics["conversions"] / clicks * 100, 2) if clicks > 0 else 0.0
    return metrics


class AnalyticsStore:
    """
    Daily buckets for the rolling window plus additive ISO-week aggregates for older data.

    A day lives in exactly one place: compaction folds an aged daily bucket into its
    week and deletes it in the same transaction. ``archive_folds`` records every
    folded day; folding a recorded day again is refused, so weekly totals never
    double count a re-ingested day.
    """

    def __init__(
        self,
        repo: Repo,
        *,
        clock: Clock,
        window_days: int = ROLLING_WINDOW_DAYS,
        retention_weeks: int = ARCHIVE_RETENTION_WEEKS,
    ):
        self.repo = repo
        self.clock = clock
        self.window_days = window_days
        self.retention_weeks = retention_weeks

    def cutoff(self) -> date:
        """First day still inside the rolling window."""
        return self.clock().date() - timedelta(days=self.window_days)

    def store_daily(self, day: date, entries: dict[int, dict[str, Any]]) -> list[str]:
        """Overwrite the bucket for ``day`` and compact anything that aged out of the window."""
        with self.repo.transaction() as conn:
            self.repo.replace_daily_bucket(conn, day=day.isoformat(), entries=entries)
            return self._compact(conn)

    def compact(self) -> list[str]:
        with self.repo.transaction() as conn:
            return self._compact(conn)

    def _compact(self, conn: sqlite3.Connection) -> list[str]:
        cutoff = self.cutoff().isoformat()
        folded: list[str] = []
        for day in self.repo.list_daily_dates(conn):
            if day >= cutoff:
                continue
            if self._fold_day(conn, day):
                folded.append(day)
            self.repo.delete_daily_bucket(conn, day)
        self._prune_archive(conn)
        return folded

    def _fold_day(self, conn: sqlite3.Connection, day: str) -> bool:
        if self.repo.is_day_folded(conn, day):
            logger.info("daily bucket %s already archived; not folding again", day)
            return False
        week_key = iso_week_key(date.fromisoformat(day))
        entries = self.repo.get_daily_bucket(day, conn=conn)
        if entries:
            self.repo.add_to_archive(conn, week_key=week_key, entries=entries)
        self.repo.record_fold(conn, day=day, week_key=week_key)
        logger.debug("folded %s into %s (%d entities)", day, week_key, len(entries))
        return True

    def _prune_archive(self, conn: sqlite3.Connection) -> None:
        keys = self.repo.list_archive_week_keys(conn)
        evict = keys[self.retention_weeks:]
        if not evict:
            return
        self.repo.delete_archive_weeks(conn, evict)
        self.repo.delete_folds_for_weeks(conn, evict)
        logger.info("evicted archive weeks: %s", ", ".join(evict))

    def compile(self, start: date, end: date) -> dict[int, dict[str, Any]]:
        """
        Metrics per entity over ``start..end`` (inclusive).

        Daily buckets are summed day by day. When the range reaches back past the
        window, every archived week overlapping the archived part of the range is
        added whole (weekly granularity). Rates are derived here and never stored.
        """
        compiled: dict[int, dict[str, Any]] = {}
        if end < start:
            return compiled

        for d in iter_days(start, end):
            for entity_id, data in self.repo.get_daily_bucket(d.isoformat()).items():
                cur = compiled.setdefault(entity_id, {**_empty_metrics(), "pricing": None})
                _accumulate(cur, data)
                if data.get("pricing"):
                    cur["pricing"] = data["pricing"]

        cutoff = self.cutoff()
        if start < cutoff:
            archived_end = min(end, cutoff - timedelta(days=1))
            start_week = iso_week_key(start)
            end_week = iso_week_key(archived_end)
            for week_key, week_data in self.repo.get_archive().items():
                if week_key < start_week or week_key > end_week:
                    continue
                for entity_id, data in week_data.items():
                    cur = compiled.setdefault(entity_id, {**_empty_metrics(), "pricing": None})
                    _accumulate(cur, data)

        for metrics in compiled.values():
            with_derived_rates(metrics)
        return compiled
