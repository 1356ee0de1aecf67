from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable

from merchantsync.analytics.pipeline import AnalyticsPipeline
from merchantsync.config import (
    BACKFILL_BATCH_DAYS,
    BACKFILL_BATCHES,
    BACKFILL_DELAY_SECONDS,
    BACKFILL_RESUME_AFTER_SECONDS,
)
from merchantsync.errors import SyncError
from merchantsync.notify.telegram import IMPORT_COMPLETE_TEMPLATE, Notifier
from merchantsync.repo import Repo
from merchantsync.util import Clock


logger = logging.getLogger(__name__)

PROGRESS_KEY = "analytics_import_progress"
IMPORTED_KEY = "analytics_imported_at"


class ImportStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class ImportProgress:
    status: ImportStatus = ImportStatus.NOT_STARTED
    current_batch: int = 0
    total_batches: int = BACKFILL_BATCHES
    products_processed: int = 0
    errors: list[str] = field(default_factory=list)
    anchor_date: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @staticmethod
    def from_dict(raw: Any) -> "ImportProgress":
        if not isinstance(raw, dict):
            return ImportProgress()
        try:
            status = ImportStatus(raw.get("status") or ImportStatus.NOT_STARTED.value)
        except ValueError:
            status = ImportStatus.NOT_STARTED
        return ImportProgress(
            status=status,
            current_batch=int(raw.get("current_batch") or 0),
            total_batches=int(raw.get("total_batches") or BACKFILL_BATCHES),
            products_processed=int(raw.get("products_processed") or 0),
            errors=[str(e) for e in raw.get("errors") or []],
            anchor_date=raw.get("anchor_date"),
            updated_at=raw.get("updated_at"),
        )


def _parse_anchor(raw: str | None) -> date | None:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


def batch_ranges(
    today: date,
    batches: int = BACKFILL_BATCHES,
    days: int = BACKFILL_BATCH_DAYS,
) -> list[tuple[date, date]]:
    """Consecutive ``days``-long ranges ending yesterday, oldest first."""
    out: list[tuple[date, date]] = []
    for b in range(batches):
        back = (batches - 1 - b) * days
        out.append((today - timedelta(days=back + days), today - timedelta(days=back + 1)))
    return out


class BulkImporter:
    """
    First-run backfill: ``batches`` sequential ranges of ``batch_days`` days.

    Progress is persisted after every batch. A failed batch leaves status ``error``
    with the completed batches kept; the next ``run()`` resumes at the failed batch
    using the same anchor date. Only a full pass sets the imported flag.
    """

    def __init__(
        self,
        *,
        repo: Repo,
        pipeline: AnalyticsPipeline,
        notifier: Notifier,
        clock: Clock,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        delay: float = BACKFILL_DELAY_SECONDS,
        batches: int = BACKFILL_BATCHES,
        batch_days: int = BACKFILL_BATCH_DAYS,
        resume_after_seconds: float = BACKFILL_RESUME_AFTER_SECONDS,
        notify_enabled: bool = True,
    ):
        self.repo = repo
        self.pipeline = pipeline
        self.notifier = notifier
        self.clock = clock
        self.sleep = sleep
        self.delay = delay
        self.batches = batches
        self.batch_days = batch_days
        self.resume_after = timedelta(seconds=resume_after_seconds)
        self.notify_enabled = notify_enabled

    def progress(self) -> ImportProgress:
        return ImportProgress.from_dict(self.repo.get_meta_json(PROGRESS_KEY))

    def is_imported(self) -> bool:
        return bool(self.repo.get_meta(IMPORTED_KEY))

    def _save(self, progress: ImportProgress) -> None:
        progress.updated_at = self.clock().isoformat()
        self.repo.set_meta_json(PROGRESS_KEY, progress.to_dict())

    async def run(self) -> ImportProgress:
        if self.is_imported():
            logger.info("analytics backfill already completed")
            return self.progress()

        progress = self.progress()
        anchor = _parse_anchor(progress.anchor_date)
        if progress.status in (ImportStatus.ERROR, ImportStatus.RUNNING) and anchor is not None:
            logger.info("resuming analytics backfill at batch %d/%d", progress.current_batch + 1, progress.total_batches)
        else:
            anchor = self.clock().date()
            progress = ImportProgress(
                total_batches=self.batches,
                anchor_date=anchor.isoformat(),
            )
        progress.status = ImportStatus.RUNNING
        self._save(progress)

        ranges = batch_ranges(anchor, progress.total_batches, self.batch_days)
        first = progress.current_batch
        for b in range(first, progress.total_batches):
            if b > first:
                await self.sleep(self.delay)
            start, end = ranges[b]
            logger.info("backfill batch %d/%d: %s..%s", b + 1, progress.total_batches, start, end)
            try:
                result = await self.pipeline.run(start, end)
            except SyncError as e:
                progress.status = ImportStatus.ERROR
                progress.errors.append(f"Batch {b + 1}: {e.message}")
                self._save(progress)
                logger.error("backfill batch %d failed: %s", b + 1, e.message)
                return progress
            progress.current_batch = b + 1
            progress.products_processed += result.processed
            self._save(progress)
            logger.info("backfill batch %d done: %d products", b + 1, result.processed)

        progress.status = ImportStatus.COMPLETED
        self._save(progress)
        self.repo.set_meta(IMPORTED_KEY, self.clock().isoformat())
        logger.info("analytics backfill completed: %d products processed", progress.products_processed)
        if self.notify_enabled:
            await self.notifier.notify(IMPORT_COMPLETE_TEMPLATE, {"progress": progress.to_dict()})
        return progress

    async def maybe_run(self) -> ImportProgress | None:
        """
        Start (or resume) the backfill when it has never completed.

        A running import is left alone unless its progress has not moved for
        ``resume_after_seconds`` (the process died mid-run). A failed import is
        retried after the same cool-down.
        """
        if self.is_imported():
            return None
        progress = self.progress()
        if progress.status in (ImportStatus.RUNNING, ImportStatus.ERROR) and not self._stale(progress):
            return None
        return await self.run()

    def _stale(self, progress: ImportProgress) -> bool:
        if not progress.updated_at:
            return True
        try:
            updated = datetime.fromisoformat(progress.updated_at)
        except ValueError:
            return True
        return self.clock() - updated >= self.resume_after
