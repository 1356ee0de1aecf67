from __future__ import annotations

import asyncio
import json
from datetime import date, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import httpx

from merchantsync.analytics.backfill import (
    IMPORTED_KEY,
    BulkImporter,
    ImportProgress,
    ImportStatus,
    batch_ranges,
)
from merchantsync.analytics.mapping import UnmappedRegistry
from merchantsync.analytics.pipeline import AnalyticsPipeline
from merchantsync.analytics.store import AnalyticsStore
from merchantsync.db import SyncDB
from merchantsync.entities import Entity
from merchantsync.notify.telegram import IMPORT_COMPLETE_TEMPLATE
from merchantsync.quota import QuotaGate
from merchantsync.remote import Credentials, RemoteClient
from merchantsync.repo import Repo


TODAY = date(2026, 3, 10)


class _Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class _Catalog:
    def __init__(self, entities: list[Entity]):
        self._by_id = {e.id: e for e in entities}

    def resolve(self, entity_id: int) -> Entity | None:
        return self._by_id.get(int(entity_id))

    def resolve_by_sku(self, sku: str) -> int | None:
        return next((e.id for e in self._by_id.values() if e.sku == sku), None)


CATALOG = _Catalog(
    [
        Entity(id=1, sku="TEE-1", name="Tee", price="19.90", in_stock=True),
        Entity(id=2, sku="MUG-2", name="Mug", price="12", in_stock=True),
    ]
)


class _Remote:
    """Two mapped products per range; fails for any range starting on ``fail_start``."""

    def __init__(self, fail_start: str | None = None):
        self.fail_start = fail_start
        self.ranges: list[tuple[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        payload = body["payload"]
        if body["action"] == "gmc_analytics_pricing":
            return httpx.Response(200, json={"pricing": []})
        self.ranges.append((payload["start_date"], payload["end_date"]))
        if payload["start_date"] == self.fail_start:
            return httpx.Response(500, json={"error": "report timed out"})
        return httpx.Response(
            200,
            json={
                "products": [
                    {"offer_id": "TEE-1", "title": "Tee", "clicks": 3, "impressions": 30, "conversions": 1},
                    {"offer_id": "MUG-2", "title": "Mug", "clicks": 1, "impressions": 10, "conversions": 0},
                ]
            },
        )


def _importer(tmp_path: Path, remote: _Remote):
    db_path = tmp_path / "sync.sqlite3"
    SyncDB(db_path).init()
    repo = Repo(db_path)
    clock = _Clock(datetime(2026, 3, 10, 3, 0, tzinfo=ZoneInfo("UTC")))
    quota = QuotaGate(repo, clock=clock, tier="standard")
    notifier = MagicMock()
    notifier.notify = AsyncMock(return_value=True)
    pipeline = AnalyticsPipeline(
        repo=repo,
        remote=RemoteClient(
            endpoint="https://remote.test/index.php",
            credentials=Credentials(api_key="key-1234567890", merchant_id="m-1", service_account_json='{"type": "sa"}'),
            quota=quota,
            transport=httpx.MockTransport(remote),
        ),
        quota=quota,
        store=AnalyticsStore(repo, clock=clock),
        entities=CATALOG,
        unmapped=UnmappedRegistry(repo, notifier, clock=clock),
        clock=clock,
    )
    sleeps: list[float] = []

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    importer = BulkImporter(repo=repo, pipeline=pipeline, notifier=notifier, clock=clock, sleep=_sleep)
    return importer, repo, notifier, sleeps, clock


def test_batch_ranges_cover_ninety_days_oldest_first() -> None:
    ranges = batch_ranges(TODAY)

    assert len(ranges) == 9
    assert ranges[0] == (date(2025, 12, 10), date(2025, 12, 19))
    assert ranges[-1] == (date(2026, 2, 28), date(2026, 3, 9))
    for (_s1, e1), (s2, _e2) in zip(ranges, ranges[1:]):
        assert s2 == e1 + timedelta(days=1)


def test_nine_successful_batches_complete_the_import(tmp_path: Path) -> None:
    remote = _Remote()
    importer, repo, notifier, sleeps, _clock = _importer(tmp_path, remote)

    progress = asyncio.run(importer.run())

    assert progress.status is ImportStatus.COMPLETED
    assert progress.current_batch == 9
    assert progress.products_processed == 18
    assert importer.is_imported() is True
    assert remote.ranges == [(s.isoformat(), e.isoformat()) for s, e in batch_ranges(TODAY)]
    assert sleeps == [2.0] * 8
    notifier.notify.assert_awaited_once()
    assert notifier.notify.await_args.args[0] == IMPORT_COMPLETE_TEMPLATE

    stored = importer.progress()
    assert stored.status is ImportStatus.COMPLETED
    assert stored.anchor_date == "2026-03-10"

    # Never runs twice.
    again = asyncio.run(importer.run())
    assert again.status is ImportStatus.COMPLETED
    assert len(remote.ranges) == 9
    assert asyncio.run(importer.maybe_run()) is None
    notifier.notify.assert_awaited_once()


def test_failing_batch_halts_and_keeps_earlier_data(tmp_path: Path) -> None:
    fifth_start = batch_ranges(TODAY)[4][0].isoformat()
    remote = _Remote(fail_start=fifth_start)
    importer, repo, notifier, _sleeps, _clock = _importer(tmp_path, remote)

    progress = asyncio.run(importer.run())

    assert progress.status is ImportStatus.ERROR
    assert progress.current_batch == 4
    assert progress.products_processed == 8
    assert progress.errors == ["Batch 5: Cloud Error: report timed out"]
    assert importer.is_imported() is False
    assert repo.get_meta(IMPORTED_KEY) is None
    assert len(remote.ranges) == 5
    notifier.notify.assert_not_awaited()

    # Batches 1-4 ended outside the rolling window, so they were folded into the archive.
    first_four_ends = [e.isoformat() for _s, e in batch_ranges(TODAY)[:4]]
    assert [f["date"] for f in repo.list_folded_days()] == first_four_ends
    assert importer.progress().status is ImportStatus.ERROR


def test_resume_continues_from_failed_batch(tmp_path: Path) -> None:
    ranges = batch_ranges(TODAY)
    remote = _Remote(fail_start=ranges[4][0].isoformat())
    importer, _repo, notifier, _sleeps, clock = _importer(tmp_path, remote)
    asyncio.run(importer.run())

    remote.fail_start = None
    remote.ranges.clear()
    # Same anchor even if the retry happens a day later.
    clock.advance(days=1)
    progress = asyncio.run(importer.run())

    assert progress.status is ImportStatus.COMPLETED
    assert progress.products_processed == 18
    assert remote.ranges == [(s.isoformat(), e.isoformat()) for s, e in ranges[4:]]
    notifier.notify.assert_awaited_once()


def test_maybe_run_leaves_fresh_running_import_alone(tmp_path: Path) -> None:
    remote = _Remote()
    importer, repo, _notifier, _sleeps, clock = _importer(tmp_path, remote)
    running = ImportProgress(
        status=ImportStatus.RUNNING,
        current_batch=2,
        anchor_date="2026-03-10",
        updated_at=clock().isoformat(),
    )
    repo.set_meta_json("analytics_import_progress", running.to_dict())

    assert asyncio.run(importer.maybe_run()) is None
    assert remote.ranges == []

    # The process that owned it died; after the cool-down it is resumed.
    clock.advance(hours=2)
    progress = asyncio.run(importer.maybe_run())
    assert progress is not None
    assert progress.status is ImportStatus.COMPLETED
    assert len(remote.ranges) == 7
    assert progress.products_processed == 14


def test_progress_round_trips_through_meta() -> None:
    p = ImportProgress.from_dict({"status": "bogus", "current_batch": "3"})
    assert p.status is ImportStatus.NOT_STARTED
    assert p.current_batch == 3
    assert ImportProgress.from_dict(None) == ImportProgress()


def test_unreadable_anchor_starts_a_fresh_import(tmp_path: Path) -> None:
    remote = _Remote()
    importer, repo, _notifier, _sleeps, _clock = _importer(tmp_path, remote)
    broken = ImportProgress(status=ImportStatus.ERROR, current_batch=6, anchor_date="not-a-date", products_processed=12)
    repo.set_meta_json("analytics_import_progress", broken.to_dict())

    progress = asyncio.run(importer.run())

    assert progress.status is ImportStatus.COMPLETED
    assert progress.anchor_date == "2026-03-10"
    assert progress.products_processed == 18
    assert len(remote.ranges) == 9
