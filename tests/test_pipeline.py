from __future__ import annotations

import asyncio
import json
from datetime import date, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import httpx
import pytest

from merchantsync.analytics.mapping import UnmappedRegistry
from merchantsync.analytics.pipeline import (
    LAST_DAILY_SYNC_KEY,
    RUN_STATE_KEY,
    AnalyticsPipeline,
)
from merchantsync.analytics.store import AnalyticsStore
from merchantsync.db import SyncDB
from merchantsync.entities import Entity
from merchantsync.errors import ApiError, QuotaExceededError
from merchantsync.quota import QuotaGate
from merchantsync.remote import Credentials, RemoteClient
from merchantsync.repo import Repo
from merchantsync.util import next_local_midnight


class _Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


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
        Entity(id=3, sku=None, name="Cap", price="8", in_stock=True),
    ]
)

PRODUCTS_PAGE_1 = {
    "products": [
        {"offer_id": "TEE-1", "title": "Tee", "clicks": 10, "impressions": 200, "conversions": 1, "conversion_value": 19.9},
        {"offer_id": "sku-999", "title": "Mystery", "clicks": 4, "impressions": 40, "conversions": 0},
    ],
    "next_page_token": "p2",
}
PRODUCTS_PAGE_2 = {
    "products": [
        {"offer_id": "3", "title": "Cap", "clicks": 6, "impressions": 60, "conversions": 2, "conversion_value": 16},
    ],
}
PRICING = {
    "pricing": [
        {"offer_id": "TEE-1", "price_diff_pct": 12.5, "competitiveness": "too_high"},
        {"offer_id": "3", "price_diff_pct": -2.5, "competitiveness": "competitive"},
    ],
}


class _Remote:
    """Answers by action; counts calls per action."""

    def __init__(self, *, pricing_status: int = 200, products_status: int = 200, loop_tokens: bool = False):
        self.pricing_status = pricing_status
        self.products_status = products_status
        self.loop_tokens = loop_tokens
        self.calls: list[tuple[str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        action, payload = body["action"], body["payload"]
        self.calls.append((action, payload))
        if action == "gmc_analytics_products":
            if self.products_status != 200:
                return httpx.Response(self.products_status, json={"error": "report unavailable"})
            if self.loop_tokens:
                return httpx.Response(200, json={"products": [], "next_page_token": "same"})
            page = PRODUCTS_PAGE_2 if payload.get("page_token") == "p2" else PRODUCTS_PAGE_1
            return httpx.Response(200, json={"success": True, "data": page})
        if action == "gmc_analytics_pricing":
            if self.pricing_status != 200:
                return httpx.Response(self.pricing_status, json={"error": "pricing down"})
            return httpx.Response(200, json=PRICING)
        return httpx.Response(400, json={"error": f"unknown action {action}"})


def _pipeline(tmp_path: Path, remote: _Remote, notifier=None):
    db_path = tmp_path / "sync.sqlite3"
    SyncDB(db_path).init()
    repo = Repo(db_path)
    clock = _Clock(datetime(2026, 3, 10, 2, 15, tzinfo=ZoneInfo("UTC")))
    quota = QuotaGate(repo, clock=clock, tier="standard")
    client = RemoteClient(
        endpoint="https://remote.test/index.php",
        credentials=Credentials(api_key="key-1234567890", merchant_id="m-1", service_account_json='{"type": "sa"}'),
        quota=quota,
        transport=httpx.MockTransport(remote),
    )
    if notifier is None:
        notifier = MagicMock()
        notifier.notify = AsyncMock(return_value=True)
    store = AnalyticsStore(repo, clock=clock)
    pipeline = AnalyticsPipeline(
        repo=repo,
        remote=client,
        quota=quota,
        store=store,
        entities=CATALOG,
        unmapped=UnmappedRegistry(repo, notifier, clock=clock),
        clock=clock,
    )
    return pipeline, repo, quota, notifier


def test_run_paginates_maps_and_stores(tmp_path: Path) -> None:
    remote = _Remote()
    pipeline, repo, quota, notifier = _pipeline(tmp_path, remote)

    result = asyncio.run(pipeline.run(date(2026, 3, 9), date(2026, 3, 9)))

    actions = [a for a, _ in remote.calls]
    assert actions == ["gmc_analytics_products", "gmc_analytics_products", "gmc_analytics_pricing"]
    assert remote.calls[0][1] == {"start_date": "2026-03-09", "end_date": "2026-03-09", "page_token": None}
    assert remote.calls[1][1]["page_token"] == "p2"
    assert quota.status()["used"] == 3

    assert (result.products_fetched, result.pricing_fetched, result.mapped, result.unmapped) == (3, 2, 2, 1)
    assert result.new_unmapped == ["sku-999"]
    assert result.pricing_error is None

    bucket = repo.get_daily_bucket("2026-03-09")
    assert set(bucket) == {1, 3}
    assert bucket[1]["offer_id"] == "TEE-1"
    assert bucket[1]["clicks"] == 10
    assert bucket[1]["pricing"]["competitiveness"] == "too_high"
    assert bucket[3]["conversion_value"] == 16.0

    [history] = repo.list_history()
    assert history["date"] == "2026-03-09"
    assert history["clicks"] == 16
    assert history["conversions"] == 3.0
    assert history["price_score"] == 5.0
    assert history["products_above_benchmark"] == 1

    assert [r["offer_id"] for r in repo.list_unmapped()] == ["sku-999"]
    notifier.notify.assert_awaited_once()
    assert repo.get_meta_json(RUN_STATE_KEY)["state"] == "done"


def test_pricing_failure_does_not_fail_the_run(tmp_path: Path) -> None:
    pipeline, repo, _quota, _notifier = _pipeline(tmp_path, _Remote(pricing_status=503))

    result = asyncio.run(pipeline.run(date(2026, 3, 9), date(2026, 3, 9)))

    assert result.pricing_error == "Cloud Error: pricing down"
    assert result.mapped == 2
    bucket = repo.get_daily_bucket("2026-03-09")
    assert bucket[1]["pricing"] is None
    assert repo.list_history()[0]["price_score"] == 0.0
    assert pipeline.sync_errors() == []


def test_product_failure_is_recorded_and_raised(tmp_path: Path) -> None:
    remote = _Remote(products_status=500)
    pipeline, repo, _quota, _notifier = _pipeline(tmp_path, remote)

    for _ in range(12):
        with pytest.raises(ApiError):
            asyncio.run(pipeline.run(date(2026, 3, 9), date(2026, 3, 9)))

    errors = pipeline.sync_errors()
    assert len(errors) == 10
    assert errors[-1]["message"] == "Cloud Error: report unavailable"
    assert repo.get_meta_json(RUN_STATE_KEY)["state"] == "error"
    assert repo.get_daily_bucket("2026-03-09") == {}
    assert all(a == "gmc_analytics_products" for a, _ in remote.calls)

    # A clean run clears the error surface.
    remote.products_status = 200
    asyncio.run(pipeline.run(date(2026, 3, 9), date(2026, 3, 9)))
    assert pipeline.sync_errors() == []


def test_quota_above_threshold_blocks_before_any_call(tmp_path: Path) -> None:
    remote = _Remote()
    pipeline, repo, quota, _notifier = _pipeline(tmp_path, remote)
    now = pipeline.clock()
    with repo.transaction() as conn:
        repo.save_quota(
            conn,
            day=now.date().isoformat(),
            total=480,
            by_action={"batch_sync": 480},
            reset_at=next_local_midnight(now).isoformat(),
        )

    assert quota.admit("gmc_analytics_products") is False
    with pytest.raises(QuotaExceededError):
        asyncio.run(pipeline.run(date(2026, 3, 9), date(2026, 3, 9)))

    assert remote.calls == []
    assert quota.status()["used"] == 480


def test_repeated_page_token_stops_pagination(tmp_path: Path) -> None:
    remote = _Remote(loop_tokens=True)
    pipeline, _repo, _quota, _notifier = _pipeline(tmp_path, remote)

    result = asyncio.run(pipeline.run(date(2026, 3, 9), date(2026, 3, 9)))

    product_calls = [a for a, _ in remote.calls if a == "gmc_analytics_products"]
    assert len(product_calls) == 2
    assert result.products_fetched == 0


def test_daily_sync_targets_yesterday(tmp_path: Path) -> None:
    remote = _Remote()
    pipeline, repo, _quota, _notifier = _pipeline(tmp_path, remote)

    result = asyncio.run(pipeline.daily_sync())

    assert result.start == result.end == date(2026, 3, 9)
    assert repo.get_meta(LAST_DAILY_SYNC_KEY) == "2026-03-10"
    assert repo.list_daily_dates() == ["2026-03-09"]


def test_multi_day_range_is_stored_under_end_date(tmp_path: Path) -> None:
    pipeline, repo, _quota, _notifier = _pipeline(tmp_path, _Remote())

    asyncio.run(pipeline.run(date(2026, 2, 20), date(2026, 3, 1)))

    assert repo.list_daily_dates() == ["2026-03-01"]


def test_manual_mapping_resolves_unmapped_offer(tmp_path: Path) -> None:
    pipeline, repo, _quota, _notifier = _pipeline(tmp_path, _Remote())
    asyncio.run(pipeline.run(date(2026, 3, 9), date(2026, 3, 9)))
    assert [r["offer_id"] for r in repo.list_unmapped()] == ["sku-999"]

    pipeline.set_manual_mapping("sku-999", 2)
    assert pipeline.list_manual_mappings() == {"sku-999": 2}
    assert repo.list_unmapped() == []

    asyncio.run(pipeline.run(date(2026, 3, 9), date(2026, 3, 9)))
    bucket = repo.get_daily_bucket("2026-03-09")
    assert set(bucket) == {1, 2, 3}
    assert bucket[2]["offer_id"] == "sku-999"

    assert pipeline.remove_manual_mapping("sku-999") is True
    assert pipeline.remove_manual_mapping("sku-999") is False


def test_map_records_ignores_rows_without_offer_id(tmp_path: Path) -> None:
    pipeline, _repo, _quota, _notifier = _pipeline(tmp_path, _Remote())

    mapped, unmapped = pipeline.map_records(
        [{"title": "no id"}, {"offer_id": "MUG-2", "clicks": "7", "impressions": None, "conversions": "bad"}],
        [],
    )

    assert unmapped == {}
    assert mapped[2]["clicks"] == 7
    assert mapped[2]["impressions"] == 0
    assert mapped[2]["conversions"] == 0.0
