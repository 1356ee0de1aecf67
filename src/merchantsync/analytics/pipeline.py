from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any

from merchantsync.analytics.mapping import IdentityMapper, UnmappedRegistry
from merchantsync.analytics.store import AnalyticsStore
from merchantsync.config import ANALYTICS_TIMEOUT_SEC, HISTORY_RETENTION_DAYS
from merchantsync.entities import EntityStore
from merchantsync.errors import SyncError
from merchantsync.quota import QuotaGate
from merchantsync.remote import RemoteClient
from merchantsync.repo import Repo
from merchantsync.util import Clock


logger = logging.getLogger(__name__)

PRODUCTS_ACTION = "gmc_analytics_products"
PRICING_ACTION = "gmc_analytics_pricing"

RUN_STATE_KEY = "analytics_run_state"
SYNC_ERRORS_KEY = "analytics_sync_errors"
LAST_DAILY_SYNC_KEY = "analytics_last_daily_sync"
MAX_SYNC_ERRORS = 10


class IngestionState(str, Enum):
    FETCHING_PRODUCTS = "fetching_products"
    FETCHING_PRICING = "fetching_pricing"
    MAPPING = "mapping"
    STORING = "storing"
    DONE = "done"
    ERROR = "error"


@dataclass
class IngestionResult:
    start: date
    end: date
    products_fetched: int = 0
    pricing_fetched: int = 0
    mapped: int = 0
    unmapped: int = 0
    new_unmapped: list[str] = field(default_factory=list)
    pricing_error: str | None = None
    folded: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.mapped

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "products_fetched": self.products_fetched,
            "pricing_fetched": self.pricing_fetched,
            "mapped": self.mapped,
            "unmapped": self.unmapped,
            "new_unmapped": self.new_unmapped,
            "pricing_error": self.pricing_error,
            "folded": self.folded,
        }


def _as_int(v: Any) -> int:
    try:
        return int(float(v or 0))
    except (TypeError, ValueError):
        return 0


def _as_float(v: Any) -> float:
    try:
        return float(v or 0)
    except (TypeError, ValueError):
        return 0.0


class AnalyticsPipeline:
    """
    One ingestion run: products -> pricing -> mapping -> storing -> done.

    Product fetch failures end the run (recorded in ``analytics_sync_errors`` and
    re-raised). Pricing is optional: a failed pricing fetch is logged and the run
    continues with no pricing attached.
    """

    def __init__(
        self,
        *,
        repo: Repo,
        remote: RemoteClient,
        quota: QuotaGate,
        store: AnalyticsStore,
        entities: EntityStore,
        unmapped: UnmappedRegistry,
        clock: Clock,
        timeout: float = ANALYTICS_TIMEOUT_SEC,
        history_days: int = HISTORY_RETENTION_DAYS,
    ):
        self.repo = repo
        self.remote = remote
        self.quota = quota
        self.store = store
        self.entities = entities
        self.unmapped = unmapped
        self.clock = clock
        self.timeout = timeout
        self.history_days = history_days

    # ------------------------------------------------------------------ #
    # run                                                                  #
    # ------------------------------------------------------------------ #

    async def run(self, start: date, end: date) -> IngestionResult:
        """Ingest ``start..end``; figures land in the bucket for ``end``."""
        result = IngestionResult(start=start, end=end)

        self._set_state(IngestionState.FETCHING_PRODUCTS, start, end)
        try:
            products = await self._fetch_pages(
                PRODUCTS_ACTION,
                "products",
                {"start_date": start.isoformat(), "end_date": end.isoformat()},
            )
        except SyncError as e:
            self._record_error(e.message)
            self._set_state(IngestionState.ERROR, start, end, error=e.message)
            logger.error("analytics sync %s..%s failed: %s", start, end, e.message)
            raise
        result.products_fetched = len(products)

        self._set_state(IngestionState.FETCHING_PRICING, start, end)
        try:
            pricing = await self._fetch_pages(PRICING_ACTION, "pricing", {})
        except SyncError as e:
            logger.warning("pricing fetch failed, continuing without pricing: %s", e.message)
            result.pricing_error = e.message
            pricing = []
        result.pricing_fetched = len(pricing)

        self._set_state(IngestionState.MAPPING, start, end)
        mapped, unmapped = self.map_records(products, pricing)
        result.mapped = len(mapped)
        result.unmapped = len(unmapped)
        result.new_unmapped = await self.unmapped.record(unmapped)

        self._set_state(IngestionState.STORING, start, end)
        result.folded = self.store.store_daily(end, mapped)
        self._write_history(end, mapped)
        self.repo.delete_meta(SYNC_ERRORS_KEY)

        self._set_state(IngestionState.DONE, start, end)
        logger.info(
            "analytics sync %s..%s: products=%d pricing=%d mapped=%d unmapped=%d",
            start,
            end,
            result.products_fetched,
            result.pricing_fetched,
            result.mapped,
            result.unmapped,
        )
        return result

    async def daily_sync(self) -> IngestionResult:
        today = self.clock().date()
        yesterday = today - timedelta(days=1)
        result = await self.run(yesterday, yesterday)
        self.repo.set_meta(LAST_DAILY_SYNC_KEY, today.isoformat())
        return result

    async def _fetch_pages(self, action: str, key: str, payload: dict[str, Any]) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        token: str | None = None
        seen: set[str] = set()
        while True:
            self.quota.ensure_admitted(action)
            body = await self.remote.call(action, {**payload, "page_token": token}, timeout=self.timeout)
            page = body.get(key)
            if isinstance(page, list):
                records.extend(r for r in page if isinstance(r, dict))
            token = body.get("next_page_token") or None
            if not token:
                break
            if token in seen:
                logger.warning("%s returned page token %r twice; stopping pagination", action, token)
                break
            seen.add(token)
        return records

    # ------------------------------------------------------------------ #
    # mapping                                                              #
    # ------------------------------------------------------------------ #

    def map_records(
        self,
        products: list[dict[str, Any]],
        pricing: list[dict[str, Any]],
    ) -> tuple[dict[int, dict[str, Any]], dict[str, str]]:
        """Resolve remote rows to entities. Returns (entries by entity id, unmapped offer id -> title)."""
        pricing_index = {str(p["offer_id"]): p for p in pricing if p.get("offer_id") is not None}
        mapper = IdentityMapper(self.entities, self.repo.get_manual_mappings())

        mapped: dict[int, dict[str, Any]] = {}
        unmapped: dict[str, str] = {}
        for p in products:
            offer_id = str(p.get("offer_id") or "").strip()
            if not offer_id:
                continue
            entity_id = mapper.resolve(offer_id)
            if entity_id is None:
                unmapped[offer_id] = str(p.get("title") or "")
                continue
            mapped[entity_id] = {
                "offer_id": offer_id,
                "clicks": _as_int(p.get("clicks")),
                "impressions": _as_int(p.get("impressions")),
                "conversions": _as_float(p.get("conversions")),
                "conversion_value": _as_float(p.get("conversion_value")),
                "pricing": pricing_index.get(offer_id),
            }
        return mapped, unmapped

    def set_manual_mapping(self, offer_id: str, entity_id: int) -> None:
        self.repo.set_manual_mapping(offer_id, entity_id)
        # A mapped offer is no longer unmapped.
        self.unmapped.remove(offer_id)

    def remove_manual_mapping(self, offer_id: str) -> bool:
        return self.repo.delete_manual_mapping(offer_id)

    def list_manual_mappings(self) -> dict[str, int]:
        return self.repo.get_manual_mappings()

    # ------------------------------------------------------------------ #
    # durable surfaces                                                     #
    # ------------------------------------------------------------------ #

    def _write_history(self, day: date, mapped: dict[int, dict[str, Any]]) -> None:
        clicks = 0
        conversions = 0.0
        above = 0
        diff_total = 0.0
        priced = 0
        for e in mapped.values():
            clicks += e["clicks"]
            conversions += e["conversions"]
            pricing = e.get("pricing")
            if pricing:
                if pricing.get("competitiveness") == "too_high":
                    above += 1
                diff_total += _as_float(pricing.get("price_diff_pct"))
                priced += 1
        with self.repo.transaction() as conn:
            self.repo.upsert_history(
                conn,
                day=day.isoformat(),
                clicks=clicks,
                conversions=conversions,
                price_score=round(diff_total / priced, 2) if priced else 0.0,
                products_above_benchmark=above,
            )
            self.repo.trim_history(conn, keep=self.history_days)

    def _record_error(self, message: str) -> None:
        with self.repo.transaction() as conn:
            errors = self.repo.get_meta_json(SYNC_ERRORS_KEY, default=[], conn=conn)
            if not isinstance(errors, list):
                errors = []
            errors.append({"timestamp": self.clock().isoformat(), "message": message})
            self.repo.set_meta_json(SYNC_ERRORS_KEY, errors[-MAX_SYNC_ERRORS:], conn=conn)

    def sync_errors(self) -> list[dict[str, Any]]:
        errors = self.repo.get_meta_json(SYNC_ERRORS_KEY, default=[])
        return errors if isinstance(errors, list) else []

    def _set_state(self, state: IngestionState, start: date, end: date, **extra: Any) -> None:
        logger.debug("analytics run %s..%s -> %s", start, end, state.value)
        self.repo.set_meta_json(
            RUN_STATE_KEY,
            {
                "state": state.value,
                "start": start.isoformat(),
                "end": end.isoformat(),
                "updated_at": self.clock().isoformat(),
                **extra,
            },
        )
