from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from merchantsync.config import CHUNK_SIZE, DEFAULT_TIMEOUT_SEC, FAST_RETRY_SECONDS
from merchantsync.entities import Entity, EntityStore, parse_price
from merchantsync.errors import SyncError
from merchantsync.quota import QuotaGate
from merchantsync.remote import RemoteClient
from merchantsync.sync_queue import QueueItem, SyncQueue


logger = logging.getLogger(__name__)

LAST_ERROR_KEY = "sync_last_error"
LAST_SUCCESS_KEY = "sync_last_success_at"

BATCH_ACTION = "batch_sync"


@dataclass(frozen=True)
class BatchEntry:
    batch_id: int
    offer_id: str
    language: str
    country: str
    availability: str
    price: str
    currency: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "offerId": self.offer_id,
            "language": self.language,
            "country": self.country,
            "availability": self.availability,
            "price": self.price,
            "currency": self.currency,
        }


@dataclass
class BatchOutcome:
    sent: int = 0
    synced: list[int] = field(default_factory=list)
    requeued: list[QueueItem] = field(default_factory=list)
    abandoned: list[QueueItem] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    error: str | None = None
    quota_denied: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "synced": self.synced,
            "requeued": [i.to_dict() for i in self.requeued],
            "abandoned": [i.to_dict() for i in self.abandoned],
            "skipped": self.skipped,
            "error": self.error,
            "quota_denied": self.quota_denied,
        }


def build_entry(
    item: QueueItem,
    entity: Entity | None,
    *,
    language: str,
    country: str,
    currency: str,
) -> BatchEntry | None:
    """Batch entry for ``item``, or None when the entity is gone or its price is unusable."""
    if entity is None:
        return None
    price = parse_price(entity.price)
    if price is None:
        return None
    return BatchEntry(
        batch_id=item.entity_id,
        offer_id=str(entity.sku or entity.id),
        language=language.strip().lower()[:2],
        country=country.strip().upper(),
        availability="in stock" if entity.in_stock else "out of stock",
        price=str(price),
        currency=currency,
    )


def normalize_results(results: Any) -> dict[int, Any]:
    """
    Key remote results by batch id.

    The remote may answer with a map keyed by batch id, or with a list of objects
    each tagged with ``batchId``; an explicit ``batchId`` wins over the map key.
    """
    pairs: list[tuple[Any, Any]]
    if isinstance(results, Mapping):
        pairs = list(results.items())
    elif isinstance(results, list):
        pairs = [(None, v) for v in results]
    else:
        return {}

    out: dict[int, Any] = {}
    for key, value in pairs:
        if isinstance(value, Mapping) and value.get("batchId") is not None:
            key = value["batchId"]
        if key is None:
            continue
        try:
            out[int(key)] = value
        except (TypeError, ValueError):
            continue
    return out


def _is_error_result(result: Any) -> bool:
    if isinstance(result, Mapping):
        if str(result.get("status") or "").lower() == "error":
            return True
        if result.get("success") is False:
            return True
    return False


def reconcile_results(
    sent: dict[int, QueueItem],
    results: Any,
) -> tuple[list[int], list[QueueItem]]:
    """Split sent items into (synced ids, failed items with attempts incremented)."""
    by_id = normalize_results(results)
    synced: list[int] = []
    failed: list[QueueItem] = []
    for entity_id, item in sent.items():
        result = by_id.get(entity_id)
        if result is None or _is_error_result(result):
            failed.append(item.bumped())
        else:
            synced.append(entity_id)
    return synced, failed


class BatchReconciler:
    def __init__(
        self,
        *,
        queue: SyncQueue,
        remote: RemoteClient,
        entities: EntityStore,
        quota: QuotaGate | None = None,
        language: str = "en",
        country: str = "US",
        currency: str = "USD",
        chunk_size: int = CHUNK_SIZE,
        fast_retry_seconds: float = FAST_RETRY_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SEC,
    ):
        self.queue = queue
        self.repo = queue.repo
        self.remote = remote
        self.entities = entities
        self.quota = quota
        self.language = language
        self.country = country
        self.currency = currency
        self.chunk_size = chunk_size
        self.fast_retry_seconds = fast_retry_seconds
        self.timeout = timeout

    async def run(self) -> BatchOutcome:
        outcome = BatchOutcome()
        # This run consumes the pending drain; anything left re-arms it below.
        self.queue.scheduler.clear()

        if self.queue.size() == 0:
            return outcome

        if self.quota is not None and not self.quota.admit(BATCH_ACTION):
            outcome.quota_denied = True
            st = self.quota.status()
            wait = (datetime.fromisoformat(st["reset_at"]) - self.queue.clock()).total_seconds()
            self.queue.scheduler.schedule(max(self.fast_retry_seconds, wait))
            return outcome

        chunk = self.queue.dequeue_chunk(self.chunk_size)
        try:
            try:
                failed = await self._send_chunk(chunk, outcome)
            except Exception as e:
                # The chunk is already out of storage; put it back before propagating.
                self._restore_chunk(chunk, outcome, e)
                raise

            if failed:
                outcome.abandoned = self.queue.requeue(failed)
                abandoned_ids = {i.entity_id for i in outcome.abandoned}
                outcome.requeued = [i for i in failed if i.entity_id not in abandoned_ids]
                message = outcome.error or f"{len(failed)} items failed and will be retried."
                if outcome.abandoned:
                    message += f" {len(outcome.abandoned)} items abandoned after {self.queue.max_retries} attempts."
                self._record_failure(message)
            elif outcome.sent:
                self._record_success()
            if outcome.sent:
                logger.info(
                    "batch sync: sent=%d synced=%d requeued=%d abandoned=%d",
                    outcome.sent,
                    len(outcome.synced),
                    len(outcome.requeued),
                    len(outcome.abandoned),
                )
        finally:
            if self.queue.size() > 0:
                self.queue.scheduler.schedule(self.fast_retry_seconds)
        return outcome

    async def _send_chunk(self, chunk: list[QueueItem], outcome: BatchOutcome) -> list[QueueItem]:
        """Build and send one batch. Returns the sent items that failed, attempts already bumped."""
        processing: dict[int, QueueItem] = {}
        entries: list[BatchEntry] = []
        for item in chunk:
            entry = build_entry(
                item,
                self.entities.resolve(item.entity_id),
                language=self.language,
                country=self.country,
                currency=self.currency,
            )
            if entry is None:
                outcome.skipped.append(item.entity_id)
                continue
            processing[item.entity_id] = item
            entries.append(entry)

        if outcome.skipped:
            logger.info("skipped %d queue items with missing entity or invalid price", len(outcome.skipped))
        if not entries:
            return []

        outcome.sent = len(entries)
        try:
            response = await self.remote.call(
                BATCH_ACTION,
                {"entries": [e.to_payload() for e in entries]},
                timeout=self.timeout,
            )
        except SyncError as e:
            outcome.error = f"API Error: {e.message}"
            logger.warning("batch sync call failed (%s): %s", e.kind, e.message)
            return [item.bumped() for item in processing.values()]
        outcome.synced, failed = reconcile_results(processing, response.get("results"))
        return failed

    def _restore_chunk(self, chunk: list[QueueItem], outcome: BatchOutcome, exc: Exception) -> None:
        skipped = set(outcome.skipped)
        bumped = [item.bumped() for item in chunk if item.entity_id not in skipped]
        outcome.synced = []
        outcome.abandoned = self.queue.requeue(bumped)
        abandoned_ids = {i.entity_id for i in outcome.abandoned}
        outcome.requeued = [i for i in bumped if i.entity_id not in abandoned_ids]
        outcome.error = f"Sync Error: {type(exc).__name__}: {exc}"
        self._record_failure(f"{outcome.error}. {len(outcome.requeued)} items will be retried.")
        logger.error(
            "batch sync aborted: %s; requeued=%d abandoned=%d",
            outcome.error,
            len(outcome.requeued),
            len(outcome.abandoned),
        )

    def _record_failure(self, message: str) -> None:
        self.repo.set_meta_json(
            LAST_ERROR_KEY,
            {"time": self.queue.clock().isoformat(), "message": message},
        )

    def _record_success(self) -> None:
        self.repo.delete_meta(LAST_ERROR_KEY)
        self.repo.set_meta(LAST_SUCCESS_KEY, self.queue.clock().isoformat())


def sync_stats(
    queue: SyncQueue,
    *,
    quota: QuotaGate | None = None,
    entities: EntityStore | None = None,
) -> dict[str, Any]:
    """Snapshot of the catalog sync for dashboards; never runs the engine."""
    repo = queue.repo
    queue_items: list[dict[str, Any]] = []
    for item in queue.items():
        row: dict[str, Any] = {"id": item.entity_id, "attempts": item.attempts, "status": "pending"}
        if entities is not None:
            e = entities.resolve(item.entity_id)
            row["name"] = e.name if e else None
            row["sku"] = (e.sku or "-") if e else None
        queue_items.append(row)

    error_data = repo.get_meta_json(LAST_ERROR_KEY)
    has_error = isinstance(error_data, dict) and bool(error_data)
    next_due = queue.scheduler.next_due()
    quota_st = quota.status() if quota is not None else None

    return {
        "queue_size": len(queue_items),
        "queue_items": queue_items,
        "pending_products": [q["id"] for q in queue_items],
        "failed_products": [f.get("entity_id") for f in queue.failed_items()],
        "last_sync_time": repo.get_meta(LAST_SUCCESS_KEY),
        "next_sync_due": next_due.isoformat() if next_due else None,
        "quota_used": quota_st["used"] if quota_st else None,
        "quota_limit": quota_st["limit"] if quota_st else None,
        "success_rate": 0 if has_error else 100,
        "last_error": error_data.get("message") if has_error else None,
    }
