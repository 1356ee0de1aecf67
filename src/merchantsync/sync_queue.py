from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Iterable

from merchantsync.config import DEBOUNCE_SECONDS, MAX_RETRIES
from merchantsync.errors import ValidationError
from merchantsync.repo import Repo
from merchantsync.util import Clock


logger = logging.getLogger(__name__)

NEXT_DRAIN_KEY = "sync_queue_next_drain_at"
FAILED_ITEMS_KEY = "sync_failed_items"
MAX_FAILED_ITEMS = 100


@dataclass(frozen=True)
class QueueItem:
    entity_id: int
    attempts: int = 0

    def bumped(self) -> "QueueItem":
        return replace(self, attempts=self.attempts + 1)

    def to_dict(self) -> dict[str, int]:
        return {"entity_id": self.entity_id, "attempts": self.attempts}


def normalize_queue_entry(raw: Any) -> QueueItem | None:
    """
    Single normalization point for anything read from queue storage.

    Accepts structured entries (``{"entity_id"|"id": .., "attempts": ..}`` or a queue row)
    and legacy bare identifiers (``42`` / ``"42"``), which carry no attempt counter and
    start at 0. Returns None for entries that do not name a positive integer id.
    """
    if isinstance(raw, QueueItem):
        return raw
    if isinstance(raw, Mapping):
        ident = raw.get("entity_id", raw.get("id"))
        attempts_raw = raw.get("attempts")
    else:
        ident = raw
        attempts_raw = None

    if ident is None or isinstance(ident, bool):
        return None
    try:
        entity_id = int(str(ident).strip())
    except ValueError:
        return None
    if entity_id <= 0:
        return None

    try:
        attempts = int(attempts_raw) if attempts_raw is not None else 0
    except (TypeError, ValueError):
        attempts = 0
    return QueueItem(entity_id=entity_id, attempts=max(0, attempts))


class DrainScheduler:
    """Persisted one-shot timer: at most one pending drain at a time."""

    def __init__(self, repo: Repo, *, clock: Clock):
        self.repo = repo
        self.clock = clock

    def next_due(self) -> datetime | None:
        raw = self.repo.get_meta(NEXT_DRAIN_KEY)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    def schedule(self, delay_seconds: float) -> bool:
        """Schedule a drain ``delay_seconds`` from now unless one is already pending."""
        with self.repo.transaction() as conn:
            if self.repo.get_meta(NEXT_DRAIN_KEY, conn=conn):
                return False
            due = self.clock() + timedelta(seconds=delay_seconds)
            self.repo.set_meta(NEXT_DRAIN_KEY, due.isoformat(), conn=conn)
        return True

    def is_due(self) -> bool:
        due = self.next_due()
        return due is not None and due <= self.clock()

    def clear(self) -> None:
        self.repo.delete_meta(NEXT_DRAIN_KEY)


class SyncQueue:
    def __init__(
        self,
        repo: Repo,
        *,
        clock: Clock,
        max_retries: int = MAX_RETRIES,
        debounce_seconds: float = DEBOUNCE_SECONDS,
    ):
        self.repo = repo
        self.clock = clock
        self.max_retries = max_retries
        self.debounce_seconds = debounce_seconds
        self.scheduler = DrainScheduler(repo, clock=clock)

    def enqueue(self, entity_id: int) -> bool:
        """Queue ``entity_id`` for sync. Returns False when it was already queued."""
        item = normalize_queue_entry(entity_id)
        if item is None:
            raise ValidationError(f"invalid entity id: {entity_id!r}")
        with self.repo.transaction() as conn:
            added = self.repo.queue_insert(conn, entity_id=item.entity_id, attempts=0)
        # Leave room for bulk edits to pile up before the drain fires.
        self.scheduler.schedule(self.debounce_seconds)
        return added

    def enqueue_many(self, entity_ids: Iterable[int]) -> int:
        return sum(1 for eid in entity_ids if self.enqueue(eid))

    def dequeue_chunk(self, max_size: int) -> list[QueueItem]:
        if max_size <= 0:
            return []
        with self.repo.transaction() as conn:
            rows = self.repo.list_queue_rows(conn, limit=max_size)
            self.repo.queue_delete_seqs(conn, [r["seq"] for r in rows])
        items: list[QueueItem] = []
        for r in rows:
            item = normalize_queue_entry(r)
            if item is None:
                logger.warning("dropping malformed queue entry: %r", r)
                continue
            items.append(item)
        return items

    def requeue(self, items: Iterable[QueueItem]) -> list[QueueItem]:
        """
        Put back items whose attempts the caller already incremented.

        Items at or above ``max_retries`` are not queued again; they are recorded as
        permanent failures and returned.
        """
        dropped: list[QueueItem] = []
        with self.repo.transaction() as conn:
            for item in items:
                if item.attempts >= self.max_retries:
                    dropped.append(item)
                    continue
                self.repo.queue_insert(conn, entity_id=item.entity_id, attempts=item.attempts)
            if dropped:
                self._record_failures(conn, dropped)
        for item in dropped:
            logger.error(
                "entity %s abandoned after %s attempts",
                item.entity_id,
                item.attempts,
            )
        return dropped

    def _record_failures(self, conn, dropped: list[QueueItem]) -> None:
        failed = self.repo.get_meta_json(FAILED_ITEMS_KEY, default=[], conn=conn)
        if not isinstance(failed, list):
            failed = []
        now = self.clock().isoformat()
        for item in dropped:
            failed.append({"entity_id": item.entity_id, "attempts": item.attempts, "failed_at": now})
        self.repo.set_meta_json(FAILED_ITEMS_KEY, failed[-MAX_FAILED_ITEMS:], conn=conn)

    def import_legacy(self, raw_entries: Iterable[Any]) -> int:
        """Load entries from an older queue dump (bare ids or ``{id, attempts}`` dicts)."""
        items: list[QueueItem] = []
        for raw in raw_entries:
            item = normalize_queue_entry(raw)
            if item is None:
                logger.warning("ignoring malformed legacy queue entry: %r", raw)
                continue
            items.append(item)

        added = 0
        dropped: list[QueueItem] = []
        with self.repo.transaction() as conn:
            for item in items:
                if item.attempts >= self.max_retries:
                    dropped.append(item)
                    continue
                if self.repo.queue_insert(conn, entity_id=item.entity_id, attempts=item.attempts):
                    added += 1
            if dropped:
                self._record_failures(conn, dropped)
        if added:
            self.scheduler.schedule(self.debounce_seconds)
        return added

    def items(self) -> list[QueueItem]:
        out: list[QueueItem] = []
        for r in self.repo.list_queue_rows():
            item = normalize_queue_entry(r)
            if item is not None:
                out.append(item)
        return out

    def size(self) -> int:
        return self.repo.count_queue()

    def failed_items(self) -> list[dict[str, Any]]:
        failed = self.repo.get_meta_json(FAILED_ITEMS_KEY, default=[])
        return failed if isinstance(failed, list) else []
