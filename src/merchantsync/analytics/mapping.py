from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from merchantsync.config import MAX_UNMAPPED, UNMAPPED_ALERT_THROTTLE_HOURS
from merchantsync.entities import EntityStore
from merchantsync.notify.telegram import UNMAPPED_TEMPLATE, Notifier
from merchantsync.repo import Repo
from merchantsync.util import Clock


logger = logging.getLogger(__name__)

LAST_ALERT_KEY = "unmapped_last_alert_at"


class IdentityMapper:
    """Remote offer id -> local entity id: manual override, then SKU, then numeric id."""

    def __init__(self, entities: EntityStore, manual: dict[str, int] | None = None):
        self.entities = entities
        self.manual = manual or {}

    def resolve(self, offer_id: str) -> int | None:
        if offer_id in self.manual:
            candidate: int | None = self.manual[offer_id]
        else:
            candidate = self.entities.resolve_by_sku(offer_id)
            if candidate is None and offer_id.isdigit():
                candidate = int(offer_id)
        if candidate is None:
            return None
        # Overrides and raw ids can point at items that no longer exist.
        if self.entities.resolve(int(candidate)) is None:
            return None
        return int(candidate)


class UnmappedRegistry:
    """
    Remote records that could not be matched, deduped by offer id and capped in size.

    Entries added since the last alert stay pending until an alert goes out; alerts
    are throttled to one per ``throttle_hours``.
    """

    def __init__(
        self,
        repo: Repo,
        notifier: Notifier,
        *,
        clock: Clock,
        max_entries: int = MAX_UNMAPPED,
        throttle_hours: float = UNMAPPED_ALERT_THROTTLE_HOURS,
        alerts_enabled: bool = True,
    ):
        self.repo = repo
        self.notifier = notifier
        self.clock = clock
        self.max_entries = max_entries
        self.throttle = timedelta(hours=throttle_hours)
        self.alerts_enabled = alerts_enabled

    async def record(self, unmapped: dict[str, str]) -> list[str]:
        """Merge ``{offer_id: display_name}`` into the registry; returns first-seen ids."""
        if not unmapped:
            return []
        new_ids: list[str] = []
        with self.repo.transaction() as conn:
            existing = {r["offer_id"] for r in self.repo.list_unmapped(conn)}
            for offer_id, name in unmapped.items():
                if offer_id in existing:
                    self.repo.update_unmapped_name(conn, offer_id=offer_id, display_name=name)
                    continue
                self.repo.insert_unmapped(conn, offer_id=offer_id, display_name=name)
                existing.add(offer_id)
                new_ids.append(offer_id)
            evicted = self.repo.trim_unmapped(conn, keep=self.max_entries)
        if evicted:
            logger.info("unmapped registry full; evicted %d oldest entries", evicted)
        if new_ids:
            logger.info("%d new unmapped remote offers", len(new_ids))
        # Also flushes entries that were held back by the throttle on an earlier run.
        await self.maybe_alert()
        return new_ids

    async def maybe_alert(self) -> bool:
        """Send one alert for every pending entry unless an alert went out within the throttle window."""
        if not self.alerts_enabled:
            return False

        now = self.clock()
        last_raw = self.repo.get_meta(LAST_ALERT_KEY)
        if last_raw:
            try:
                if now - datetime.fromisoformat(last_raw) < self.throttle:
                    return False
            except ValueError:
                logger.warning("ignoring unreadable %s: %r", LAST_ALERT_KEY, last_raw)

        pending = [r for r in self.repo.list_unmapped() if not r["alerted"]]
        if not pending:
            return False

        products = [
            {"product_id": r["offer_id"], "product_name": r["display_name"], "sku": ""}
            for r in pending
        ]
        sent = await self.notifier.notify(UNMAPPED_TEMPLATE, {"count": len(products), "products": products})
        if not sent:
            return False
        with self.repo.transaction() as conn:
            self.repo.mark_unmapped_alerted(conn, [r["offer_id"] for r in pending])
            self.repo.set_meta(LAST_ALERT_KEY, now.isoformat(), conn=conn)
        return True

    def list(self) -> list[dict[str, Any]]:
        return self.repo.list_unmapped()

    def remove(self, offer_id: str) -> bool:
        return self.repo.delete_unmapped(offer_id) > 0

    def clear(self) -> int:
        return self.repo.delete_unmapped()
