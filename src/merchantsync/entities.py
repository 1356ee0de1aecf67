from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Protocol


@dataclass(frozen=True)
class Entity:
    id: int
    sku: str | None
    name: str
    price: Any
    in_stock: bool


class EntityStore(Protocol):
    def resolve(self, entity_id: int) -> Entity | None:
        """Return the catalog item, or None when it no longer exists."""

    def resolve_by_sku(self, sku: str) -> int | None:
        """Return the local id for an exact SKU match."""


def parse_price(value: Any) -> Decimal | None:
    """Decimal price, or None for missing/non-numeric/negative input."""
    if value is None or isinstance(value, bool):
        return None
    s = str(value).strip().replace(",", "")
    if s == "":
        return None
    try:
        d = Decimal(s)
    except InvalidOperation:
        return None
    if not d.is_finite() or d < 0:
        return None
    return d


class FixtureEntityStore:
    """
    Catalog backed by ``products.json`` in a fixture directory.

    Lets the worker/CLI flows run without the real catalog database.
    """

    def __init__(self, fixture_dir: Path):
        self.fixture_dir = fixture_dir
        self._by_id: dict[int, Entity] | None = None

    def _load(self) -> dict[int, Entity]:
        if self._by_id is not None:
            return self._by_id
        p = self.fixture_dir / "products.json"
        out: dict[int, Entity] = {}
        if p.exists():
            with p.open("r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, list):
                raise ValueError("products.json must be a JSON list")
            for raw in data:
                if not isinstance(raw, dict) or raw.get("id") is None:
                    continue
                e = Entity(
                    id=int(raw["id"]),
                    sku=(str(raw["sku"]).strip() or None) if raw.get("sku") else None,
                    name=str(raw.get("name") or ""),
                    price=raw.get("price"),
                    in_stock=bool(raw.get("in_stock", True)),
                )
                out[e.id] = e
        self._by_id = out
        return out

    def resolve(self, entity_id: int) -> Entity | None:
        return self._load().get(int(entity_id))

    def resolve_by_sku(self, sku: str) -> int | None:
        wanted = (sku or "").strip()
        if not wanted:
            return None
        for e in self._load().values():
            if e.sku == wanted:
                return e.id
        return None
