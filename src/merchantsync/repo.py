from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from merchantsync.util import now_utc_iso


METRIC_FIELDS = ("clicks", "impressions", "conversions", "conversion_value")


class Repo:
    """
    Lightweight repository shared by the queue, quota gate, analytics pipeline and web surface.

    Read paths open a short-lived connection each. Read-modify-write paths go through
    ``transaction()`` which takes sqlite's write lock up front (BEGIN IMMEDIATE), so two
    overlapping runs against the same file serialize instead of losing updates.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # ------------------------------------------------------------------ #
    # meta                                                                 #
    # ------------------------------------------------------------------ #

    def get_meta(self, key: str, conn: sqlite3.Connection | None = None) -> str | None:
        if conn is not None:
            row = conn.execute("SELECT value FROM meta WHERE key=?", (key,)).fetchone()
            return str(row["value"]) if row else None
        with self.connect() as c:
            row = c.execute("SELECT value FROM meta WHERE key=?", (key,)).fetchone()
            return str(row["value"]) if row else None

    def set_meta(self, key: str, value: str, conn: sqlite3.Connection | None = None) -> None:
        sql = "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)"
        if conn is not None:
            conn.execute(sql, (key, value))
            return
        with self.connect() as c:
            c.execute(sql, (key, value))

    def delete_meta(self, key: str, conn: sqlite3.Connection | None = None) -> None:
        if conn is not None:
            conn.execute("DELETE FROM meta WHERE key=?", (key,))
            return
        with self.connect() as c:
            c.execute("DELETE FROM meta WHERE key=?", (key,))

    def get_meta_json(self, key: str, default: Any = None, conn: sqlite3.Connection | None = None) -> Any:
        raw = self.get_meta(key, conn=conn)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return default

    def set_meta_json(self, key: str, value: Any, conn: sqlite3.Connection | None = None) -> None:
        self.set_meta(key, json.dumps(value, ensure_ascii=True), conn=conn)

    # ------------------------------------------------------------------ #
    # sync queue                                                           #
    # ------------------------------------------------------------------ #

    def list_queue_rows(
        self,
        conn: sqlite3.Connection | None = None,
        *,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        sql = "SELECT seq, entity_id, attempts, enqueued_at FROM sync_queue ORDER BY seq"
        params: list[Any] = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        if conn is not None:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]
        with self.connect() as c:
            return [dict(r) for r in c.execute(sql, params).fetchall()]

    def count_queue(self) -> int:
        with self.connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM sync_queue").fetchone()
            return int(row["n"])

    def queue_insert(self, conn: sqlite3.Connection, *, entity_id: int, attempts: int | None) -> bool:
        cur = conn.execute(
            """
            INSERT INTO sync_queue(entity_id, attempts, enqueued_at)
            VALUES(?, ?, ?)
            ON CONFLICT(entity_id) DO NOTHING
            """,
            (int(entity_id), attempts, now_utc_iso()),
        )
        return cur.rowcount > 0

    def queue_delete_seqs(self, conn: sqlite3.Connection, seqs: list[int]) -> None:
        conn.executemany("DELETE FROM sync_queue WHERE seq=?", [(int(s),) for s in seqs])

    # ------------------------------------------------------------------ #
    # quota                                                                #
    # ------------------------------------------------------------------ #

    def load_quota(self, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
        sql = "SELECT date, total, by_action_json, reset_at FROM quota_usage WHERE id=1"
        if conn is not None:
            row = conn.execute(sql).fetchone()
        else:
            with self.connect() as c:
                row = c.execute(sql).fetchone()
        if not row:
            return None
        try:
            by_action = json.loads(row["by_action_json"] or "{}")
        except json.JSONDecodeError:
            by_action = {}
        return {
            "date": str(row["date"]),
            "total": int(row["total"] or 0),
            "by_action": by_action if isinstance(by_action, dict) else {},
            "reset_at": str(row["reset_at"]),
        }

    def save_quota(
        self,
        conn: sqlite3.Connection,
        *,
        day: str,
        total: int,
        by_action: dict[str, int],
        reset_at: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO quota_usage(id, date, total, by_action_json, reset_at)
            VALUES(1, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              date=excluded.date,
              total=excluded.total,
              by_action_json=excluded.by_action_json,
              reset_at=excluded.reset_at
            """,
            (day, int(total), json.dumps(by_action, ensure_ascii=True, sort_keys=True), reset_at),
        )

    # ------------------------------------------------------------------ #
    # daily buckets                                                        #
    # ------------------------------------------------------------------ #

    def replace_daily_bucket(
        self,
        conn: sqlite3.Connection,
        *,
        day: str,
        entries: dict[int, dict[str, Any]],
    ) -> None:
        conn.execute("DELETE FROM analytics_daily WHERE date=?", (day,))
        conn.executemany(
            """
            INSERT INTO analytics_daily(
              date, entity_id, offer_id, clicks, impressions, conversions, conversion_value, pricing_json
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    day,
                    int(entity_id),
                    e.get("offer_id"),
                    int(e.get("clicks") or 0),
                    int(e.get("impressions") or 0),
                    float(e.get("conversions") or 0),
                    float(e.get("conversion_value") or 0),
                    json.dumps(e["pricing"], ensure_ascii=True) if e.get("pricing") else None,
                )
                for entity_id, e in entries.items()
            ],
        )

    def get_daily_bucket(self, day: str, conn: sqlite3.Connection | None = None) -> dict[int, dict[str, Any]]:
        sql = "SELECT * FROM analytics_daily WHERE date=? ORDER BY entity_id"
        if conn is not None:
            rows = conn.execute(sql, (day,)).fetchall()
        else:
            with self.connect() as c:
                rows = c.execute(sql, (day,)).fetchall()
        out: dict[int, dict[str, Any]] = {}
        for r in rows:
            entry: dict[str, Any] = {f: r[f] for f in METRIC_FIELDS}
            entry["offer_id"] = r["offer_id"]
            entry["pricing"] = json.loads(r["pricing_json"]) if r["pricing_json"] else None
            out[int(r["entity_id"])] = entry
        return out

    def list_daily_dates(self, conn: sqlite3.Connection | None = None) -> list[str]:
        sql = "SELECT DISTINCT date FROM analytics_daily ORDER BY date"
        if conn is not None:
            return [str(r["date"]) for r in conn.execute(sql).fetchall()]
        with self.connect() as c:
            return [str(r["date"]) for r in c.execute(sql).fetchall()]

    def delete_daily_bucket(self, conn: sqlite3.Connection, day: str) -> None:
        conn.execute("DELETE FROM analytics_daily WHERE date=?", (day,))

    # ------------------------------------------------------------------ #
    # weekly archive                                                       #
    # ------------------------------------------------------------------ #

    def is_day_folded(self, conn: sqlite3.Connection, day: str) -> bool:
        row = conn.execute("SELECT 1 FROM archive_folds WHERE date=?", (day,)).fetchone()
        return row is not None

    def add_to_archive(
        self,
        conn: sqlite3.Connection,
        *,
        week_key: str,
        entries: dict[int, dict[str, Any]],
    ) -> None:
        conn.executemany(
            """
            INSERT INTO analytics_archive(week_key, entity_id, clicks, impressions, conversions, conversion_value)
            VALUES(?, ?, ?, ?, ?, ?)
            ON CONFLICT(week_key, entity_id) DO UPDATE SET
              clicks=clicks + excluded.clicks,
              impressions=impressions + excluded.impressions,
              conversions=conversions + excluded.conversions,
              conversion_value=conversion_value + excluded.conversion_value
            """,
            [
                (
                    week_key,
                    int(entity_id),
                    int(e.get("clicks") or 0),
                    int(e.get("impressions") or 0),
                    float(e.get("conversions") or 0),
                    float(e.get("conversion_value") or 0),
                )
                for entity_id, e in entries.items()
            ],
        )

    def record_fold(self, conn: sqlite3.Connection, *, day: str, week_key: str) -> None:
        conn.execute(
            "INSERT INTO archive_folds(date, week_key, folded_at) VALUES(?, ?, ?)",
            (day, week_key, now_utc_iso()),
        )

    def list_archive_week_keys(self, conn: sqlite3.Connection | None = None) -> list[str]:
        sql = "SELECT DISTINCT week_key FROM analytics_archive ORDER BY week_key DESC"
        if conn is not None:
            return [str(r["week_key"]) for r in conn.execute(sql).fetchall()]
        with self.connect() as c:
            return [str(r["week_key"]) for r in c.execute(sql).fetchall()]

    def delete_archive_weeks(self, conn: sqlite3.Connection, week_keys: list[str]) -> None:
        conn.executemany("DELETE FROM analytics_archive WHERE week_key=?", [(k,) for k in week_keys])

    def delete_folds_for_weeks(self, conn: sqlite3.Connection, week_keys: list[str]) -> None:
        conn.executemany("DELETE FROM archive_folds WHERE week_key=?", [(k,) for k in week_keys])

    def get_archive(self) -> dict[str, dict[int, dict[str, Any]]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM analytics_archive ORDER BY week_key, entity_id"
            ).fetchall()
        out: dict[str, dict[int, dict[str, Any]]] = {}
        for r in rows:
            out.setdefault(str(r["week_key"]), {})[int(r["entity_id"])] = {f: r[f] for f in METRIC_FIELDS}
        return out

    def list_folded_days(self) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM archive_folds ORDER BY date").fetchall()
            return [dict(r) for r in rows]

    # ------------------------------------------------------------------ #
    # unmapped entities                                                    #
    # ------------------------------------------------------------------ #

    def list_unmapped(self, conn: sqlite3.Connection | None = None) -> list[dict[str, Any]]:
        sql = "SELECT offer_id, display_name, seq, added_at, alerted FROM unmapped_entities ORDER BY seq"
        if conn is not None:
            return [dict(r) for r in conn.execute(sql).fetchall()]
        with self.connect() as c:
            return [dict(r) for r in c.execute(sql).fetchall()]

    def insert_unmapped(self, conn: sqlite3.Connection, *, offer_id: str, display_name: str) -> None:
        row = conn.execute("SELECT COALESCE(MAX(seq), 0) AS m FROM unmapped_entities").fetchone()
        conn.execute(
            """
            INSERT INTO unmapped_entities(offer_id, display_name, seq, added_at, alerted)
            VALUES(?, ?, ?, ?, 0)
            """,
            (offer_id, display_name, int(row["m"]) + 1, now_utc_iso()),
        )

    def update_unmapped_name(self, conn: sqlite3.Connection, *, offer_id: str, display_name: str) -> None:
        conn.execute(
            "UPDATE unmapped_entities SET display_name=? WHERE offer_id=?",
            (display_name, offer_id),
        )

    def trim_unmapped(self, conn: sqlite3.Connection, *, keep: int) -> int:
        cur = conn.execute(
            """
            DELETE FROM unmapped_entities
            WHERE seq NOT IN (SELECT seq FROM unmapped_entities ORDER BY seq DESC LIMIT ?)
            """,
            (int(keep),),
        )
        return cur.rowcount

    def mark_unmapped_alerted(self, conn: sqlite3.Connection, offer_ids: list[str]) -> None:
        conn.executemany(
            "UPDATE unmapped_entities SET alerted=1 WHERE offer_id=?",
            [(o,) for o in offer_ids],
        )

    def delete_unmapped(self, offer_id: str | None = None) -> int:
        with self.connect() as conn:
            if offer_id is None:
                cur = conn.execute("DELETE FROM unmapped_entities")
            else:
                cur = conn.execute("DELETE FROM unmapped_entities WHERE offer_id=?", (offer_id,))
            return cur.rowcount

    # ------------------------------------------------------------------ #
    # manual mappings                                                      #
    # ------------------------------------------------------------------ #

    def get_manual_mappings(self) -> dict[str, int]:
        with self.connect() as conn:
            rows = conn.execute("SELECT offer_id, entity_id FROM manual_mappings").fetchall()
            return {str(r["offer_id"]): int(r["entity_id"]) for r in rows}

    def set_manual_mapping(self, offer_id: str, entity_id: int) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO manual_mappings(offer_id, entity_id, created_at) VALUES(?, ?, ?)
                ON CONFLICT(offer_id) DO UPDATE SET entity_id=excluded.entity_id
                """,
                (offer_id, int(entity_id), now_utc_iso()),
            )

    def delete_manual_mapping(self, offer_id: str) -> bool:
        with self.connect() as conn:
            cur = conn.execute("DELETE FROM manual_mappings WHERE offer_id=?", (offer_id,))
            return cur.rowcount > 0

    # ------------------------------------------------------------------ #
    # history snapshots                                                    #
    # ------------------------------------------------------------------ #

    def upsert_history(
        self,
        conn: sqlite3.Connection,
        *,
        day: str,
        clicks: int,
        conversions: float,
        price_score: float,
        products_above_benchmark: int,
    ) -> None:
        conn.execute(
            """
            INSERT INTO analytics_history(date, clicks, conversions, price_score, products_above_benchmark)
            VALUES(?, ?, ?, ?, ?)
            ON CONFLICT(date) DO UPDATE SET
              clicks=excluded.clicks,
              conversions=excluded.conversions,
              price_score=excluded.price_score,
              products_above_benchmark=excluded.products_above_benchmark
            """,
            (day, int(clicks), float(conversions), float(price_score), int(products_above_benchmark)),
        )

    def trim_history(self, conn: sqlite3.Connection, *, keep: int) -> None:
        conn.execute(
            """
            DELETE FROM analytics_history
            WHERE date NOT IN (SELECT date FROM analytics_history ORDER BY date DESC LIMIT ?)
            """,
            (int(keep),),
        )

    def list_history(self, limit: int = 90) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM analytics_history ORDER BY date DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [dict(r) for r in rows]
