from __future__ import annotations

import sqlite3
from pathlib import Path


SCHEMA_VERSION = 2


class SyncDB:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def init(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            current_version = self._get_schema_version(conn)

            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sync_queue (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  entity_id INTEGER NOT NULL UNIQUE,
                  attempts INTEGER,
                  enqueued_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS quota_usage (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  date TEXT NOT NULL,
                  total INTEGER NOT NULL DEFAULT 0,
                  by_action_json TEXT NOT NULL DEFAULT '{}',
                  reset_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS analytics_daily (
                  date TEXT NOT NULL,
                  entity_id INTEGER NOT NULL,
                  offer_id TEXT,
                  clicks INTEGER NOT NULL DEFAULT 0,
                  impressions INTEGER NOT NULL DEFAULT 0,
                  conversions REAL NOT NULL DEFAULT 0,
                  conversion_value REAL NOT NULL DEFAULT 0,
                  pricing_json TEXT,
                  PRIMARY KEY (date, entity_id)
                );

                CREATE TABLE IF NOT EXISTS analytics_archive (
                  week_key TEXT NOT NULL,
                  entity_id INTEGER NOT NULL,
                  clicks INTEGER NOT NULL DEFAULT 0,
                  impressions INTEGER NOT NULL DEFAULT 0,
                  conversions REAL NOT NULL DEFAULT 0,
                  conversion_value REAL NOT NULL DEFAULT 0,
                  PRIMARY KEY (week_key, entity_id)
                );

                CREATE TABLE IF NOT EXISTS archive_folds (
                  date TEXT PRIMARY KEY,
                  week_key TEXT NOT NULL,
                  folded_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS unmapped_entities (
                  offer_id TEXT PRIMARY KEY,
                  display_name TEXT,
                  seq INTEGER NOT NULL,
                  added_at TEXT NOT NULL,
                  alerted INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS manual_mappings (
                  offer_id TEXT PRIMARY KEY,
                  entity_id INTEGER NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS analytics_history (
                  date TEXT PRIMARY KEY,
                  clicks INTEGER NOT NULL DEFAULT 0,
                  conversions REAL NOT NULL DEFAULT 0,
                  price_score REAL NOT NULL DEFAULT 0,
                  products_above_benchmark INTEGER NOT NULL DEFAULT 0
                );

                CREATE INDEX IF NOT EXISTS idx_unmapped_entities_seq
                ON unmapped_entities(seq);

                CREATE INDEX IF NOT EXISTS idx_archive_folds_week
                ON archive_folds(week_key);
                """
            )
            if current_version < 2:
                self._migrate_to_v2(conn)
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute(
            "SELECT value FROM meta WHERE key='schema_version'"
        ).fetchone()
        if not row:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0

    def _column_exists(self, conn: sqlite3.Connection, table: str, column: str) -> bool:
        rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(str(r["name"]) == column for r in rows)

    def _migrate_to_v2(self, conn: sqlite3.Connection) -> None:
        # v1 stored daily buckets without the pricing snapshot.
        if not self._column_exists(conn, "analytics_daily", "pricing_json"):
            conn.execute("ALTER TABLE analytics_daily ADD COLUMN pricing_json TEXT")
