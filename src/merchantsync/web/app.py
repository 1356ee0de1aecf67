from __future__ import annotations

from datetime import date, timedelta
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
import uvicorn

from merchantsync.analytics.pipeline import RUN_STATE_KEY, SYNC_ERRORS_KEY
from merchantsync.config import Settings
from merchantsync.db import SCHEMA_VERSION
from merchantsync.reconciler import LAST_ERROR_KEY, sync_stats
from merchantsync.registry import build_engine
from merchantsync.util import Clock, week_bounds


def _parse_day(raw: str) -> date | None:
    try:
        return date.fromisoformat(raw.strip())
    except ValueError:
        return None


def create_app(settings: Settings, *, clock: Clock | None = None) -> FastAPI:
    """
    Read-only JSON view over the persisted state.

    Nothing here triggers a sync; every route reads what the worker left behind.
    """
    engine = build_engine(settings, clock=clock)
    repo = engine.repo

    app = FastAPI(title="MerchantSync")

    @app.get("/health")
    def health():
        return {"ok": True, "schema_version": SCHEMA_VERSION, "db_path": str(settings.db_path)}

    @app.get("/queue")
    def queue():
        return sync_stats(engine.queue, quota=engine.quota, entities=engine.entities)

    @app.get("/quota")
    def quota():
        return engine.quota.status()

    @app.get("/analytics/daily/{day}")
    def analytics_daily(day: str):
        d = _parse_day(day)
        if d is None:
            return JSONResponse({"ok": False, "error": "date must be YYYY-MM-DD"}, status_code=400)
        entries = repo.get_daily_bucket(d.isoformat())
        return {"date": d.isoformat(), "entries": {str(k): v for k, v in entries.items()}}

    @app.get("/analytics/archive")
    def analytics_archive():
        weeks: list[dict[str, Any]] = []
        for week_key, entries in sorted(repo.get_archive().items(), reverse=True):
            monday, sunday = week_bounds(week_key)
            weeks.append(
                {
                    "week": week_key,
                    "start": monday.isoformat(),
                    "end": sunday.isoformat(),
                    "entries": {str(k): v for k, v in entries.items()},
                }
            )
        return {"weeks": weeks, "folded_days": repo.list_folded_days()}

    @app.get("/analytics/compiled")
    def analytics_compiled(start: str | None = None, end: str | None = None):
        today = engine.clock().date()
        end_d = _parse_day(end) if end else today - timedelta(days=1)
        start_d = _parse_day(start) if start else (end_d - timedelta(days=29) if end_d else None)
        if start_d is None or end_d is None:
            return JSONResponse({"ok": False, "error": "start/end must be YYYY-MM-DD"}, status_code=400)
        if end_d < start_d:
            return JSONResponse({"ok": False, "error": "end must not be before start"}, status_code=400)
        compiled = engine.store.compile(start_d, end_d)
        return {
            "start": start_d.isoformat(),
            "end": end_d.isoformat(),
            "entries": {str(k): v for k, v in compiled.items()},
        }

    @app.get("/analytics/unmapped")
    def analytics_unmapped():
        rows = engine.unmapped.list()
        return {"count": len(rows), "items": rows, "manual_mappings": engine.pipeline.list_manual_mappings()}

    @app.get("/analytics/history")
    def analytics_history(limit: int = 90):
        return {"items": repo.list_history(limit=max(1, min(limit, 365)))}

    @app.get("/import/progress")
    def import_progress():
        return {
            "imported": engine.importer.is_imported(),
            "progress": engine.importer.progress().to_dict(),
        }

    @app.get("/errors")
    def errors():
        return {
            "sync_last_error": repo.get_meta_json(LAST_ERROR_KEY),
            "failed_items": engine.queue.failed_items(),
            "analytics_sync_errors": repo.get_meta_json(SYNC_ERRORS_KEY, default=[]),
            "analytics_run_state": repo.get_meta_json(RUN_STATE_KEY),
        }

    return app


def run_web(settings: Settings) -> None:
    app = create_app(settings)
    uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level=settings.log_level.lower())
