from __future__ import annotations

import asyncio
import json
import logging
from datetime import date, timedelta
from pathlib import Path

import typer

from merchantsync.analytics.backfill import ImportStatus
from merchantsync.config import Settings
from merchantsync.db import SyncDB
from merchantsync.errors import SyncError
from merchantsync.reconciler import sync_stats
from merchantsync.registry import build_engine
from merchantsync.web.app import run_web
from merchantsync.worker import run_tick, run_worker

app = typer.Typer(no_args_is_help=True)


@app.callback()
def main() -> None:
    settings = Settings.load()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("db")
def db_cmd(
    action: str = typer.Argument(..., help="init"),
) -> None:
    settings = Settings.load()
    if action == "init":
        SyncDB(settings.db_path).init()
        typer.echo(f"OK db init: {settings.db_path}")
        return
    raise typer.BadParameter("action must be: init")


@app.command("enqueue")
def enqueue_cmd(
    ids: list[int] = typer.Argument(..., help="Local entity ids to push to the remote catalog"),
) -> None:
    engine = build_engine(Settings.load())
    added = engine.queue.enqueue_many(ids)
    typer.echo(f"OK queued {added} new item(s); queue size {engine.queue.size()}")


@app.command("import-queue")
def import_queue_cmd(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON list of ids or {id, attempts} objects"),
) -> None:
    engine = build_engine(Settings.load())
    try:
        raw = json.loads(file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        typer.echo(f"ERROR: invalid json: {e}")
        raise typer.Exit(code=2) from e
    if not isinstance(raw, list):
        typer.echo("ERROR: file must contain a JSON list")
        raise typer.Exit(code=2)
    added = engine.queue.import_legacy(raw)
    typer.echo(f"OK imported {added} of {len(raw)} entries")


@app.command("drain")
def drain_cmd() -> None:
    """Run one batch sync now, ignoring the debounce timer."""
    engine = build_engine(Settings.load())
    outcome = asyncio.run(engine.reconciler.run())
    typer.echo(json_dumps(outcome.to_dict()))
    if outcome.error or outcome.quota_denied:
        raise typer.Exit(code=1)


@app.command("daily-sync")
def daily_sync_cmd() -> None:
    engine = build_engine(Settings.load())
    try:
        result = asyncio.run(engine.pipeline.daily_sync())
    except SyncError as e:
        typer.echo(f"ERROR: {e.kind}: {e.message}")
        raise typer.Exit(code=2) from e
    typer.echo(json_dumps(result.to_dict()))


@app.command("backfill")
def backfill_cmd() -> None:
    """Run (or resume) the one-time historical import."""
    engine = build_engine(Settings.load())
    if engine.importer.is_imported():
        typer.echo("Nothing to do: historical import already completed.")
        return
    progress = asyncio.run(engine.importer.run())
    typer.echo(json_dumps(progress.to_dict()))
    if progress.status is not ImportStatus.COMPLETED:
        raise typer.Exit(code=2)


@app.command("compile")
def compile_cmd(
    start: str = typer.Option(..., help="YYYY-MM-DD (inclusive)"),
    end: str | None = typer.Option(None, help="YYYY-MM-DD (inclusive). Defaults to yesterday."),
) -> None:
    engine = build_engine(Settings.load())
    try:
        start_d = date.fromisoformat(start.strip())
        end_d = date.fromisoformat(end.strip()) if end else engine.clock().date() - timedelta(days=1)
    except ValueError:
        typer.echo("ERROR: start/end must be YYYY-MM-DD")
        raise typer.Exit(code=2)
    compiled = engine.store.compile(start_d, end_d)
    typer.echo(json_dumps({str(k): v for k, v in compiled.items()}))


@app.command("status")
def status_cmd() -> None:
    engine = build_engine(Settings.load())
    typer.echo(
        json_dumps(
            {
                "sync": sync_stats(engine.queue, quota=engine.quota),
                "quota": engine.quota.status(),
                "import": engine.importer.progress().to_dict(),
                "analytics_errors": engine.pipeline.sync_errors(),
                "unmapped": len(engine.unmapped.list()),
            }
        )
    )


@app.command("map")
def map_cmd(
    offer_id: str = typer.Argument(..., help="Remote offer id"),
    entity_id: int = typer.Argument(..., help="Local entity id"),
) -> None:
    engine = build_engine(Settings.load())
    engine.pipeline.set_manual_mapping(offer_id.strip(), entity_id)
    typer.echo(f"OK {offer_id} -> {entity_id}")


@app.command("unmap")
def unmap_cmd(
    offer_id: str = typer.Argument(..., help="Remote offer id"),
) -> None:
    engine = build_engine(Settings.load())
    if not engine.pipeline.remove_manual_mapping(offer_id.strip()):
        typer.echo(f"ERROR: no manual mapping for {offer_id}")
        raise typer.Exit(code=2)
    typer.echo(f"OK removed mapping for {offer_id}")


@app.command("unmapped")
def unmapped_cmd(
    clear: bool = typer.Option(False, help="Forget every unmapped offer"),
    remove: str | None = typer.Option(None, help="Forget one offer id"),
) -> None:
    engine = build_engine(Settings.load())
    if clear:
        typer.echo(f"OK cleared {engine.unmapped.clear()} entries")
        return
    if remove:
        ok = engine.unmapped.remove(remove.strip())
        typer.echo("OK removed" if ok else f"not found: {remove}")
        return
    typer.echo(json_dumps(engine.unmapped.list()))


@app.command("web")
def web_cmd() -> None:
    settings = Settings.load()
    run_web(settings)


@app.command("worker")
def worker_cmd() -> None:
    settings = Settings.load()
    run_worker(settings)


@app.command("tick")
def tick_cmd() -> None:
    settings = Settings.load()
    typer.echo(json_dumps(run_tick(settings)))


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=True, indent=2, default=str)
