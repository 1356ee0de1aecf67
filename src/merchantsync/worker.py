from __future__ import annotations

import asyncio
import logging
from datetime import time
from typing import Any

from merchantsync.analytics.pipeline import LAST_DAILY_SYNC_KEY
from merchantsync.config import Settings
from merchantsync.registry import Engine, build_engine


logger = logging.getLogger(__name__)

DAILY_SYNC_AFTER = time(2, 0)
TICK_SECONDS = 5


async def _tick(engine: Engine) -> dict[str, Any]:
    """
    One scheduler pass. Each job is isolated: a failure is logged and the
    remaining jobs still run.
    """
    ran: dict[str, Any] = {}

    try:
        progress = await engine.importer.maybe_run()
        if progress is not None:
            ran["backfill"] = progress.status.value
    except Exception as e:  # noqa: BLE001
        logger.error("backfill failed: %s: %s", type(e).__name__, e)

    if engine.queue.scheduler.is_due():
        try:
            outcome = await engine.reconciler.run()
            ran["drain"] = outcome.to_dict()
        except Exception as e:  # noqa: BLE001
            logger.error("queue drain failed: %s: %s", type(e).__name__, e)

    now = engine.clock()
    today = now.date().isoformat()
    if now.time() >= DAILY_SYNC_AFTER and engine.repo.get_meta(LAST_DAILY_SYNC_KEY) != today:
        try:
            result = await engine.pipeline.daily_sync()
            ran["daily_sync"] = result.to_dict()
        except Exception as e:  # noqa: BLE001
            # Stamp the day anyway so a hard failure is not retried every tick.
            engine.repo.set_meta(LAST_DAILY_SYNC_KEY, today)
            logger.error("daily analytics sync failed: %s: %s", type(e).__name__, e)

    try:
        if await engine.unmapped.maybe_alert():
            ran["unmapped_alert"] = True
    except Exception as e:  # noqa: BLE001
        logger.error("unmapped alert failed: %s: %s", type(e).__name__, e)

    return ran


def run_tick(settings: Settings) -> dict[str, Any]:
    return asyncio.run(_tick(build_engine(settings)))


async def _run_forever(engine: Engine) -> None:
    while True:
        try:
            await _tick(engine)
        except Exception as e:  # noqa: BLE001
            logger.error("tick failed: %s: %s", type(e).__name__, e)
        await asyncio.sleep(TICK_SECONDS)


def run_worker(settings: Settings) -> None:
    engine = build_engine(settings)
    logger.info("worker started (db=%s, tick=%ss)", settings.db_path, TICK_SECONDS)
    asyncio.run(_run_forever(engine))
