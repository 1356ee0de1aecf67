from __future__ import annotations

from dataclasses import dataclass

import httpx

from merchantsync.analytics.backfill import BulkImporter
from merchantsync.analytics.mapping import UnmappedRegistry
from merchantsync.analytics.pipeline import AnalyticsPipeline
from merchantsync.analytics.store import AnalyticsStore
from merchantsync.config import Settings
from merchantsync.db import SyncDB
from merchantsync.entities import EntityStore, FixtureEntityStore
from merchantsync.notify.telegram import Notifier, build_notifier
from merchantsync.quota import QuotaGate
from merchantsync.reconciler import BatchReconciler
from merchantsync.remote import RemoteClient
from merchantsync.repo import Repo
from merchantsync.sync_queue import SyncQueue
from merchantsync.util import Clock, local_clock


@dataclass
class Engine:
    settings: Settings
    clock: Clock
    repo: Repo
    quota: QuotaGate
    remote: RemoteClient
    entities: EntityStore
    notifier: Notifier
    queue: SyncQueue
    reconciler: BatchReconciler
    store: AnalyticsStore
    unmapped: UnmappedRegistry
    pipeline: AnalyticsPipeline
    importer: BulkImporter


def build_engine(
    settings: Settings,
    *,
    clock: Clock | None = None,
    entities: EntityStore | None = None,
    notifier: Notifier | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Engine:
    """Wire every component against one database. Collaborators can be swapped for tests."""
    SyncDB(settings.db_path).init()
    clock = clock or local_clock(settings.timezone)
    repo = Repo(settings.db_path)
    entities = entities or FixtureEntityStore(settings.fixture_dir)
    notifier = notifier or build_notifier(settings)

    quota = QuotaGate(repo, clock=clock, tier=settings.plan_tier)
    remote = RemoteClient.from_settings(settings, quota, transport=transport)
    queue = SyncQueue(repo, clock=clock)
    reconciler = BatchReconciler(
        queue=queue,
        remote=remote,
        entities=entities,
        quota=quota,
        language=settings.content_language,
        country=settings.target_country,
        currency=settings.currency,
    )
    store = AnalyticsStore(repo, clock=clock)
    unmapped = UnmappedRegistry(repo, notifier, clock=clock, alerts_enabled=settings.notify_unmapped)
    pipeline = AnalyticsPipeline(
        repo=repo,
        remote=remote,
        quota=quota,
        store=store,
        entities=entities,
        unmapped=unmapped,
        clock=clock,
    )
    importer = BulkImporter(
        repo=repo,
        pipeline=pipeline,
        notifier=notifier,
        clock=clock,
        notify_enabled=settings.notify_import,
    )
    return Engine(
        settings=settings,
        clock=clock,
        repo=repo,
        quota=quota,
        remote=remote,
        entities=entities,
        notifier=notifier,
        queue=queue,
        reconciler=reconciler,
        store=store,
        unmapped=unmapped,
        pipeline=pipeline,
        importer=importer,
    )
