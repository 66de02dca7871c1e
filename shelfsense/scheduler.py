"""
Scheduler for automated store syncs

Uses APScheduler to sync orders and variant snapshots for every authorized
store on a fixed interval. A (store, entity type) that is still running when
the next tick fires is skipped rather than started twice.
"""
from typing import Callable, Dict, List, Optional, Set, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from shelfsense.config import Settings, get_settings
from shelfsense.exceptions import ConfigurationError
from shelfsense.services.store_adapter import StoreAdapter
from shelfsense.services.sync_engine import ENTITY_TYPES, SyncEngine, SyncOptions, SyncReport
from shelfsense.utils.logger import log


class SyncScheduler:
    """
    Periodic sync for all authorized stores

    Usage:
        sync_scheduler = SyncScheduler(session_factory)
        sync_scheduler.start()
        ...
        sync_scheduler.stop()
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        client_factory: Optional[Callable] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.settings = settings or get_settings()
        self.scheduler = AsyncIOScheduler()
        self._running: Set[Tuple[str, str]] = set()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    async def sync_store(self, store_id: str, entity_type: str) -> Optional[SyncReport]:
        """Run one sync unless the same key is already in flight"""
        key = (store_id, entity_type)
        if key in self._running:
            log.warning(f"Skipping {entity_type} sync for {store_id}: previous run still in progress")
            return None

        self._running.add(key)
        db = self.session_factory()
        try:
            engine = SyncEngine(StoreAdapter(db), client_factory=self.client_factory, settings=self.settings)
            report = await engine.run_sync(store_id, entity_type, SyncOptions())
            if not report.ok:
                log.error(f"Scheduled {entity_type} sync failed for {store_id}: {report.error}")
            return report
        except ConfigurationError as e:
            log.error(f"Scheduled {entity_type} sync refused for {store_id}: {e}")
            return None
        finally:
            db.close()
            self._running.discard(key)

    async def sync_all_stores(self) -> Dict[str, List[SyncReport]]:
        """Sync every authorized store, orders before variants"""
        db = self.session_factory()
        try:
            store_ids = StoreAdapter(db).list_authorized_stores()
        finally:
            db.close()

        log.info(f"Scheduled sync starting for {len(store_ids)} store(s)")
        results: Dict[str, List[SyncReport]] = {}
        for store_id in store_ids:
            reports = []
            for entity_type in ENTITY_TYPES:
                report = await self.sync_store(store_id, entity_type)
                if report is not None:
                    reports.append(report)
            results[store_id] = reports
        return results

    def start(self) -> None:
        self.scheduler.add_job(
            self.sync_all_stores,
            trigger=IntervalTrigger(minutes=self.settings.sync_interval_minutes),
            id='store_sync',
            name='Orders & Variant Snapshots Sync',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        log.info(f"Scheduler started (every {self.settings.sync_interval_minutes} min)")

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        log.info("Scheduler stopped")
