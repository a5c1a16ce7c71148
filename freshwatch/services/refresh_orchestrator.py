"""Orchestrates background freshness checks"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from freshwatch.config import config
from freshwatch.models.analytics import PeriodType
from freshwatch.models.freshness import RefreshPriority
from freshwatch.models.queue import BatchRefreshResult, CycleResult, RefreshQueueEntry, RefreshType
from freshwatch.services.alerting import AlertService
from freshwatch.services.analytics import AnalyticsAggregator
from freshwatch.services.config_store import ConfigStore
from freshwatch.services.content_rewriter import ContentRewriter, PassthroughRewriter
from freshwatch.services.db_manager import Database
from freshwatch.services.errors import ItemNotTrackedError
from freshwatch.services.freshness_tracker import FreshnessTracker
from freshwatch.services.metadata_fetcher import HttpMetadataFetcher, MetadataFetcher
from freshwatch.services.refresh_scheduler import RefreshScheduler
from freshwatch.services.refresh_worker import RefreshWorker, default_worker_id
from freshwatch.services.telemetry import TelemetryService
from freshwatch.services.version_store import VersionStore
from freshwatch.utils.timestamps import ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Job id -> (description, config attribute, IntervalTrigger unit)
JOBS = {
    "freshness_tick": ("Enqueue due freshness checks", "tick_interval_minutes", "minutes"),
    "freshness_drain": ("Process pending refreshes", "drain_interval_seconds", "seconds"),
    "freshness_reclaim": ("Reclaim abandoned refreshes", "reclaim_interval_minutes", "minutes"),
    "freshness_scores": ("Recompute staleness scores", "score_refresh_interval_minutes", "minutes"),
    "freshness_analytics": ("Roll up refresh analytics", "analytics_interval_minutes", "minutes"),
    "freshness_retention": ("Purge old queue entries", None, "hours"),
}

MAX_DRAIN_ROUNDS = 1000


class RefreshOrchestrator:
    """Wire the freshness services together and drive them on a schedule"""

    def __init__(
        self,
        database: Database | None = None,
        fetcher_factory: Callable[[], MetadataFetcher] | None = None,
        rewriter: ContentRewriter | None = None,
        telemetry: TelemetryService | None = None,
        worker_id: str | None = None,
    ):
        """
        Initialize refresh orchestrator

        Args:
            database: Database to use (defaults to config.db_path)
            fetcher_factory: Creates a metadata fetcher for each drain; a fetcher's
                HTTP client is bound to the event loop of the drain that created it
            rewriter: Content rewriter
            telemetry: Optional OpenTelemetry sink
            worker_id: Identifier of this process's worker
        """
        self.config = config
        self.database = database or Database()
        self.database.initialize()
        self.database.check_integrity()

        self.config_store = ConfigStore(self.database, config.freshness_settings_path)
        self.config_store.load()

        self.telemetry = telemetry
        self.versions = VersionStore(self.database)
        self.tracker = FreshnessTracker(self.database, self.config_store, self.versions)
        self.alerts = AlertService(self.database, telemetry)
        self.scheduler = RefreshScheduler(
            self.database, self.config_store, self.tracker, self.alerts, telemetry
        )
        self.analytics = AnalyticsAggregator(self.database)

        self.fetcher_factory = fetcher_factory or HttpMetadataFetcher
        self.rewriter = rewriter or PassthroughRewriter()
        self.worker_id = worker_id or default_worker_id()
        self.job_scheduler: BackgroundScheduler | None = None

    def configure_scheduler_sync(self, scheduler: BackgroundScheduler) -> None:
        """
        Register the periodic jobs (synchronous, for BackgroundScheduler)

        Args:
            scheduler: Initialized BackgroundScheduler instance
        """
        self.job_scheduler = scheduler
        handlers = {
            "freshness_tick": self.tick_job,
            "freshness_drain": self.drain_job,
            "freshness_reclaim": self.reclaim_job,
            "freshness_scores": self.scores_job,
            "freshness_analytics": self.analytics_job,
            "freshness_retention": self.retention_job,
        }

        for job_id, (name, interval_attr, unit) in JOBS.items():
            interval = getattr(self.config, interval_attr) if interval_attr else 24
            trigger = IntervalTrigger(**{unit: interval}, start_date=datetime.now())
            self.job_scheduler.add_job(
                handlers[job_id],
                trigger=trigger,
                id=job_id,
                name=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            logger.info(f"Scheduled {job_id} every {interval} {unit}")

    def stop_scheduler_sync(self) -> None:
        """Gracefully remove the periodic jobs (synchronous version)"""
        if not self.job_scheduler:
            return

        for job_id in JOBS:
            try:
                self.job_scheduler.remove_job(job_id)
            except JobLookupError:
                logger.warning(f"Job {job_id} not found during shutdown")
        logger.info("Stopped freshness jobs")

    def tick_once(self, now: datetime | None = None) -> int:
        """
        Queue every item whose next check is due

        Skipped entirely while auto-refresh is disabled.

        Returns:
            Number of entries queued
        """
        now = ensure_utc(now or utcnow())
        if not self.config_store.settings.enable_auto_refresh:
            logger.info("Auto-refresh disabled, skipping scheduler tick")
            return 0

        self.tracker.refresh_scores(now)

        batch_id = str(uuid.uuid4())
        enqueued = 0
        for record in self.tracker.due_for_check(now):
            entry = self.scheduler.enqueue(
                record.item_id,
                record.priority,
                now,
                refresh_type=RefreshType.SCHEDULED,
                batch_id=batch_id,
                trigger_reason=f"status={record.status.value} score={record.staleness_score}",
                now=now,
            )
            if entry is not None:
                enqueued += 1

        logger.info(f"Scheduler tick queued {enqueued} refresh(es) in batch {batch_id}")
        return enqueued

    def drain_once(self, now: datetime | None = None) -> list[RefreshQueueEntry]:
        """
        Claim and process one batch of pending entries

        Note: This is synchronous because BackgroundScheduler runs in threads.
        We use asyncio.run() to bridge to the async worker.
        """
        return asyncio.run(self._drain(now))

    async def _drain(self, now: datetime | None) -> list[RefreshQueueEntry]:
        fetcher = self.fetcher_factory()
        try:
            worker = RefreshWorker(
                self.scheduler, fetcher, self.rewriter, worker_id=self.worker_id
            )
            return await worker.run_once(now=now)
        finally:
            close = getattr(fetcher, "close", None)
            if close is not None:
                await close()

    def request_refresh(self, item_id: str, now: datetime | None = None) -> RefreshQueueEntry | None:
        """Queue an immediate manual refresh of an item"""
        entry = self.scheduler.force_refresh(item_id, now)
        if entry is None:
            logger.info(f"Manual refresh of {item_id} not queued, refresh already in progress")
        return entry

    def request_batch_refresh(
        self,
        item_ids: list[str],
        priority: RefreshPriority = RefreshPriority.NORMAL,
        now: datetime | None = None,
    ) -> BatchRefreshResult:
        """
        Queue refreshes for several items under one batch id

        Items that already have a pending or processing entry are skipped.

        Args:
            item_ids: Items to refresh; duplicates are queued once
            priority: Queue priority of every entry
            now: Current time, also used as the scheduled time

        Returns:
            BatchRefreshResult: Counts of queued and skipped items
        """
        now = ensure_utc(now or utcnow())
        result = BatchRefreshResult(batch_id=str(uuid.uuid4()))

        for item_id in dict.fromkeys(item_ids):
            try:
                entry = self.scheduler.enqueue(
                    item_id,
                    priority,
                    now,
                    refresh_type=RefreshType.BATCH,
                    batch_id=result.batch_id,
                    trigger_reason="batch_refresh",
                    now=now,
                )
            except ItemNotTrackedError:
                result.not_tracked.append(item_id)
                continue

            if entry is None:
                result.skipped += 1
            else:
                result.queued += 1

        logger.info(
            f"Batch {result.batch_id}: {result.queued} queued, {result.skipped} skipped, "
            f"{len(result.not_tracked)} not tracked"
        )
        return result

    def run_cycle(self, now: datetime | None = None) -> CycleResult:
        """
        Execute a single full cycle: reclaim, tick, then drain until idle

        Returns:
            CycleResult: Result of the cycle
        """
        start_time = utcnow()
        enqueued = processed = reclaimed = 0

        try:
            logger.info("Starting freshness cycle")
            reclaimed = len(self.scheduler.reclaim_abandoned(now=now))
            enqueued = self.tick_once(now)

            for _ in range(MAX_DRAIN_ROUNDS):
                completed = self.drain_once(now)
                if not completed:
                    break
                processed += len(completed)

            end_time = utcnow()
            duration_seconds = (end_time - start_time).total_seconds()
            logger.info(
                f"Freshness cycle completed in {duration_seconds:.2f}s: "
                f"{enqueued} queued, {processed} processed, {reclaimed} reclaimed"
            )
            return CycleResult(
                success=True,
                enqueued=enqueued,
                processed=processed,
                reclaimed=reclaimed,
                start_time=start_time,
                end_time=end_time,
                duration_seconds=duration_seconds,
            )

        except Exception as e:
            logger.error(f"Freshness cycle failed with exception: {e}", exc_info=True)
            end_time = utcnow()
            return CycleResult(
                success=False,
                enqueued=enqueued,
                processed=processed,
                reclaimed=reclaimed,
                start_time=start_time,
                end_time=end_time,
                duration_seconds=(end_time - start_time).total_seconds(),
                error=str(e),
            )

    def tick_job(self) -> None:
        self._run_job("tick", self.tick_once)

    def drain_job(self) -> None:
        self._run_job("drain", self.drain_once)

    def reclaim_job(self) -> None:
        self._run_job("reclaim", self.scheduler.reclaim_abandoned)

    def scores_job(self) -> None:
        self._run_job("score refresh", self.tracker.refresh_scores)

    def analytics_job(self) -> None:
        def rollups() -> None:
            now = utcnow()
            self.analytics.rollup_previous_period(PeriodType.HOURLY, now)
            self.analytics.rollup_previous_period(PeriodType.DAILY, now)

        self._run_job("analytics", rollups)

    def retention_job(self) -> None:
        def purge() -> int:
            cutoff = utcnow() - timedelta(days=self.config.queue_retention_days)
            return self.scheduler.purge_terminal(cutoff)

        self._run_job("retention", purge)

    def _run_job(self, name: str, job: Callable[[], object]) -> None:
        """Run a periodic job; failures are logged and retried on the next run"""
        try:
            job()
        except Exception as e:
            logger.error(f"Freshness {name} job failed: {e}", exc_info=True)
