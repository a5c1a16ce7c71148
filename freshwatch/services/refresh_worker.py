"""Executes claimed refresh entries"""

import asyncio
import logging
import os
import socket
import uuid
from datetime import datetime

from freshwatch.config import config
from freshwatch.models.content import ChangeResult, FetchedPage, RewrittenContent
from freshwatch.models.freshness import FreshnessRecord
from freshwatch.models.queue import ErrorCode, RefreshOutcome, RefreshQueueEntry
from freshwatch.services.change_detector import ChangeDetector
from freshwatch.services.content_rewriter import ContentRewriter, PassthroughRewriter
from freshwatch.services.errors import (
    ContentValidationError,
    FetchTimeoutError,
    GenerationError,
    NetworkError,
)
from freshwatch.services.freshness_tracker import FreshnessTracker
from freshwatch.services.metadata_fetcher import MetadataFetcher
from freshwatch.services.refresh_scheduler import RefreshScheduler
from freshwatch.utils.timestamps import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    """Identifier unique to this process"""
    return f"{config.worker_id_prefix}-{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class RefreshWorker:
    """
    Claim due queue entries and revalidate them

    Fetching and rewriting happen outside any database transaction; only the
    claim and the completion touch the queue. Database calls run in a thread
    via asyncio.to_thread, off the event loop.
    """

    def __init__(
        self,
        scheduler: RefreshScheduler,
        fetcher: MetadataFetcher,
        rewriter: ContentRewriter | None = None,
        detector: ChangeDetector | None = None,
        worker_id: str | None = None,
    ):
        """
        Initialize refresh worker

        Args:
            scheduler: Queue to claim from and report to
            fetcher: Metadata fetcher used to re-read item URLs
            rewriter: Content rewriter invoked on significant changes
            detector: Change detector
            worker_id: Identifier recorded on claimed entries
        """
        self.scheduler = scheduler
        self.tracker: FreshnessTracker = scheduler.tracker
        self.fetcher = fetcher
        self.rewriter = rewriter or PassthroughRewriter()
        self.detector = detector or ChangeDetector()
        self.worker_id = worker_id or default_worker_id()

    async def run_once(
        self, batch_size: int | None = None, now: datetime | None = None
    ) -> list[RefreshQueueEntry]:
        """
        Claim one batch and process it concurrently

        Args:
            batch_size: Entries to claim (defaults to the configured batch limit)
            now: Current time, used for the claim and completions

        Returns:
            Entries as left by their completion (lost claims are omitted)
        """
        entries = await asyncio.to_thread(
            self.scheduler.claim_next, self.worker_id, batch_size, now
        )
        if not entries:
            return []

        semaphore = asyncio.Semaphore(self.scheduler.settings.max_concurrent_refreshes)

        async def run(entry: RefreshQueueEntry) -> RefreshQueueEntry | None:
            async with semaphore:
                return await self.process(entry, now)

        results = await asyncio.gather(*(run(entry) for entry in entries))
        completed = [entry for entry in results if entry is not None]

        logger.info(
            f"Worker {self.worker_id} processed {len(entries)} refresh(es), "
            f"{len(completed)} reported"
        )
        return completed

    async def process(
        self, entry: RefreshQueueEntry, now: datetime | None = None
    ) -> RefreshQueueEntry | None:
        """Execute one claimed entry and report its outcome"""
        record = await asyncio.to_thread(self.tracker.get, entry.item_id)
        if record is None:
            logger.info(f"Item {entry.item_id} no longer tracked, dropping refresh {entry.id}")
            return None

        outcome = await self.execute(record)
        completed_at = ensure_utc(now) if now else outcome.completed_at
        return await asyncio.to_thread(
            self.scheduler.complete, entry.id, outcome, self.worker_id, completed_at
        )

    async def execute(self, record: FreshnessRecord) -> RefreshOutcome:
        """
        Fetch, validate and compare an item's current content

        Never raises; every failure is reported in the returned outcome.
        """
        started_at = utcnow()
        page: FetchedPage | None = None

        try:
            page = await self.fetcher.fetch(record.url)
            self.validate(page)
            snapshot = page.to_snapshot()

            previous = await asyncio.to_thread(self.tracker.version_store.latest, record.item_id)
            if previous is None:
                change = self.detector.detect_changes(None, snapshot)
            else:
                change = self.detector.detect_from_version(previous, snapshot)

            rewrite_invoked = False
            rewritten: RewrittenContent | None = None
            rewrite_error: str | None = None

            if self._needs_rewrite(record, change):
                rewrite_invoked = True
                try:
                    rewritten = await self.rewriter.rewrite(snapshot.metadata)
                except GenerationError as e:
                    # Previous rewritten metadata stays in effect
                    logger.warning(f"Rewrite failed for {record.item_id}: {e}")
                    rewrite_error = str(e)

            return RefreshOutcome(
                success=True,
                snapshot=snapshot,
                change=change,
                rewrite_invoked=rewrite_invoked,
                rewritten=rewritten,
                rewrite_error=rewrite_error,
                error_message=rewrite_error,
                error_code=ErrorCode.GENERATION_ERROR if rewrite_error else None,
                started_at=started_at,
                completed_at=utcnow(),
                network_requests_count=page.network_requests,
                bytes_processed=page.bytes_processed,
            )

        except ContentValidationError as e:
            logger.warning(f"Invalid content for {record.item_id}: {e}")
            return self._failure(e, ErrorCode.VALIDATION_ERROR, False, started_at, page)
        except FetchTimeoutError as e:
            logger.warning(f"Timeout refreshing {record.item_id}: {e}")
            return self._failure(e, ErrorCode.TIMEOUT, True, started_at, page)
        except NetworkError as e:
            logger.warning(f"Network error refreshing {record.item_id}: {e}")
            return self._failure(e, ErrorCode.NETWORK_ERROR, True, started_at, page)
        except Exception as e:
            logger.error(f"Unexpected error refreshing {record.item_id}: {e}", exc_info=True)
            return self._failure(e, ErrorCode.UNEXPECTED, True, started_at, page)

    def validate(self, page: FetchedPage) -> None:
        """
        Reject responses that cannot be used as a new snapshot

        Raises:
            ContentValidationError: On client error statuses or empty pages
        """
        if page.status_code >= 400:
            raise ContentValidationError(page.url, f"HTTP {page.status_code}")
        if not page.raw_content.strip() and not page.metadata:
            raise ContentValidationError(page.url, "page has no content")

    def _needs_rewrite(self, record: FreshnessRecord, change: ChangeResult) -> bool:
        if record.rewrite_pending:
            return True
        sensitivity = self.scheduler.settings.change_detection_sensitivity
        return self.detector.requires_rewrite(change, sensitivity)

    def _failure(
        self,
        error: Exception,
        code: ErrorCode,
        retryable: bool,
        started_at: datetime,
        page: FetchedPage | None,
    ) -> RefreshOutcome:
        return RefreshOutcome(
            success=False,
            retryable=retryable,
            error_message=str(error),
            error_code=code,
            started_at=started_at,
            completed_at=utcnow(),
            network_requests_count=page.network_requests if page else 1,
            bytes_processed=page.bytes_processed if page else 0,
        )
