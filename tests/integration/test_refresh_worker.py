"""Integration tests for the refresh worker"""

import threading
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from freshwatch.models.analytics import AlertKind
from freshwatch.models.content import FetchedPage, RewrittenContent
from freshwatch.models.freshness import FreshnessStatus
from freshwatch.models.queue import ErrorCode, QueueStatus
from freshwatch.services.errors import FetchTimeoutError, GenerationError, NetworkError
from freshwatch.services.refresh_worker import RefreshWorker
from tests.helpers import T0, make_snapshot

URL = "https://example.com/product"
CHECK_TIME = T0 + timedelta(hours=25)


def page_for(snapshot, status_code=200) -> FetchedPage:
    return FetchedPage(
        url=snapshot.url,
        raw_content=snapshot.content,
        status_code=status_code,
        metadata=snapshot.metadata,
        images=snapshot.images,
        bytes_processed=len(snapshot.content),
    )


@pytest.fixture
def fetcher():
    mock = AsyncMock()
    mock.fetch.return_value = page_for(make_snapshot())
    return mock


@pytest.fixture
def rewriter():
    mock = AsyncMock()
    mock.rewrite.return_value = RewrittenContent(
        title="Rewritten title", description="Rewritten description", tags=["fresh"]
    )
    return mock


@pytest.fixture
def worker(scheduler, fetcher, rewriter):
    return RefreshWorker(scheduler, fetcher, rewriter, worker_id="worker-test")


@pytest.fixture
def tracked(tracker):
    return tracker.initialize("item-1", URL, make_snapshot(), now=T0)


async def refresh(scheduler, worker, now=CHECK_TIME):
    scheduler.enqueue("item-1", now=now)
    return await worker.run_once(now=now)


class TestRefreshWorker:
    """Test end-to-end refresh cycles with a stubbed fetcher and rewriter"""

    @pytest.mark.asyncio
    async def test_unchanged_content(self, tracked, tracker, scheduler, worker, rewriter):
        completed = await refresh(scheduler, worker)

        assert [entry.status for entry in completed] == [QueueStatus.COMPLETED]
        record = tracker.get("item-1")
        assert record.status == FreshnessStatus.FRESH
        assert record.content_version == 1
        assert record.last_checked_at == CHECK_TIME
        assert record.next_check_at == CHECK_TIME + timedelta(hours=24)
        rewriter.rewrite.assert_not_called()

        history = scheduler.list_history("item-1")[0]
        assert history.success is True
        assert history.changes_found is False
        assert history.bytes_processed == len(make_snapshot().content)

    @pytest.mark.asyncio
    async def test_repeated_unchanged_checks_add_no_versions(
        self, tracked, tracker, versions, scheduler, worker
    ):
        await refresh(scheduler, worker)
        await refresh(scheduler, worker, now=CHECK_TIME + timedelta(hours=25))

        assert versions.count("item-1") == 1
        assert tracker.get("item-1").content_version == 1
        assert tracker.get("item-1").check_count == 2

    @pytest.mark.asyncio
    async def test_significant_change_is_rewritten(
        self, tracked, tracker, versions, scheduler, worker, fetcher, rewriter
    ):
        fetcher.fetch.return_value = page_for(make_snapshot(title="Example Product v2"))

        await refresh(scheduler, worker)

        rewriter.rewrite.assert_awaited_once()
        record = tracker.get("item-1")
        assert record.content_version == 2
        assert record.update_count == 1
        assert record.rewritten_metadata["title"] == "Rewritten title"

        latest = versions.latest("item-1")
        assert latest.changes_detected == {"metadata": ["title"]}
        assert latest.rewritten_meta_snapshot["title"] == "Rewritten title"

        history = scheduler.list_history("item-1")[0]
        assert history.changes_found is True
        assert history.rewrite_invoked is True
        assert history.old_content_hash == tracked.content_hash

    @pytest.mark.asyncio
    async def test_minor_change_skips_rewrite(self, tracked, tracker, scheduler, worker, fetcher, rewriter):
        fetcher.fetch.return_value = page_for(make_snapshot(pricing="free"))

        await refresh(scheduler, worker)

        assert tracker.get("item-1").content_version == 2
        rewriter.rewrite.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_content_needs_review(
        self, tracked, tracker, scheduler, worker, fetcher, alerts
    ):
        fetcher.fetch.return_value = page_for(make_snapshot(), status_code=404)

        completed = await refresh(scheduler, worker)

        assert completed[0].status == QueueStatus.FAILED
        assert completed[0].error_code == ErrorCode.VALIDATION_ERROR.value
        record = tracker.get("item-1")
        assert record.needs_review is True
        assert record.status == FreshnessStatus.FAILED
        assert len(alerts.list_alerts(kind=AlertKind.VALIDATION_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_empty_page_is_invalid(self, tracked, tracker, scheduler, worker, fetcher):
        fetcher.fetch.return_value = FetchedPage(url=URL, status_code=200)

        await refresh(scheduler, worker)

        assert tracker.get("item-1").needs_review is True

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, tracked, tracker, scheduler, worker, fetcher, alerts):
        fetcher.fetch.side_effect = NetworkError(URL, "connection reset")
        now = CHECK_TIME
        scheduler.enqueue("item-1", now=now)

        first = await worker.run_once(now=now)
        assert first[0].status == QueueStatus.PENDING

        now += timedelta(seconds=60)
        second = await worker.run_once(now=now)
        assert second[0].retry_count == 2

        now += timedelta(seconds=120)
        third = await worker.run_once(now=now)

        assert third[0].status == QueueStatus.FAILED
        assert fetcher.fetch.await_count == 3
        assert tracker.get("item-1").status == FreshnessStatus.FAILED
        assert tracker.get("item-1").needs_review is False
        assert len(alerts.list_alerts(kind=AlertKind.RETRIES_EXHAUSTED)) == 1

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, tracked, scheduler, worker, fetcher):
        fetcher.fetch.side_effect = FetchTimeoutError(URL, "timed out")

        completed = await refresh(scheduler, worker)

        assert completed[0].status == QueueStatus.PENDING
        assert completed[0].error_code == ErrorCode.TIMEOUT.value

    @pytest.mark.asyncio
    async def test_unexpected_error_is_retryable(self, tracked, scheduler, worker, fetcher):
        fetcher.fetch.side_effect = RuntimeError("parser exploded")

        completed = await refresh(scheduler, worker)

        assert completed[0].status == QueueStatus.PENDING
        assert completed[0].error_code == ErrorCode.UNEXPECTED.value

    @pytest.mark.asyncio
    async def test_rewrite_failure_is_deferred(
        self, tracked, tracker, scheduler, worker, fetcher, rewriter
    ):
        fetcher.fetch.return_value = page_for(make_snapshot(title="Example Product v2"))
        rewriter.rewrite.side_effect = GenerationError("model unavailable")

        completed = await refresh(scheduler, worker)

        assert completed[0].status == QueueStatus.COMPLETED
        record = tracker.get("item-1")
        assert record.content_version == 2
        assert record.rewrite_pending is True
        assert record.rewritten_metadata is None

        history = scheduler.list_history("item-1")[0]
        assert history.success is True
        assert history.error_code == ErrorCode.GENERATION_ERROR.value
        assert history.error_message == "model unavailable"

        # The next cycle retries the rewrite even though nothing changed
        rewriter.rewrite.side_effect = None
        await refresh(scheduler, worker, now=CHECK_TIME + timedelta(hours=25))

        record = tracker.get("item-1")
        assert rewriter.rewrite.await_count == 2
        assert record.content_version == 2
        assert record.rewrite_pending is False
        assert record.rewritten_metadata["title"] == "Rewritten title"

    @pytest.mark.asyncio
    async def test_removed_item_is_dropped(self, tracked, tracker, scheduler, worker, fetcher):
        scheduler.enqueue("item-1", now=CHECK_TIME)
        entry = scheduler.claim_next(worker.worker_id, now=CHECK_TIME)[0]
        tracker.remove("item-1")

        assert await worker.process(entry, CHECK_TIME) is None
        fetcher.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_nothing_to_claim(self, worker, fetcher):
        assert await worker.run_once(now=CHECK_TIME) == []
        fetcher.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_database_calls_run_off_the_event_loop(self, tracked, scheduler, worker):
        loop_thread = threading.get_ident()
        threads = []
        complete = scheduler.complete

        def recording_complete(*args, **kwargs):
            threads.append(threading.get_ident())
            return complete(*args, **kwargs)

        with patch.object(scheduler, "complete", side_effect=recording_complete):
            completed = await refresh(scheduler, worker)

        assert [entry.status for entry in completed] == [QueueStatus.COMPLETED]
        assert threads
        assert loop_thread not in threads
