"""
Tests for the Expiry Check Orchestrator.

Covers:
  - Scan -> alerts -> completed run with metrics
  - Same-day repeat (already completed) and forced re-runs
  - Failure and timeout leave a FAILED run, never RUNNING
  - A run abandoned by a crashed worker does not block the day
  - Best-effort alert publishing
"""

import asyncio
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import func, select

import expiry.orchestrator
from core.errors import ExpiryScanTimeoutError
from db.models import ExpiryAlert
from expiry.orchestrator import ExpiryCheckOrchestrator
from expiry.registry import runs_for_date, start_run

REFERENCE = date(2025, 1, 10)


def _orchestrator(**kwargs):
    kwargs.setdefault("today", lambda: REFERENCE)
    return ExpiryCheckOrchestrator(**kwargs)


@pytest.fixture
async def stocked(product, second_product, make_batch):
    """3 CRITICAL, 2 WARNING, 1 INFO batch plus one already past expiry."""
    for expiry in (date(2025, 1, 12), date(2025, 1, 14), date(2025, 1, 17)):
        await make_batch(product, expiry_date=expiry)
    for expiry in (date(2025, 1, 25), date(2025, 2, 9)):
        await make_batch(second_product, expiry_date=expiry)
    await make_batch(second_product, expiry_date=date(2025, 4, 1))
    return await make_batch(product, expiry_date=date(2025, 1, 9))


async def _alert_count(db) -> int:
    result = await db.execute(select(func.count()).select_from(ExpiryAlert))
    return int(result.scalar())


@pytest.mark.asyncio
class TestRun:
    async def test_completed_run_records_metrics(self, test_db, stocked):
        outcome = await _orchestrator().run(test_db, "MANUAL", created_by="pharmacist@main")

        assert outcome.status == "COMPLETED"
        run = outcome.run
        assert run.status == "COMPLETED"
        assert run.trigger_kind == "MANUAL"
        assert run.products_checked == 2
        assert run.batches_checked == 7
        assert run.alerts_generated == 7
        assert run.alerts_by_severity == {"CRITICAL": 4, "WARNING": 2, "INFO": 1}
        assert run.alerts_by_days_range["expired"] == 1
        assert run.alerts_by_days_range["0-7 days"] == 3
        assert run.execution_time_ms is not None
        assert await _alert_count(test_db) == 7

        await test_db.refresh(stocked)
        assert stocked.status == "EXPIRED"

    async def test_second_run_same_day_is_already_completed(self, test_db, stocked):
        first = await _orchestrator().run(test_db, "SCHEDULED")

        second = await _orchestrator().run(test_db, "MANUAL")

        assert second.already_completed
        assert second.run is None
        assert second.existing_run_id == str(first.run.run_id)
        assert len(await runs_for_date(test_db, REFERENCE)) == 1
        assert await _alert_count(test_db) == 7

    async def test_forced_run_records_second_completed_run(self, test_db, stocked):
        await _orchestrator().run(test_db, "SCHEDULED")

        forced = await _orchestrator().run(test_db, "MANUAL", force=True)

        assert forced.status == "COMPLETED"
        assert forced.run.forced is True
        runs = await runs_for_date(test_db, REFERENCE)
        assert [r.status for r in runs] == ["COMPLETED", "COMPLETED"]

    async def test_scan_failure_marks_run_failed(self, test_db, stocked):
        async def broken_scanner(db, reference_date):
            raise RuntimeError("scanner exploded")

        with pytest.raises(RuntimeError):
            await _orchestrator(scanner=broken_scanner).run(test_db, "SCHEDULED")

        (run,) = await runs_for_date(test_db, REFERENCE)
        assert run.status == "FAILED"
        assert run.error_message == "scanner exploded"
        assert await _alert_count(test_db) == 0

    async def test_failed_run_does_not_block_retry(self, test_db, stocked):
        async def broken_scanner(db, reference_date):
            raise RuntimeError("transient")

        with pytest.raises(RuntimeError):
            await _orchestrator(scanner=broken_scanner).run(test_db, "SCHEDULED")

        retry = await _orchestrator().run(test_db, "SCHEDULED")

        assert retry.status == "COMPLETED"

    async def test_timeout_marks_run_failed(self, test_db, stocked):
        async def slow_scanner(db, reference_date):
            await asyncio.sleep(5)

        with pytest.raises(ExpiryScanTimeoutError) as exc_info:
            await _orchestrator(scanner=slow_scanner, timeout_seconds=0.05).run(test_db, "SCHEDULED")

        assert isinstance(exc_info.value, TimeoutError)
        (run,) = await runs_for_date(test_db, REFERENCE)
        assert run.status == "FAILED"
        assert "exceeded" in run.error_message

    async def test_completion_failure_marks_run_failed(self, test_db, stocked, monkeypatch):
        async def broken_complete(db, run_id, metrics, execution_time_ms=None):
            raise RuntimeError("commit lost")

        monkeypatch.setattr(expiry.orchestrator, "complete_run", broken_complete)

        with pytest.raises(RuntimeError):
            await _orchestrator().run(test_db, "SCHEDULED")

        (run,) = await runs_for_date(test_db, REFERENCE)
        assert run.status == "FAILED"
        assert run.error_message == "commit lost"
        assert run.claim_key is None

    async def test_abandoned_run_does_not_block_the_day(self, test_db, stocked):
        crashed = await start_run(test_db, REFERENCE, "SCHEDULED", created_by="scheduler")
        crashed.started_at = datetime.utcnow() - timedelta(hours=2)
        await test_db.commit()

        outcome = await _orchestrator().run(test_db, "SCHEDULED")

        assert outcome.status == "COMPLETED"
        runs = await runs_for_date(test_db, REFERENCE)
        assert sorted(r.status for r in runs) == ["COMPLETED", "FAILED"]

    async def test_run_within_stale_window_still_blocks(self, test_db, stocked):
        await start_run(test_db, REFERENCE, "SCHEDULED")

        outcome = await _orchestrator().run(test_db, "MANUAL")

        assert outcome.status == "ALREADY_RUNNING"

    async def test_publishes_created_alerts(self, test_db, stocked):
        sent = []

        async def publisher(alerts):
            sent.extend(alerts)
            return 1

        await _orchestrator(publisher=publisher, publish=True).run(test_db, "MANUAL")

        assert len(sent) == 7

    async def test_publish_failure_keeps_run_completed(self, test_db, stocked):
        async def publisher(alerts):
            raise ConnectionError("redis down")

        outcome = await _orchestrator(publisher=publisher, publish=True).run(test_db, "MANUAL")

        assert outcome.run.status == "COMPLETED"

    async def test_publishing_disabled(self, test_db, stocked):
        sent = []

        async def publisher(alerts):
            sent.extend(alerts)
            return 0

        await _orchestrator(publisher=publisher, publish=False).run(test_db, "MANUAL")

        assert sent == []
