"""Tests for the run history recorder."""

from datetime import datetime, timedelta

import pytest

from app.models.sync_run import SyncRun
from app.services.runs import RunAlreadyClosed, RunHistoryRecorder, get_run, list_runs


class TestRunHistoryRecorder:

    @pytest.mark.asyncio
    async def test_record_opens_running_run(self, session_factory):
        recorder = RunHistoryRecorder(session_factory)

        run = await recorder.record("reviews_sync", account_id="acct-1")

        async with session_factory() as session:
            stored = await get_run(session, run.id)
        assert stored.status == "running"
        assert stored.run_type == "reviews_sync"
        assert stored.account_id == "acct-1"
        assert stored.started_at is not None
        assert stored.finished_at is None

    @pytest.mark.asyncio
    async def test_close_sets_terminal_status(self, session_factory):
        recorder = RunHistoryRecorder(session_factory)
        run = await recorder.record("reviews_sync", meta={"trigger": "manual"})

        await recorder.close(run.id, "partial_failure", error=None, meta={"locations_failed": 1})

        async with session_factory() as session:
            stored = await get_run(session, run.id)
        assert stored.status == "partial_failure"
        assert stored.finished_at >= stored.started_at
        assert stored.meta == {"trigger": "manual", "locations_failed": 1}

    @pytest.mark.asyncio
    async def test_close_twice_is_rejected(self, session_factory):
        recorder = RunHistoryRecorder(session_factory)
        run = await recorder.record("reviews_sync")
        await recorder.close(run.id, "success")

        with pytest.raises(RunAlreadyClosed):
            await recorder.close(run.id, "failure", error="late")

        async with session_factory() as session:
            stored = await get_run(session, run.id)
        assert stored.status == "success"
        assert stored.error is None

    @pytest.mark.asyncio
    async def test_close_with_running_status_is_rejected(self, session_factory):
        recorder = RunHistoryRecorder(session_factory)
        run = await recorder.record("reviews_sync")

        with pytest.raises(ValueError):
            await recorder.close(run.id, "running")

    @pytest.mark.asyncio
    async def test_close_unknown_run(self, session_factory):
        with pytest.raises(LookupError):
            await RunHistoryRecorder(session_factory).close(999, "success")


class TestListRuns:

    @pytest.mark.asyncio
    async def test_most_recent_first_and_filtered(self, async_session):
        base = datetime(2025, 5, 1, 5, 30)
        async_session.add_all([
            SyncRun(run_type="reviews_sync", status="success", account_id="acct-1", started_at=base),
            SyncRun(run_type="reviews_sync", status="failure", account_id="acct-1", started_at=base + timedelta(days=1)),
            SyncRun(run_type="reviews_sync", status="success", account_id="acct-2", started_at=base + timedelta(days=2)),
        ])
        await async_session.commit()

        runs = await list_runs(async_session, account_id="acct-1")

        assert [run.status for run in runs] == ["failure", "success"]
        assert len(await list_runs(async_session)) == 3
        assert len(await list_runs(async_session, limit=1)) == 1
