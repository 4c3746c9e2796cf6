"""Tests for ORM model constraints.

Verifies UniqueConstraints raise IntegrityError on duplicate inserts,
so idempotent sync is enforced at the DB level as well.
"""

import pytest
from sqlalchemy.exc import IntegrityError

from app.models.database import Connection, Review
from app.models.sync_run import SyncRun

from tests.conftest import make_connection, make_location


class TestConnectionConstraints:

    @pytest.mark.asyncio
    async def test_one_connection_per_account_and_provider(self, async_session):
        async_session.add(make_connection("acct-1"))
        await async_session.commit()

        async_session.add(make_connection("acct-1"))
        with pytest.raises(IntegrityError):
            await async_session.commit()

    @pytest.mark.asyncio
    async def test_defaults(self, async_session):
        async_session.add(Connection(account_id="acct-1"))
        await async_session.commit()

        connection = (await async_session.get(Connection, 1))
        assert connection.provider == "google"
        assert connection.revision == 0
        assert connection.created_at is not None


class TestLocationConstraints:

    @pytest.mark.asyncio
    async def test_duplicate_location_for_account_raises(self, async_session):
        async_session.add(make_location("locations/A"))
        await async_session.commit()

        async_session.add(make_location("locations/A"))
        with pytest.raises(IntegrityError):
            await async_session.commit()

    @pytest.mark.asyncio
    async def test_same_location_name_other_account_allowed(self, async_session):
        async_session.add(make_location("locations/A", account_id="acct-1"))
        async_session.add(make_location("locations/A", account_id="acct-2"))
        await async_session.commit()


class TestReviewConstraints:

    @pytest.mark.asyncio
    async def test_duplicate_review_for_account_and_location_raises(self, async_session):
        """(account_id, location_id, external_review_id) must be unique."""
        async_session.add(Review(account_id="acct-1", location_id="locations/A", external_review_id="r1"))
        await async_session.commit()

        async_session.add(Review(account_id="acct-1", location_id="locations/A", external_review_id="r1"))
        with pytest.raises(IntegrityError):
            await async_session.commit()

    @pytest.mark.asyncio
    async def test_same_review_id_other_location_allowed(self, async_session):
        async_session.add(Review(account_id="acct-1", location_id="locations/A", external_review_id="r1"))
        async_session.add(Review(account_id="acct-1", location_id="locations/B", external_review_id="r1"))
        await async_session.commit()

    @pytest.mark.asyncio
    async def test_same_review_other_account_allowed(self, async_session):
        async_session.add(Review(account_id="acct-1", location_id="locations/A", external_review_id="r1"))
        async_session.add(Review(account_id="acct-2", location_id="locations/A", external_review_id="r1"))
        await async_session.commit()

    @pytest.mark.asyncio
    async def test_account_is_required(self, async_session):
        async_session.add(Review(location_id="locations/A", external_review_id="r1"))
        with pytest.raises(IntegrityError):
            await async_session.commit()


class TestSyncRunDefaults:

    @pytest.mark.asyncio
    async def test_started_at_defaults(self, async_session):
        async_session.add(SyncRun(run_type="reviews_sync", status="running"))
        await async_session.commit()

        run = await async_session.get(SyncRun, 1)
        assert run.started_at is not None
        assert run.finished_at is None
