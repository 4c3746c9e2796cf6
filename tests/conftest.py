"""Shared test fixtures for the review sync test suite."""

import asyncio
from datetime import datetime, timedelta

import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from app.core.database import Base
# Import all models so their metadata is registered on Base
import app.models.database  # noqa: F401
import app.models.sync_run  # noqa: F401
from app.models.database import Connection, Location
from app.services.google import ExternalReview
from app.services.tokens import AccessToken


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """
    Provide a session factory over a file-backed SQLite database.

    Sync units open their own sessions, so the database has to be shared
    between connections; an in-memory database would be per-connection.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(session_factory):
    """A single session on the test database."""
    async with session_factory() as session:
        yield session


def make_connection(account_id="acct-1", **overrides) -> Connection:
    values = dict(
        account_id=account_id,
        provider="google",
        access_token=f"access-{account_id}",
        refresh_token=f"refresh-{account_id}",
        expires_at=datetime.utcnow() + timedelta(hours=1),
        revision=0,
    )
    values.update(overrides)
    return Connection(**values)


def make_location(location_id, account_id="acct-1", active=True) -> Location:
    return Location(
        account_id=account_id,
        account_resource_name=f"accounts/{account_id}",
        location_resource_name=location_id,
        title=f"Location {location_id}",
        active=active,
    )


def make_review(review_id, rating=5, comment="Great service", **overrides) -> ExternalReview:
    values = dict(
        external_review_id=review_id,
        review_name=f"accounts/1/locations/1/reviews/{review_id}",
        author_name="Jane Doe",
        rating=rating,
        comment=comment,
        create_time=datetime(2025, 3, 1, 10, 0),
        update_time=datetime(2025, 3, 1, 10, 0),
        raw={"reviewId": review_id},
    )
    values.update(overrides)
    return ExternalReview(**values)


class FakeTokenManager:
    """Stands in for TokenManager; errors are configured per account."""

    def __init__(self, errors=None):
        self.errors = errors or {}
        self.calls = []

    async def obtain_access_token(self, session, account_id):
        self.calls.append(account_id)
        await asyncio.sleep(0)
        if account_id in self.errors:
            raise self.errors[account_id]
        return AccessToken(f"token-{account_id}", None)

    async def close(self):
        pass


class FakeGoogle:
    """Stands in for GoogleBusinessClient, keyed by location parent path."""

    def __init__(self, reviews=None, errors=None, delays=None):
        self.reviews = reviews or {}
        self.errors = errors or {}
        self.delays = delays or {}
        self.fetched = []

    async def fetch_all_reviews(self, access_token, parent):
        await asyncio.sleep(self.delays.get(parent, 0))
        self.fetched.append(parent)
        if parent in self.errors:
            raise self.errors[parent]
        return list(self.reviews.get(parent, []))

    async def close(self):
        pass
