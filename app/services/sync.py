"""Sync orchestration - runs review sync across locations with per-location failure isolation."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, get_settings
from app.models.database import Connection, Location
from app.services.errors import INTERNAL, InternalFailure, LocationsLoadFailed, SyncError
from app.services.google import GoogleBusinessClient
from app.services.reviews import ReviewUpsertEngine, UpsertCounts
from app.services.runs import FAILURE, PARTIAL_FAILURE, SUCCESS, RunHistoryRecorder
from app.services.tokens import PROVIDER, TokenManager, clear_reauth_required

logger = logging.getLogger(__name__)

LOCATION_SUCCESS = "success"
LOCATION_ERROR = "error"
LOCATION_NOT_ATTEMPTED = "not_attempted"


@dataclass(frozen=True)
class LocationTarget:
    """The parts of a Location a sync unit needs, detached from any session."""

    location_id: str
    account_id: str
    account_resource_name: str
    title: Optional[str] = None
    active: bool = True

    @property
    def parent(self) -> str:
        """Resource path used by the reviews API."""
        if self.location_id.startswith("accounts/"):
            return self.location_id
        return f"{self.account_resource_name}/{self.location_id}"

    @classmethod
    def from_model(cls, location: Location) -> "LocationTarget":
        return cls(
            location_id=location.location_resource_name,
            account_id=location.account_id,
            account_resource_name=location.account_resource_name,
            title=location.title,
            active=bool(location.active),
        )


@dataclass(frozen=True)
class LocationResult:
    location_id: str
    status: str
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retryable: bool = False

    @classmethod
    def ok(cls, location_id: str, counts: UpsertCounts) -> "LocationResult":
        return cls(
            location_id=location_id,
            status=LOCATION_SUCCESS,
            inserted=counts.inserted,
            updated=counts.updated,
            skipped=counts.skipped,
        )

    @classmethod
    def failed(cls, location_id: str, error: BaseException) -> "LocationResult":
        if isinstance(error, SyncError):
            kind, retryable = error.kind, error.retryable
        else:
            kind, retryable = INTERNAL, False
        return cls(
            location_id=location_id,
            status=LOCATION_ERROR,
            error=str(error) or type(error).__name__,
            error_kind=kind,
            retryable=retryable,
        )

    @classmethod
    def not_attempted(cls, location_id: str) -> "LocationResult":
        return cls(location_id=location_id, status=LOCATION_NOT_ATTEMPTED)

    def as_dict(self) -> dict[str, Any]:
        return {
            "location_id": self.location_id,
            "status": self.status,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass
class BatchResult:
    status: str
    locations_count: int = 0
    locations_failed: int = 0
    locations_not_attempted: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    location_results: list[LocationResult] = field(default_factory=list)
    run_id: Optional[int] = None

    @property
    def reviews_count(self) -> int:
        return self.inserted + self.updated + self.skipped

    def as_dict(self) -> dict[str, Any]:
        """Response shape of the batch sync endpoint."""
        return {
            "runId": self.run_id,
            "status": self.status,
            "locationsCount": self.locations_count,
            "reviewsCount": self.reviews_count,
            "locationsFailed": self.locations_failed,
            "locationsNotAttempted": self.locations_not_attempted,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "locationResults": [r.as_dict() for r in self.location_results],
        }


def batch_status(results: Sequence[LocationResult]) -> str:
    """
    Terminal status of a batch.

    success when every location succeeded (an empty batch included),
    failure when none did, partial_failure otherwise.
    """
    if not results:
        return SUCCESS
    succeeded = sum(1 for r in results if r.status == LOCATION_SUCCESS)
    if succeeded == len(results):
        return SUCCESS
    if succeeded == 0:
        return FAILURE
    return PARTIAL_FAILURE


def aggregate_results(results: Sequence[LocationResult]) -> BatchResult:
    """Fold per-location results into batch totals, keeping their order."""
    summary = BatchResult(status=batch_status(results), location_results=list(results))
    for result in results:
        summary.locations_count += 1
        if result.status == LOCATION_ERROR:
            summary.locations_failed += 1
        elif result.status == LOCATION_NOT_ATTEMPTED:
            summary.locations_not_attempted += 1
        summary.inserted += result.inserted
        summary.updated += result.updated
        summary.skipped += result.skipped
    return summary


# Token resolutions outliving their batch. A refresh that already reached
# Google must still store the refresh token it may have rotated.
_inflight_tokens: set[asyncio.Task] = set()


def _forget_token_task(task: asyncio.Task) -> None:
    _inflight_tokens.discard(task)
    if not task.cancelled():
        # Retrieve the exception; the locations that awaited it already reported it
        task.exception()


class _AccountTokens:
    """Resolves each account's access token at most once per batch.

    Locations of the same account share the outcome: a revoked token fails
    all of them with the same error instead of retrying per location.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], token_manager: TokenManager):
        self.session_factory = session_factory
        self.token_manager = token_manager
        self._tasks: dict[str, asyncio.Task] = {}

    async def _resolve(self, account_id: str):
        async with self.session_factory() as session:
            return await self.token_manager.obtain_access_token(session, account_id)

    async def get(self, account_id: str) -> str:
        task = self._tasks.get(account_id)
        if task is None:
            task = self._tasks[account_id] = asyncio.create_task(self._resolve(account_id))
            _inflight_tokens.add(task)
            task.add_done_callback(_forget_token_task)
        # A cancelled location must not cancel the resolution other locations wait on
        access_token = await asyncio.shield(task)
        return access_token.token


class SyncOrchestrator:
    """Runs review sync for a batch of locations and records the run."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        token_manager: TokenManager,
        google: GoogleBusinessClient,
        upsert_engine: Optional[ReviewUpsertEngine] = None,
        recorder: Optional[RunHistoryRecorder] = None,
        max_workers: int = 4,
        deadline_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.token_manager = token_manager
        self.google = google
        self.upsert_engine = upsert_engine or ReviewUpsertEngine()
        self.recorder = recorder or RunHistoryRecorder(session_factory)
        self.max_workers = max(1, max_workers)
        self.deadline_seconds = deadline_seconds

    async def close(self):
        """Close the HTTP clients."""
        await self.google.close()
        await self.token_manager.close()

    async def sync_batch(
        self,
        locations: Iterable[LocationTarget],
        run_type: str = "reviews_sync",
        account_id: Optional[str] = None,
    ) -> BatchResult:
        """
        Sync every active location and close a batch-level SyncRun.

        Per-location failures end up in the result list. Only a failure of
        the orchestration itself escapes, as InternalFailure, after the run
        has been closed as failure.
        """
        async def provided() -> Iterable[LocationTarget]:
            return locations

        return await self._run_batch(provided, run_type, account_id)

    async def _run_batch(
        self,
        load_targets: Callable[[], Awaitable[Iterable[LocationTarget]]],
        run_type: str,
        account_id: Optional[str],
    ) -> BatchResult:
        """Open the run, then load, filter and sync targets; the run is closed on every exit."""
        run = await self.recorder.record(run_type, account_id=account_id)
        targets: list[LocationTarget] = []
        results: list[LocationResult] = []
        error: Optional[str] = None

        try:
            targets = [location for location in await load_targets() if location.active]
            results = await self._run_units(targets)
        except asyncio.CancelledError:
            error = "Sync batch cancelled"
            raise
        except LocationsLoadFailed as e:
            error = str(e)
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"Sync run {run.id} aborted: {error}")
            raise InternalFailure(f"Sync batch aborted: {error}") from e
        finally:
            summary = aggregate_results(results)
            summary.run_id = run.id
            if error is not None:
                summary.status = FAILURE
            await self.recorder.close(
                run.id,
                summary.status,
                error=error,
                meta={
                    "locations_count": summary.locations_count,
                    "locations_failed": summary.locations_failed,
                    "locations_not_attempted": summary.locations_not_attempted,
                    "inserted": summary.inserted,
                    "updated": summary.updated,
                    "skipped": summary.skipped,
                    "location_results": [r.as_dict() for r in summary.location_results],
                },
            )

        await self._finish_accounts(targets, results)
        logger.info(
            f"Sync run {run.id} {summary.status}: {summary.locations_count} locations, "
            f"{summary.locations_failed} failed, {summary.locations_not_attempted} not attempted, "
            f"{summary.inserted} inserted, {summary.updated} updated, {summary.skipped} skipped"
        )
        return summary

    async def _run_units(self, targets: list[LocationTarget]) -> list[LocationResult]:
        """Run one unit per location, bounded by max_workers and the deadline."""
        if not targets:
            return []

        semaphore = asyncio.Semaphore(self.max_workers)
        tokens = _AccountTokens(self.session_factory, self.token_manager)

        async def run(target: LocationTarget) -> LocationResult:
            async with semaphore:
                return await self._sync_location(target, tokens)

        tasks = [asyncio.create_task(run(target)) for target in targets]
        try:
            done, pending = await asyncio.wait(tasks, timeout=self.deadline_seconds)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        if pending:
            logger.warning(f"Sync deadline of {self.deadline_seconds}s reached, abandoning {len(pending)} locations")
            for task in pending:
                task.cancel()

        results = []
        for target, task in zip(targets, tasks):
            if task not in done or task.cancelled():
                results.append(LocationResult.not_attempted(target.location_id))
            elif task.exception() is not None:
                results.append(LocationResult.failed(target.location_id, task.exception()))
            else:
                results.append(task.result())
        return results

    async def _sync_location(self, target: LocationTarget, tokens: _AccountTokens) -> LocationResult:
        """Token, fetch and reconcile for one location. Never raises."""
        try:
            access_token = await tokens.get(target.account_id)
            reviews = await self.google.fetch_all_reviews(access_token, target.parent)
            async with self.session_factory() as session:
                counts = await self.upsert_engine.reconcile(
                    session, target.location_id, reviews, account_id=target.account_id
                )
                await _mark_location(session, target, status="done")
                await session.commit()
        except SyncError as e:
            logger.warning(f"Sync failed for location {target.location_id} ({e.kind}): {e}")
            await self._record_location_error(target, e)
            return LocationResult.failed(target.location_id, e)
        except Exception as e:
            logger.error(f"Unexpected error syncing location {target.location_id}: {e}")
            await self._record_location_error(target, e)
            return LocationResult.failed(target.location_id, e)

        return LocationResult.ok(target.location_id, counts)

    async def _record_location_error(self, target: LocationTarget, error: Exception) -> None:
        try:
            async with self.session_factory() as session:
                await _mark_location(session, target, status="error", error=str(error) or type(error).__name__)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to record sync error for location {target.location_id}: {e}")

    async def _finish_accounts(self, targets: list[LocationTarget], results: list[LocationResult]) -> None:
        """Clear reauth signals and stamp last sync for accounts that synced."""
        synced_accounts = {
            target.account_id
            for target, result in zip(targets, results)
            if result.status == LOCATION_SUCCESS
        }
        if not synced_accounts:
            return
        try:
            async with self.session_factory() as session:
                for account_id in sorted(synced_accounts):
                    await clear_reauth_required(session, account_id)
                await session.execute(
                    update(Connection)
                    .where(Connection.account_id.in_(synced_accounts), Connection.provider == PROVIDER)
                    .values(last_synced_at=datetime.utcnow())
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to update connection sync state: {e}")

    async def _load_targets(self, account_id: Optional[str] = None, location_id: Optional[str] = None) -> list[LocationTarget]:
        query = select(Location).where(Location.active.is_(True)).order_by(Location.account_id, Location.id)
        if account_id is not None:
            query = query.where(Location.account_id == account_id)
        if location_id is not None:
            query = query.where(Location.location_resource_name == location_id)
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return [LocationTarget.from_model(location) for location in result.scalars()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to load locations (account={account_id}): {e}")
            raise LocationsLoadFailed("Failed to load locations") from e

    async def sync_account(self, account_id: str, location_id: Optional[str] = None) -> BatchResult:
        """
        Sync an account's active locations, or just one of them.

        A failure to load the locations closes the run as failure and
        re-raises LocationsLoadFailed.
        """
        return await self._run_batch(
            lambda: self._load_targets(account_id=account_id, location_id=location_id),
            run_type="reviews_sync",
            account_id=account_id,
        )

    async def sync_all(self) -> BatchResult:
        """Sync every active location of every account. Called by the scheduler."""
        return await self._run_batch(self._load_targets, run_type="reviews_sync_cron", account_id=None)


def create_orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
) -> SyncOrchestrator:
    """Build an orchestrator wired from settings."""
    settings = settings or get_settings()
    token_manager = TokenManager(
        settings.google_client_id,
        settings.google_client_secret,
        token_url=settings.google_token_url,
        refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
    )
    google = GoogleBusinessClient(
        base_url=settings.gbp_api_base,
        page_size=settings.sync_page_size,
        max_pages=settings.sync_max_pages,
        max_retries=settings.sync_max_retries,
    )
    return SyncOrchestrator(
        session_factory,
        token_manager,
        google,
        max_workers=settings.sync_max_workers,
        deadline_seconds=settings.sync_deadline_seconds,
    )


async def _mark_location(
    session: AsyncSession,
    target: LocationTarget,
    status: str,
    error: Optional[str] = None,
) -> None:
    values: dict[str, Any] = {"last_sync_status": status, "last_sync_error": error}
    if status == "done":
        values["last_synced_at"] = datetime.utcnow()
    await session.execute(
        update(Location)
        .where(
            Location.account_id == target.account_id,
            Location.location_resource_name == target.location_id,
        )
        .values(**values)
    )
