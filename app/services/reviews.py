"""Review reconciliation - decides insert, update or skip per fetched review."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import Review
from app.services.google import ExternalReview

logger = logging.getLogger(__name__)

# Fields whose change turns a re-fetched review into an update
TRACKED_FIELDS = (
    "rating",
    "comment",
    "author_name",
    "update_time",
    "owner_reply",
    "owner_reply_time",
)


@dataclass
class UpsertCounts:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.skipped


def has_changes(stored: Review, fetched: ExternalReview) -> bool:
    """Return True when any tracked field differs between the stored and fetched review."""
    return any(getattr(stored, name) != getattr(fetched, name) for name in TRACKED_FIELDS)


class ReviewUpsertEngine:
    """Reconciles a location's fetched reviews with the stored ones."""

    async def _load_existing(
        self,
        session: AsyncSession,
        account_id: str,
        location_id: str,
        external_ids: list[str],
    ) -> dict[str, Review]:
        if not external_ids:
            return {}
        result = await session.execute(
            select(Review).where(
                Review.account_id == account_id,
                Review.location_id == location_id,
                Review.external_review_id.in_(external_ids),
            )
        )
        return {review.external_review_id: review for review in result.scalars()}

    async def reconcile(
        self,
        session: AsyncSession,
        location_id: str,
        fetched_reviews: Sequence[ExternalReview],
        account_id: str,
    ) -> UpsertCounts:
        """
        Insert new reviews, update changed ones and skip identical ones.

        Only the account's own rows are considered, so accounts sharing a
        location keep separate copies. Reviews missing from ``fetched_reviews``
        are left untouched; a partial fetch says nothing about deletion. The
        caller owns the commit.

        Returns:
            UpsertCounts for this location.
        """
        counts = UpsertCounts()
        external_ids = list(dict.fromkeys(r.external_review_id for r in fetched_reviews))
        existing = await self._load_existing(session, account_id, location_id, external_ids)
        now = datetime.utcnow()

        for fetched in fetched_reviews:
            stored = existing.get(fetched.external_review_id)

            if stored is None:
                stored = Review(
                    account_id=account_id,
                    location_id=location_id,
                    external_review_id=fetched.external_review_id,
                    review_name=fetched.review_name,
                    raw=fetched.raw,
                    last_synced_at=now,
                )
                for name in TRACKED_FIELDS:
                    setattr(stored, name, getattr(fetched, name))
                session.add(stored)
                existing[fetched.external_review_id] = stored
                counts.inserted += 1
                continue

            if not has_changes(stored, fetched):
                counts.skipped += 1
                continue

            for name in TRACKED_FIELDS:
                setattr(stored, name, getattr(fetched, name))
            stored.review_name = fetched.review_name
            stored.raw = fetched.raw
            stored.last_synced_at = now
            counts.updated += 1

        await session.flush()
        logger.info(
            f"Reconciled {len(fetched_reviews)} reviews for {location_id} (account={account_id}): "
            f"{counts.inserted} inserted, {counts.updated} updated, {counts.skipped} skipped"
        )
        return counts
