"""Google Business Profile review client."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from app.services.connection_status import derive_reauth_reason, is_reauth_required_error
from app.services.errors import (
    AuthRequired,
    DataValidationError,
    LocationNotFound,
    RateLimited,
    TransientNetwork,
)

logger = logging.getLogger(__name__)

_STAR_RATINGS = {"ONE": 1, "TWO": 2, "THREE": 3, "FOUR": 4, "FIVE": 5}
_FRACTION = re.compile(r"\.(\d{6})\d+")


@dataclass(frozen=True)
class ExternalReview:
    """A review as fetched from Google, normalized for reconciliation."""

    external_review_id: str
    review_name: Optional[str] = None
    author_name: Optional[str] = None
    rating: Optional[int] = None
    comment: Optional[str] = None
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    owner_reply: Optional[str] = None
    owner_reply_time: Optional[datetime] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass
class ReviewPage:
    reviews: list[dict[str, Any]]
    next_page_token: Optional[str] = None


def map_star_rating(star_rating: Any) -> Optional[int]:
    """Convert Google's ``ONE``..``FIVE`` enum to an integer rating."""
    return _STAR_RATINGS.get(star_rating) if isinstance(star_rating, str) else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp into a naive UTC datetime."""
    if not isinstance(value, str) or not value:
        return None
    # Google sends up to nanosecond precision; datetime stops at microseconds
    text = _FRACTION.sub(r".\1", value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"Unparseable review timestamp: {value!r}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _review_text(review: dict[str, Any]) -> Optional[str]:
    if isinstance(review.get("comment_original"), str):
        return review["comment_original"]
    original = review.get("originalText")
    if isinstance(original, dict) and isinstance(original.get("text"), str):
        return original["text"]
    if isinstance(review.get("comment"), str):
        return review["comment"]
    return None


def parse_review(review: dict[str, Any]) -> Optional[ExternalReview]:
    """
    Parse a raw Google review.

    Returns:
        ExternalReview, or None when the review carries no usable id.
    """
    name = review.get("name") if isinstance(review.get("name"), str) else None
    review_id = review.get("reviewId")
    if not isinstance(review_id, str) or not review_id:
        review_id = name.rsplit("/", 1)[-1] if name else None
    if not review_id:
        return None

    reviewer = review.get("reviewer") if isinstance(review.get("reviewer"), dict) else {}
    reply = review.get("reviewReply") if isinstance(review.get("reviewReply"), dict) else {}

    return ExternalReview(
        external_review_id=review_id,
        review_name=name,
        author_name=reviewer.get("displayName"),
        rating=map_star_rating(review.get("starRating")),
        comment=_review_text(review),
        create_time=parse_timestamp(review.get("createTime")),
        update_time=parse_timestamp(review.get("updateTime")),
        owner_reply=reply.get("comment"),
        owner_reply_time=parse_timestamp(reply.get("updateTime")),
        raw=review,
    )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, str):
        return error
    return f"HTTP {response.status_code}"


class GoogleBusinessClient:
    """Async client for the Business Profile reviews API."""

    def __init__(
        self,
        base_url: str = "https://mybusiness.googleapis.com/v4",
        page_size: int = 50,
        max_pages: int = 20,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.max_pages = max_pages
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=30.0)
        return self.client

    async def close(self):
        """Close the HTTP client if this instance created it."""
        if self.client and self._owns_client:
            await self.client.aclose()
            self.client = None

    async def _get_with_retry(self, url: str, access_token: str, params: dict[str, Any]) -> httpx.Response:
        """GET with exponential backoff on 429, 5xx and transport errors."""
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {access_token}"}

        for attempt in range(self.max_retries + 1):
            wait_time = self.backoff_base * 2 ** attempt
            try:
                response = await client.get(url, headers=headers, params=params)
            except httpx.TransportError as e:
                if attempt < self.max_retries:
                    logger.warning(f"Network error, waiting {wait_time}s (attempt {attempt + 1}/{self.max_retries + 1}): {e}")
                    await asyncio.sleep(wait_time)
                    continue
                raise TransientNetwork(f"Network error fetching reviews: {e}") from e

            if response.status_code == 429 or response.status_code >= 500:
                if attempt < self.max_retries:
                    logger.warning(
                        f"Google returned HTTP {response.status_code}, waiting {wait_time}s "
                        f"(attempt {attempt + 1}/{self.max_retries + 1})"
                    )
                    await asyncio.sleep(wait_time)
                    continue
                message = _error_message(response)
                if response.status_code == 429:
                    raise RateLimited(f"Google rate limit reached: {message}")
                raise TransientNetwork(f"Google API error {response.status_code}: {message}")

            return response

        # max_retries < 0 is the only way out of the loop
        raise TransientNetwork("No response from Google reviews API")

    async def fetch_reviews(
        self,
        access_token: str,
        parent: str,
        page_token: Optional[str] = None,
    ) -> ReviewPage:
        """
        Fetch one page of reviews for a location.

        Args:
            access_token: Valid Google access token
            parent: Location resource path, e.g. ``accounts/1/locations/2``
            page_token: Token from the previous page, if any
        """
        params: dict[str, Any] = {"pageSize": self.page_size, "orderBy": "updateTime desc"}
        if page_token:
            params["pageToken"] = page_token

        response = await self._get_with_retry(f"{self.base_url}/{parent}/reviews", access_token, params)

        if response.status_code == 404:
            logger.warning(f"Google reviews 404 for {parent}")
            raise LocationNotFound("Location not found on Google.")
        if response.status_code in (401, 403):
            message = _error_message(response)
            if is_reauth_required_error(status=response.status_code, message=message):
                error = AuthRequired(message)
                error.reason = derive_reauth_reason(message)
                raise error
            raise DataValidationError(f"Google API error {response.status_code}: {message}")
        if response.is_error:
            raise DataValidationError(f"Google API error {response.status_code}: {_error_message(response)}")

        try:
            data = response.json()
        except ValueError as e:
            raise DataValidationError(f"Google reviews response is not JSON: {response.text[:200]}") from e
        if not isinstance(data, dict):
            raise DataValidationError("Google reviews response has an unexpected shape")

        reviews = data.get("reviews") or []
        if not isinstance(reviews, list):
            raise DataValidationError("Google reviews response has a non-list 'reviews' field")

        next_token = data.get("nextPageToken")
        return ReviewPage(
            reviews=[r for r in reviews if isinstance(r, dict)],
            next_page_token=next_token if isinstance(next_token, str) and next_token else None,
        )

    async def fetch_all_reviews(self, access_token: str, parent: str) -> list[ExternalReview]:
        """Drain pagination and return every parseable review for a location."""
        reviews: list[ExternalReview] = []
        page_token: Optional[str] = None

        for _ in range(self.max_pages):
            page = await self.fetch_reviews(access_token, parent, page_token)
            for raw in page.reviews:
                review = parse_review(raw)
                if review is None:
                    logger.warning(f"Skipping review without id for {parent}: {raw.get('name')!r}")
                    continue
                reviews.append(review)

            if not page.next_page_token:
                logger.info(f"Fetched {len(reviews)} reviews for {parent}")
                return reviews
            page_token = page.next_page_token

        raise DataValidationError(f"Reviews pagination limit reached for {parent} ({self.max_pages} pages)")
