"""
Google OAuth token lifecycle.

Hands out a valid access token per account, refreshing it against the
Google token endpoint when it is about to expire. Token writes go through a
conditional update on ``Connection.revision`` so two refreshes racing for
the same account cannot silently overwrite each other's rotated refresh
token.
"""

import asyncio
import logging
import re
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import Connection
from app.services.connection_status import REAUTH_REQUIRED_CODE
from app.services.errors import (
    AuthRequired,
    MissingRefreshToken,
    NoConnection,
    RefreshFailed,
    TokenRevoked,
)

logger = logging.getLogger(__name__)

PROVIDER = "google"
_REVOKED_PATTERN = re.compile(r"expired or revoked", re.IGNORECASE)

# Refresh locks shared by every TokenManager on a loop, so a scheduled run
# and a manual trigger for the same account never refresh concurrently.
# A lock lives only while someone holds or waits on it.
_refresh_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, weakref.WeakValueDictionary[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def refresh_lock(account_id: str) -> asyncio.Lock:
    """Return the refresh lock for an account on the running loop."""
    loop = asyncio.get_running_loop()
    locks = _refresh_locks.get(loop)
    if locks is None:
        locks = _refresh_locks[loop] = weakref.WeakValueDictionary()
    lock = locks.get(account_id)
    if lock is None:
        lock = locks[account_id] = asyncio.Lock()
    return lock


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: Optional[datetime]
    refreshed: bool = False


async def load_connection(session: AsyncSession, account_id: str) -> Optional[Connection]:
    """Load the Google connection row for an account, bypassing the identity map."""
    result = await session.execute(
        select(Connection)
        .where(Connection.account_id == account_id, Connection.provider == PROVIDER)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def mark_reauth_required(session: AsyncSession, account_id: str, error: AuthRequired) -> None:
    """Record that the account has to reconnect Google."""
    await session.execute(
        update(Connection)
        .where(Connection.account_id == account_id, Connection.provider == PROVIDER)
        .values(
            last_error_code=REAUTH_REQUIRED_CODE,
            last_error_reason=error.reason,
            last_error_message=str(error),
            last_error_at=datetime.utcnow(),
        )
    )
    await session.commit()
    logger.warning(f"Google reauth required for account {account_id}: {error.reason}")


async def clear_reauth_required(session: AsyncSession, account_id: str) -> None:
    """Drop a pending reauth signal once the account syncs again."""
    await session.execute(
        update(Connection)
        .where(
            Connection.account_id == account_id,
            Connection.provider == PROVIDER,
            Connection.last_error_code.is_not(None),
        )
        .values(
            last_error_code=None,
            last_error_reason=None,
            last_error_message=None,
            last_error_at=None,
        )
    )
    await session.commit()


class TokenManager:
    """Supplies valid Google access tokens, one refresh at a time per account."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str = "https://oauth2.googleapis.com/token",
        refresh_margin: timedelta = timedelta(seconds=60),
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.refresh_margin = refresh_margin
        self.client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=30.0)
        return self.client

    async def close(self):
        """Close the HTTP client if this manager created it."""
        if self.client and self._owns_client:
            await self.client.aclose()
            self.client = None

    def _is_fresh(self, connection: Connection, now: datetime) -> bool:
        if not connection.access_token or connection.expires_at is None:
            return False
        return connection.expires_at - now > self.refresh_margin

    async def obtain_access_token(self, session: AsyncSession, account_id: str) -> AccessToken:
        """
        Return a valid access token for the account, refreshing when needed.

        Raises:
            NoConnection: no connection row for the account
            MissingRefreshToken: token expired and no refresh token is stored
            TokenRevoked: Google rejected the refresh token
            RefreshFailed: any other refresh failure (retryable)
        """
        async with refresh_lock(account_id):
            connection = await load_connection(session, account_id)
            if connection is None:
                raise NoConnection("Google not connected")

            if self._is_fresh(connection, datetime.utcnow()):
                return AccessToken(connection.access_token, connection.expires_at)

            try:
                if not (connection.refresh_token or "").strip():
                    raise MissingRefreshToken("missing_refresh_token")
                logger.info(f"Refreshing Google access token for account {account_id}")
                token_data = await self._refresh(connection.refresh_token)
            except AuthRequired as e:
                try:
                    await mark_reauth_required(session, account_id, e)
                except SQLAlchemyError as db_error:
                    logger.error(f"Failed to record reauth signal for account {account_id}: {db_error}")
                raise e

            return await self._store_refreshed(session, connection, token_data)

    async def _refresh(self, refresh_token: str) -> dict[str, Any]:
        """Exchange a refresh token at the Google token endpoint."""
        client = await self._get_client()
        try:
            response = await client.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                },
            )
        except httpx.HTTPError as e:
            raise RefreshFailed(f"Token refresh request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            raise RefreshFailed(f"Token endpoint returned HTTP {response.status_code} with a non-JSON body")
        if not isinstance(data, dict):
            raise RefreshFailed("Token endpoint returned an unexpected payload")

        error_code = data.get("error")
        if response.is_error or error_code:
            description = data.get("error_description") or "Token refresh failed."
            if error_code == "invalid_grant" or _REVOKED_PATTERN.search(str(description)):
                raise TokenRevoked(f"Google token revoked or expired: {description}")
            raise RefreshFailed(f"Token refresh failed (HTTP {response.status_code}, {error_code}): {description}")

        if not isinstance(data.get("access_token"), str) or not data["access_token"]:
            raise RefreshFailed("Token endpoint response has no access_token")
        return data

    async def _store_refreshed(
        self,
        session: AsyncSession,
        connection: Connection,
        token_data: dict[str, Any],
    ) -> AccessToken:
        """Persist a refreshed token with a compare-and-swap on the revision."""
        now = datetime.utcnow()
        expires_in = token_data.get("expires_in")
        expires_at = (
            now + timedelta(seconds=int(expires_in))
            if isinstance(expires_in, (int, float)) and expires_in > 0
            else None
        )

        values = {
            "access_token": token_data["access_token"],
            "expires_at": expires_at,
            "scope": token_data.get("scope"),
            "token_type": token_data.get("token_type"),
            "revision": connection.revision + 1,
            "tokens_updated_at": now,
            "last_error_code": None,
            "last_error_reason": None,
            "last_error_message": None,
            "last_error_at": None,
        }
        # Google only returns a refresh token when it rotates it
        if token_data.get("refresh_token"):
            values["refresh_token"] = token_data["refresh_token"]

        result = await session.execute(
            update(Connection)
            .where(Connection.id == connection.id, Connection.revision == connection.revision)
            .values(**values)
        )
        await session.commit()

        if result.rowcount == 1:
            return AccessToken(values["access_token"], expires_at, refreshed=True)

        # Someone else refreshed between our read and write; use their token
        logger.warning(f"Concurrent token refresh detected for account {connection.account_id}")
        current = await load_connection(session, connection.account_id)
        if current is not None and self._is_fresh(current, datetime.utcnow()):
            return AccessToken(current.access_token, current.expires_at)
        raise RefreshFailed("Concurrent token refresh left no valid access token")
