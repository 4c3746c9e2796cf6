"""
Google connection status classification.

Two directions share the same status/reason vocabulary:

- ``resolve`` turns a probe response (HTTP status + JSON payload) into a
  normalized ``ConnectionState``. It is total and never raises.
- ``derive_connection_status`` computes the state the probe endpoint serves
  from the stored connection row.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from app.models.database import Connection

STATUSES = frozenset({"connected", "disconnected", "reauth_required", "unknown"})
REASONS = frozenset({"ok", "token_revoked", "missing_refresh_token", "expired", "unknown", "no_connection"})

REAUTH_REQUIRED_CODE = "reauth_required"

_TRANSIENT_HINTS = ("429", "5xx", "500", "502", "503", "504", "520", "cloudflare", "timeout", "network")
_AUTH_HINTS = (
    "invalid_grant",
    "invalid authentication credentials",
    "expired or revoked",
    "insufficient authentication scopes",
    "revoked",
)


@dataclass(frozen=True)
class ConnectionState:
    status: str
    reason: str
    last_error: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {"status": self.status, "reason": self.reason, "lastError": self.last_error}


UNKNOWN = ConnectionState("unknown", "unknown")


def _extract_error_message(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    connection = payload.get("connection")
    if isinstance(connection, dict):
        last_error = connection.get("lastError")
        if isinstance(last_error, str) and last_error.strip():
            return last_error
    return None


def resolve(http_status: Any, payload: Any = None) -> ConnectionState:
    """
    Classify a connection probe result.

    Args:
        http_status: HTTP status of the probe response
        payload: Decoded JSON body, or None when the body was not JSON

    Returns:
        ConnectionState; anything unrecognized falls through to unknown/unknown.
    """
    # bool is an int subclass, but never a real status code
    if not isinstance(http_status, int) or isinstance(http_status, bool):
        return UNKNOWN

    if http_status == 404:
        return ConnectionState("disconnected", "no_connection")

    if http_status != 200:
        return ConnectionState("unknown", "unknown", _extract_error_message(payload))

    if not isinstance(payload, dict):
        return UNKNOWN

    connection = payload.get("connection")
    if not isinstance(connection, dict):
        return ConnectionState("unknown", "unknown", _extract_error_message(payload))

    status = connection.get("status")
    reason = connection.get("reason")
    last_error = connection.get("lastError")
    if not isinstance(last_error, str):
        last_error = None

    # Unhashable values (lists, dicts) must not reach the set lookup
    if not isinstance(status, str) or not isinstance(reason, str):
        return ConnectionState("unknown", "unknown", last_error)
    if status not in STATUSES or reason not in REASONS:
        return ConnectionState("unknown", "unknown", last_error)

    return ConnectionState(status, reason, last_error)


def derive_reauth_reason(message: Optional[str]) -> str:
    """Map an error message to the reauth reason it implies."""
    normalized = (message or "").lower()
    if "missing" in normalized and "refresh" in normalized:
        return "missing_refresh_token"
    if "invalid_grant" in normalized or "revoked" in normalized or "expired" in normalized:
        return "token_revoked"
    return "unknown"


def is_reauth_required_error(
    status: Optional[int] = None,
    reason: Optional[str] = None,
    message: Optional[str] = None,
    err_code: Optional[str] = None,
) -> bool:
    """Decide whether a provider failure means the user has to reconnect."""
    if reason in ("missing_refresh_token", "token_revoked"):
        return True
    if (err_code or "").lower() == "invalid_grant":
        return True

    normalized = (message or "").lower()
    if any(hint in normalized for hint in _TRANSIENT_HINTS):
        return False

    has_auth_message = any(hint in normalized for hint in _AUTH_HINTS)
    if status == 401:
        return True
    return has_auth_message


def derive_connection_status(
    connection: Optional[Connection],
    now: Optional[datetime] = None,
    signal_ttl: timedelta = timedelta(hours=6),
) -> ConnectionState:
    """Compute the connection state from the stored row and its reauth signal."""
    now = now or datetime.utcnow()

    if connection is None:
        return ConnectionState("disconnected", "no_connection")

    if not (connection.refresh_token or "").strip():
        return ConnectionState(
            "reauth_required",
            "missing_refresh_token",
            connection.last_error_message or "missing_refresh_token",
        )

    error_at = connection.last_error_at
    if connection.last_error_code == REAUTH_REQUIRED_CODE and error_at is not None:
        token_written_at = connection.tokens_updated_at
        signal_is_current = now - error_at <= signal_ttl and (
            token_written_at is None or token_written_at <= error_at
        )
        if signal_is_current:
            reason = connection.last_error_reason
            if reason not in REASONS:
                reason = derive_reauth_reason(connection.last_error_message)
            return ConnectionState("reauth_required", reason, connection.last_error_message)

    if connection.expires_at is None:
        return ConnectionState("connected", "unknown")
    if connection.expires_at <= now:
        return ConnectionState("connected", "expired")
    return ConnectionState("connected", "ok")
