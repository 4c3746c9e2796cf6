"""Tests for connection status classification."""

from datetime import datetime, timedelta

import pytest

from app.models.database import Connection
from app.services.connection_status import (
    REASONS,
    STATUSES,
    ConnectionState,
    derive_connection_status,
    derive_reauth_reason,
    is_reauth_required_error,
    resolve,
)


NOW = datetime(2025, 6, 1, 12, 0)


class TestResolve:

    @pytest.mark.parametrize("payload", [
        None,
        {},
        {"connection": {"status": "connected", "reason": "ok"}},
        {"error": "not found"},
        "not json",
        [1, 2, 3],
    ])
    def test_404_is_disconnected_whatever_the_payload(self, payload):
        assert resolve(404, payload) == ConnectionState("disconnected", "no_connection")

    @pytest.mark.parametrize("status", sorted(STATUSES))
    @pytest.mark.parametrize("reason", sorted(REASONS))
    def test_200_passes_in_domain_pair_through(self, status, reason):
        state = resolve(200, {"connection": {"status": status, "reason": reason}})
        assert (state.status, state.reason) == (status, reason)

    def test_200_carries_last_error(self):
        payload = {"connection": {"status": "reauth_required", "reason": "token_revoked", "lastError": "revoked"}}
        assert resolve(200, payload) == ConnectionState("reauth_required", "token_revoked", "revoked")

    @pytest.mark.parametrize("connection", [
        {"status": "linked", "reason": "ok"},
        {"status": "connected", "reason": "because"},
        {"status": "connected"},
        {"reason": "ok"},
        {"status": ["connected"], "reason": "ok"},
        {"status": None, "reason": None},
    ])
    def test_200_out_of_domain_normalizes_to_unknown(self, connection):
        state = resolve(200, {"connection": connection})
        assert (state.status, state.reason) == ("unknown", "unknown")

    @pytest.mark.parametrize("payload", [None, "text", [], {}, {"connection": "connected"}, {"ok": True}])
    def test_200_malformed_payload_is_unknown(self, payload):
        state = resolve(200, payload)
        assert (state.status, state.reason) == ("unknown", "unknown")

    @pytest.mark.parametrize("payload", [
        None,
        {"connection": {"status": "connected", "reason": "ok"}},
        {"error": "unauthorized"},
    ])
    def test_401_is_unknown(self, payload):
        state = resolve(401, payload)
        assert (state.status, state.reason) == ("unknown", "unknown")

    def test_error_status_extracts_message(self):
        state = resolve(500, {"error": {"message": "Sync failed"}})
        assert state == ConnectionState("unknown", "unknown", "Sync failed")

    @pytest.mark.parametrize("http_status", [None, "200", 200.0, True])
    def test_non_integer_status_is_unknown(self, http_status):
        payload = {"connection": {"status": "connected", "reason": "ok"}}
        assert resolve(http_status, payload) == ConnectionState("unknown", "unknown")


def _connection(**overrides) -> Connection:
    values = dict(
        account_id="acct-1",
        provider="google",
        access_token="access",
        refresh_token="refresh",
        expires_at=NOW + timedelta(minutes=30),
        tokens_updated_at=NOW - timedelta(hours=2),
    )
    values.update(overrides)
    return Connection(**values)


class TestDeriveConnectionStatus:

    def test_no_row_is_no_connection(self):
        assert derive_connection_status(None, now=NOW) == ConnectionState("disconnected", "no_connection")

    def test_missing_refresh_token_requires_reauth(self):
        state = derive_connection_status(_connection(refresh_token="  "), now=NOW)
        assert (state.status, state.reason) == ("reauth_required", "missing_refresh_token")

    def test_current_reauth_signal_requires_reauth(self):
        connection = _connection(
            last_error_code="reauth_required",
            last_error_reason="token_revoked",
            last_error_message="Google token revoked or expired",
            last_error_at=NOW - timedelta(minutes=10),
        )
        state = derive_connection_status(connection, now=NOW)
        assert state == ConnectionState("reauth_required", "token_revoked", "Google token revoked or expired")

    def test_stale_reauth_signal_is_ignored(self):
        connection = _connection(
            last_error_code="reauth_required",
            last_error_reason="token_revoked",
            last_error_at=NOW - timedelta(hours=7),
        )
        state = derive_connection_status(connection, now=NOW, signal_ttl=timedelta(hours=6))
        assert (state.status, state.reason) == ("connected", "ok")

    def test_signal_older_than_token_write_is_ignored(self):
        connection = _connection(
            last_error_code="reauth_required",
            last_error_reason="token_revoked",
            last_error_at=NOW - timedelta(minutes=10),
            tokens_updated_at=NOW - timedelta(minutes=5),
        )
        state = derive_connection_status(connection, now=NOW)
        assert state.status == "connected"

    def test_signal_with_unknown_reason_derives_it_from_message(self):
        connection = _connection(
            last_error_code="reauth_required",
            last_error_reason="bogus",
            last_error_message="invalid_grant",
            last_error_at=NOW - timedelta(minutes=1),
        )
        assert derive_connection_status(connection, now=NOW).reason == "token_revoked"

    def test_past_expiry_is_connected_expired(self):
        state = derive_connection_status(_connection(expires_at=NOW - timedelta(minutes=1)), now=NOW)
        assert (state.status, state.reason) == ("connected", "expired")

    def test_future_expiry_is_connected_ok(self):
        state = derive_connection_status(_connection(), now=NOW)
        assert (state.status, state.reason) == ("connected", "ok")

    def test_unknown_expiry_is_connected_unknown(self):
        state = derive_connection_status(_connection(expires_at=None), now=NOW)
        assert (state.status, state.reason) == ("connected", "unknown")


class TestIsReauthRequiredError:

    def test_reauth_reasons(self):
        assert is_reauth_required_error(reason="token_revoked")
        assert is_reauth_required_error(reason="missing_refresh_token")

    def test_invalid_grant_code(self):
        assert is_reauth_required_error(err_code="INVALID_GRANT")

    def test_401_requires_reauth(self):
        assert is_reauth_required_error(status=401, message="Request is missing credentials")

    def test_403_needs_an_auth_message(self):
        assert is_reauth_required_error(status=403, message="Request had insufficient authentication scopes.")
        assert not is_reauth_required_error(status=403, message="The caller does not have permission")

    def test_transient_hints_win(self):
        assert not is_reauth_required_error(status=401, message="upstream timeout")
        assert not is_reauth_required_error(message="503 revoked while network flapped")

    def test_plain_message(self):
        assert is_reauth_required_error(message="Token has been expired or revoked.")
        assert not is_reauth_required_error(message="Location not found")


class TestDeriveReauthReason:

    def test_missing_refresh_token(self):
        assert derive_reauth_reason("Missing refresh token") == "missing_refresh_token"

    def test_revoked(self):
        assert derive_reauth_reason("invalid_grant: Token has been expired or revoked.") == "token_revoked"

    def test_other(self):
        assert derive_reauth_reason(None) == "unknown"
        assert derive_reauth_reason("boom") == "unknown"
