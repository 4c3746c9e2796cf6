"""Error taxonomy for token handling and review sync."""

AUTH_REQUIRED = "auth_required"
RATE_LIMITED = "rate_limited"
TRANSIENT_NETWORK = "transient_network"
DATA_VALIDATION = "data_validation"
INTERNAL = "internal"


class SyncError(Exception):
    """Base class for errors that can end a location's sync unit."""

    kind = INTERNAL
    retryable = False


class AuthRequired(SyncError):
    """The user has to reconnect Google before syncing again."""

    kind = AUTH_REQUIRED
    reason = "unknown"


class NoConnection(AuthRequired):
    """No Google connection row exists for the account."""

    reason = "no_connection"


class TokenError(SyncError):
    """Raised when a valid access token cannot be obtained."""


class MissingRefreshToken(TokenError, AuthRequired):
    reason = "missing_refresh_token"


class TokenRevoked(TokenError, AuthRequired):
    reason = "token_revoked"


class RefreshFailed(TokenError):
    """Refresh failed for a reason other than revocation; safe to retry later."""

    kind = TRANSIENT_NETWORK
    retryable = True
    reason = "unknown"


class RateLimited(SyncError):
    kind = RATE_LIMITED
    retryable = True


class TransientNetwork(SyncError):
    kind = TRANSIENT_NETWORK
    retryable = True


class DataValidationError(SyncError):
    """Provider returned data that cannot be reconciled."""

    kind = DATA_VALIDATION


class LocationNotFound(DataValidationError):
    pass


class InternalFailure(SyncError):
    """Batch-level failure after the run record was opened."""


class LocationsLoadFailed(InternalFailure):
    """The location list could not be loaded, so no batch was started."""
