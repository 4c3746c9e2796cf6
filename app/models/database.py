from datetime import datetime
from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    String,
    Text,
    DateTime,
    JSON,
    UniqueConstraint,
)
from app.core.database import Base


class Connection(Base):
    """OAuth connection to Google, one per account and provider.

    ``revision`` is bumped by every token write so refreshes can be applied
    with a conditional update.
    """

    __tablename__ = "google_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False, default="google")

    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_type = Column(String, nullable=True)
    scope = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    revision = Column(Integer, nullable=False, default=0)
    tokens_updated_at = Column(DateTime, nullable=True)

    # Reauth signal, set when the provider rejects the refresh token
    last_error_code = Column(String, nullable=True)  # "reauth_required"
    last_error_reason = Column(String, nullable=True)  # "token_revoked", "missing_refresh_token"
    last_error_message = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)

    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("account_id", "provider", name="uix_connection_account_provider"),)


class Location(Base):
    """Business Profile location bound to an account."""

    __tablename__ = "google_locations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False, index=True)
    account_resource_name = Column(String, nullable=False)  # "accounts/123"
    location_resource_name = Column(String, nullable=False)  # "locations/456"
    title = Column(String, nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    last_synced_at = Column(DateTime, nullable=True)
    last_sync_status = Column(String, nullable=True)  # "done", "error"
    last_sync_error = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("account_id", "location_resource_name", name="uix_location_account_resource"),
    )


class Review(Base):
    """A Google review, one row per account, location and external review id."""

    __tablename__ = "google_reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False, index=True)
    location_id = Column(String, nullable=False, index=True)
    external_review_id = Column(String, nullable=False)
    review_name = Column(String, nullable=True)

    author_name = Column(String, nullable=True)
    rating = Column(Integer, nullable=True)
    comment = Column(Text, nullable=True)
    create_time = Column(DateTime, nullable=True)
    update_time = Column(DateTime, nullable=True)
    owner_reply = Column(Text, nullable=True)
    owner_reply_time = Column(DateTime, nullable=True)

    # Written by the tagging pipeline, never by sync
    sentiment = Column(String, nullable=True)
    tags = Column(JSON, nullable=True)

    raw = Column(JSON, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "account_id", "location_id", "external_review_id", name="uix_review_account_location_external_id"
        ),
    )
