"""Channel model: the platform credential and identity bundle behind an Inbox."""

import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.enums import ChannelKind

TEMPORARY_ID_PREFIX = "temp_"


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Channel(Base):
    """Stores the connected platform account and its access token.

    Attributes:
        kind: Platform the channel talks to (instagram, facebook)
        external_account_id: Instagram account id or Facebook page id. A
            ``temp_`` prefix marks a placeholder created before OAuth completes.
        instagram_id: Instagram business account linked to a Facebook page
        access_token: Long-lived token used for Graph API calls
        expires_at: When the access token expires
        token_issued_at: When the current token was obtained or last refreshed
        reauthorization_required: Set after token-invalid errors; cleared on
            a successful OAuth callback
    """

    __tablename__ = "channels"
    __table_args__ = (
        UniqueConstraint("kind", "external_account_id", name="uq_channels_kind_external_account"),
        Index("ix_channels_expires_at", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    kind: Mapped[ChannelKind] = mapped_column(Enum(ChannelKind), nullable=False)
    external_account_id: Mapped[str] = mapped_column(String(120), nullable=False)
    instagram_id: Mapped[str | None] = mapped_column(String(120))
    name: Mapped[str | None] = mapped_column(String(255))

    access_token: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    token_issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    scopes: Mapped[list | None] = mapped_column(JSON)
    last_refreshed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refresh_error: Mapped[str | None] = mapped_column(Text)

    reauthorization_required: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    inbox = relationship("Inbox", back_populates="channel", uselist=False)

    @property
    def is_temporary(self) -> bool:
        return (self.external_account_id or "").startswith(TEMPORARY_ID_PREFIX)

    @property
    def is_authorized(self) -> bool:
        """True once real OAuth credentials are stored and still usable."""
        if self.is_temporary or not self.access_token:
            return False
        return not self.reauthorization_required

    def is_token_valid(self) -> bool:
        """A token without a known expiry is not trusted."""
        expires_at = as_utc(self.expires_at)
        if not self.access_token or not expires_at:
            return False
        return expires_at > datetime.now(UTC)

    def is_token_expired(self) -> bool:
        expires_at = as_utc(self.expires_at)
        if not expires_at:
            return False
        return datetime.now(UTC) >= expires_at

    def is_refresh_eligible(
        self, min_age: timedelta = timedelta(hours=24), window: timedelta = timedelta(days=10)
    ) -> bool:
        """Check if the token may be proactively refreshed.

        Eligible only while the token is still valid, has existed for at
        least ``min_age`` and expires within ``window``.
        """
        if not self.is_token_valid():
            return False
        now = datetime.now(UTC)
        issued_at = as_utc(self.token_issued_at or self.created_at)
        if issued_at and now - issued_at < min_age:
            return False
        return as_utc(self.expires_at) <= now + window

    def __repr__(self) -> str:
        return (
            f"<Channel(id={self.id}, kind={self.kind}, "
            f"external_account_id={self.external_account_id})>"
        )
