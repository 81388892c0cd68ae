"""SQLAlchemy database models."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from postback_tracker.db.encryption import EncryptedString

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class QueueStatus:
    """Queue entry states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED)


class Partner(Base):
    """Traffic source configuration.

    Owned by the admin tooling; the tracker only reads it. JSON columns are
    decoded into a typed PartnerConfig by the partner registry.
    """

    __tablename__ = "partners"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    target_domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Field extraction
    clickid_keys: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)  # ["clickid", "cid"]
    sum_keys: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)  # ["sum", "payout"]
    sum_mapping: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)  # [{"from": "1", "to": "10"}]

    # Access control
    ip_whitelist_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    allowed_ips: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    logging_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Telegram notifications
    telegram_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    telegram_whitelist_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    telegram_whitelist_keywords: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    partner_telegram_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    partner_telegram_bot_token: Mapped[Optional[str]] = mapped_column(
        EncryptedString(512), nullable=True
    )
    partner_telegram_channel_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Google Sheets export
    google_spreadsheet_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    google_sheet_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    google_service_account_json: Mapped[Optional[str]] = mapped_column(
        EncryptedString(), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class PostbackQueueEntry(Base):
    """One received postback awaiting processing."""

    __tablename__ = "postback_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    partner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=QueueStatus.PENDING, nullable=False
    )  # pending, processing, completed, failed
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_postback_queue_status_created", "status", "created_at"),
    )


class DetailedStat(Base):
    """One statistics row per distinct postback event."""

    __tablename__ = "detailed_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # sha256 of (partner_id, timestamp, click_id or queue entry id); NULL-safe natural key
    event_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    partner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    queue_entry_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    click_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sum: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    sum_mapping: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    extra_params: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_detailed_stats_partner_timestamp", "partner_id", "timestamp"),
    )


class SummaryStat(Base):
    """Per-partner running counters."""

    __tablename__ = "summary_stats"

    partner_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_redirects: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class AppSetting(Base):
    """Global key/value settings (shared bot token, channel, etc.)."""

    __tablename__ = "app_settings"

    setting_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    setting_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
