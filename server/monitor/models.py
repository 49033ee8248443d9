"""
SQLAlchemy 2.0 database models.
"""
import uuid
import enum
from datetime import datetime

from sqlalchemy import (
    Column, String, BigInteger, DateTime, Enum as SAEnum, ForeignKey, Text,
    Boolean, Integer, JSON, Uuid, Index, text
)
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.dialects.postgresql import JSONB

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Partial index predicate for open events, also used as the ON CONFLICT target
OPEN_EVENT_PREDICATE = text("status = 'ACTIVE'")


class ChannelStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ERROR = "ERROR"
    REVOKED = "REVOKED"


class EventType(str, enum.Enum):
    CLAIM = "CLAIM"
    STRIKE = "STRIKE"
    MONETIZATION_CHANGE = "MONETIZATION_CHANGE"
    REGION_RESTRICTION = "REGION_RESTRICTION"


class EventStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    WITHDRAWN = "WITHDRAWN"
    DISPUTED = "DISPUTED"
    RESOLVED = "RESOLVED"


class ClaimantType(str, enum.Enum):
    UNKNOWN = "UNKNOWN"
    RECORD_LABEL = "RECORD_LABEL"
    PUBLISHER = "PUBLISHER"
    FILM_STUDIO = "FILM_STUDIO"
    BROADCASTER = "BROADCASTER"
    INDIVIDUAL = "INDIVIDUAL"


class NotificationType(str, enum.Enum):
    NEW_CLAIM = "NEW_CLAIM"
    NEW_STRIKE = "NEW_STRIKE"
    MONETIZATION_CHANGE = "MONETIZATION_CHANGE"
    SYNC_ERROR = "SYNC_ERROR"
    WEEKLY_SUMMARY = "WEEKLY_SUMMARY"


class User(Base):
    __tablename__ = "users"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=True, index=True)
    display_label = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    is_active = Column(Boolean, default=True)

    channels = relationship("Channel", back_populates="user", cascade="all, delete-orphan")
    notifications = relationship("Notification", back_populates="user", cascade="all, delete-orphan")


class Channel(Base):
    __tablename__ = "channels"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    youtube_channel_id = Column(String(64), unique=True, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    thumbnail_url = Column(String(1024), nullable=True)
    subscriber_count = Column(BigInteger, nullable=True)
    video_count = Column(Integer, nullable=True)
    content_owner_id = Column(String(64), nullable=True)

    status = Column(SAEnum(ChannelStatus), default=ChannelStatus.ACTIVE, nullable=False, index=True)
    access_token = Column(Text, nullable=False)  # encrypted
    refresh_token = Column(Text, nullable=False)  # encrypted
    token_expires_at = Column(DateTime, nullable=False)

    last_sync_at = Column(DateTime, nullable=True)
    last_claim_sync_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    partner_access_denied_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="channels")
    videos = relationship("Video", back_populates="channel", cascade="all, delete-orphan")


class Video(Base):
    __tablename__ = "videos"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    channel_id = Column(Uuid, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True)
    youtube_video_id = Column(String(32), unique=True, nullable=False, index=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    thumbnail_url = Column(String(1024), nullable=True)
    published_at = Column(DateTime, nullable=True)
    duration = Column(String(32), nullable=True)  # ISO 8601

    view_count = Column(BigInteger, nullable=True)
    like_count = Column(BigInteger, nullable=True)
    privacy_status = Column(String(32), nullable=True)
    upload_status = Column(String(32), nullable=True)
    license = Column(String(64), nullable=True)
    made_for_kids = Column(Boolean, nullable=True)
    monetization_status = Column(String(64), nullable=True)
    blocked_regions = Column(JSONType, default=list, nullable=False)
    allowed_regions = Column(JSONType, default=list, nullable=False)

    # Snapshot used as the baseline for the next change detection pass
    previous_state = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    channel = relationship("Channel", back_populates="videos")
    events = relationship("CopyrightEvent", back_populates="video", cascade="all, delete-orphan")


class Claimant(Base):
    __tablename__ = "claimants"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    name_normalized = Column(String(255), unique=True, nullable=False, index=True)
    type = Column(SAEnum(ClaimantType), default=ClaimantType.UNKNOWN, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    statistics = relationship("ClaimantStatistics", back_populates="claimant", uselist=False,
                              cascade="all, delete-orphan")
    events = relationship("CopyrightEvent", back_populates="claimant")


class ClaimantStatistics(Base):
    __tablename__ = "claimant_statistics"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    claimant_id = Column(Uuid, ForeignKey("claimants.id", ondelete="CASCADE"), unique=True, nullable=False)
    total_claims = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    claimant = relationship("Claimant", back_populates="statistics")


class CopyrightEvent(Base):
    __tablename__ = "copyright_events"
    __table_args__ = (
        Index("ix_copyright_events_video_type_status", "video_id", "type", "status"),
        # At most one open event per observed change
        Index(
            "uq_copyright_events_open_change",
            "video_id", "type", "change_description",
            unique=True,
            postgresql_where=OPEN_EVENT_PREDICATE,
            sqlite_where=OPEN_EVENT_PREDICATE,
        ),
    )
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    video_id = Column(Uuid, ForeignKey("videos.id", ondelete="CASCADE"), nullable=False, index=True)
    youtube_claim_id = Column(String(64), unique=True, nullable=True)
    asset_id = Column(String(64), nullable=True)
    type = Column(SAEnum(EventType), nullable=False)
    status = Column(SAEnum(EventStatus), default=EventStatus.ACTIVE, nullable=False)
    claimant_id = Column(Uuid, ForeignKey("claimants.id", ondelete="SET NULL"), nullable=True)

    content_type = Column(String(64), nullable=True)
    claim_type = Column(String(64), nullable=True)
    policy_action = Column(String(64), nullable=True)
    match_start_ms = Column(BigInteger, nullable=True)
    match_end_ms = Column(BigInteger, nullable=True)
    explanation = Column(Text, nullable=True)
    change_description = Column(Text, nullable=True)

    detected_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    raw_data = Column(JSONType, nullable=True)
    # Set once the owner notification for this event has been queued
    notified_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    video = relationship("Video", back_populates="events")
    claimant = relationship("Claimant", back_populates="events")


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(SAEnum(NotificationType), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    channel_id = Column(Uuid, nullable=True)
    video_id = Column(Uuid, nullable=True)
    event_id = Column(Uuid, nullable=True)
    read = Column(Boolean, default=False, nullable=False)
    email_sent = Column(Boolean, default=False, nullable=False)
    email_sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="notifications")
