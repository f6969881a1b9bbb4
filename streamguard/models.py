# streamguard/models.py

import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, BigInteger, Boolean, DateTime, Float, JSON,
    ForeignKey, Index, UniqueConstraint, Computed,
)
from streamguard.database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class Server(Base):
    """Monitored media server"""
    __tablename__ = "servers"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False)  # plex, jellyfin, emby
    enabled = Column(Boolean, nullable=False, default=True)
    poll_interval_seconds = Column(Integer, nullable=False, default=15)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class ServerUser(Base):
    """Account on one media server"""
    __tablename__ = "server_users"
    __table_args__ = (
        UniqueConstraint("server_id", "external_id", name="server_users_server_external_uq"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    server_id = Column(String(36), ForeignKey("servers.id"), nullable=False)
    external_id = Column(String(100), nullable=False)
    username = Column(String(100), nullable=False, default="Unknown")
    trust_score = Column(Integer, nullable=False, default=100)
    last_activity_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class PlaybackSession(Base):
    """One playback attempt. stopped_at is the authoritative inactive signal."""
    __tablename__ = "sessions"
    __table_args__ = (
        Index("sessions_active_lookup_idx", "server_id", "session_key", "stopped_at"),
        Index("sessions_user_started_idx", "server_user_id", "started_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    server_id = Column(String(36), ForeignKey("servers.id"), nullable=False)
    server_user_id = Column(String(36), ForeignKey("server_users.id"), nullable=False)
    session_key = Column(String(100), nullable=False)  # Provider key, repeats across reconnects
    external_session_id = Column(String(100), nullable=True)

    # Media
    rating_key = Column(String(100), nullable=True)
    media_title = Column(String(255), nullable=False, default="")
    media_type = Column(String(20), nullable=False, default="movie")

    # Lifecycle
    state = Column(String(10), nullable=False, default="playing")
    started_at = Column(DateTime, nullable=False)
    stopped_at = Column(DateTime, nullable=True)
    last_paused_at = Column(DateTime, nullable=True)
    paused_duration_ms = Column(BigInteger, nullable=False, default=0)
    duration_ms = Column(BigInteger, nullable=True)
    progress_ms = Column(BigInteger, nullable=True)
    total_duration_ms = Column(BigInteger, nullable=True)
    watched = Column(Boolean, nullable=False, default=False)
    reference_id = Column(String(36), nullable=True)  # Root of the resume chain

    # Network / geo
    ip_address = Column(String(45), nullable=False, default="")
    geo_city = Column(String(100), nullable=True)
    geo_region = Column(String(100), nullable=True)
    geo_country = Column(String(10), nullable=True)
    geo_lat = Column(Float, nullable=True)
    geo_lon = Column(Float, nullable=True)

    # Device
    player_name = Column(String(255), nullable=True)
    device_id = Column(String(255), nullable=True)
    product = Column(String(100), nullable=True)
    device = Column(String(100), nullable=True)
    platform = Column(String(50), nullable=True)

    # Quality
    quality = Column(String(30), nullable=True)
    is_transcode = Column(Boolean, nullable=False, default=False)
    video_decision = Column(String(20), nullable=True)
    audio_decision = Column(String(20), nullable=True)
    bitrate = Column(Integer, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.stopped_at is None


class Rule(Base):
    __tablename__ = "rules"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    type = Column(String(50), nullable=False)
    params = Column(JSON, nullable=False, default=dict)
    server_user_id = Column(String(36), ForeignKey("server_users.id"), nullable=True)  # NULL = all users
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class Violation(Base):
    """
    Detected policy breach. Only acknowledged_at is ever updated.

    open_marker is 1 while unacknowledged and NULL afterwards, so the unique
    constraint below only binds unacknowledged rows.
    """
    __tablename__ = "violations"
    __table_args__ = (
        UniqueConstraint(
            "server_user_id", "session_id", "rule_type", "open_marker",
            name="violations_unique_active_user_session_type",
        ),
        Index("violations_user_type_created_idx", "server_user_id", "rule_type", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    rule_id = Column(String(36), nullable=False)  # No FK: survives rule deletion
    rule_type = Column(String(50), nullable=False)
    server_user_id = Column(String(36), ForeignKey("server_users.id"), nullable=False)
    session_id = Column(String(36), ForeignKey("sessions.id"), nullable=False)
    severity = Column(String(10), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    acknowledged_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    open_marker = Column(
        Integer,
        Computed("CASE WHEN acknowledged_at IS NULL THEN 1 END", persisted=True),
    )


class LockKey(Base):
    """Rows locked FOR UPDATE by engines without transaction-scoped advisory locks"""
    __tablename__ = "lock_keys"

    key = Column(String(64), primary_key=True)
