from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, DateTime, Boolean, JSON, Index, text
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now() -> datetime:
    """Naive UTC timestamp; SQLite stores datetimes without an offset."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

# --- Enums ---

class Channel(PyEnum):
    chat = "chat"
    web = "web"

class DownloadTokenType(PyEnum):
    tt_config = "tt_config"
    client_zip = "client_zip"
    tt_link = "tt_link"

class TokenKind(PyEnum):
    download = "download"
    deeplink = "deeplink"

# --- Models ---

class TelegramRegistration(Base):
    __tablename__ = "telegram_registrations"

    telegram_id = Column(BigInteger, primary_key=True, autoincrement=False)
    teamtalk_username = Column(String, nullable=False, unique=True)


class PendingTelegramRegistration(Base):
    __tablename__ = "pending_telegram_registrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_key = Column(String, nullable=False, unique=True)
    registrant_telegram_id = Column(BigInteger, nullable=False)
    username = Column(String, nullable=False)
    password_cleartext = Column(String, nullable=False)
    nickname = Column(String, nullable=False)
    source_info = Column(Text, nullable=False)
    wants_admin = Column(Boolean, nullable=False, default=False, server_default=text("0"))
    created_at = Column(DateTime, nullable=False, default=utc_now, server_default=text("CURRENT_TIMESTAMP"))
    claimed_at = Column(DateTime, nullable=True)
    claimed_by = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index("ix_pending_telegram_registrations_username", "username"),
        Index("ix_pending_telegram_registrations_created_at", "created_at"),
    )

    channel = Channel.chat


class PendingWebRegistration(Base):
    __tablename__ = "pending_web_registrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_key = Column(String, nullable=False, unique=True)
    username = Column(String, nullable=False)
    password_cleartext = Column(String, nullable=False)
    nickname = Column(String, nullable=False)
    ip_address = Column(String, nullable=False)
    user_agent = Column(Text, nullable=True)
    source_info = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now, server_default=text("CURRENT_TIMESTAMP"))
    claimed_at = Column(DateTime, nullable=True)
    claimed_by = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index("ix_pending_web_registrations_username", "username"),
        Index("ix_pending_web_registrations_created_at", "created_at"),
    )

    channel = Channel.web


class BannedUser(Base):
    __tablename__ = "banned_users"

    telegram_id = Column(BigInteger, primary_key=True, autoincrement=False)
    teamtalk_username = Column(String, nullable=True)
    banned_at = Column(DateTime, nullable=False, default=utc_now)
    banned_by_admin_id = Column(BigInteger, nullable=True)  # NULL means the system
    reason = Column(Text, nullable=True)


class DownloadToken(Base):
    __tablename__ = "download_tokens"

    token = Column(String, primary_key=True)
    filepath_on_server = Column(String, nullable=False)
    original_filename = Column(String, nullable=False)
    token_type = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now, server_default=text("CURRENT_TIMESTAMP"))
    expires_at = Column(DateTime, nullable=False)
    is_used = Column(Boolean, nullable=False, default=False, server_default=text("0"))

    __table_args__ = (
        Index("ix_download_tokens_expires_at", "expires_at"),
    )


class DeeplinkToken(Base):
    __tablename__ = "deeplink_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, server_default=text("CURRENT_TIMESTAMP"))
    expires_at = Column(DateTime, nullable=False)
    is_used = Column(Boolean, nullable=False, default=False, server_default=text("0"))
    generated_by_admin_id = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index("ix_deeplink_tokens_expires_at", "expires_at"),
    )


class RegisteredIp(Base):
    __tablename__ = "registered_ips"

    ip_address = Column(String, primary_key=True)
    username = Column(String, nullable=True)
    registration_timestamp = Column(
        DateTime, nullable=False, default=utc_now, server_default=text("CURRENT_TIMESTAMP")
    )


class EventLog(Base):
    __tablename__ = "event_log"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=True)
    actor_id = Column(String, nullable=False, default="system")
    event_type = Column(String, nullable=False)
    entity_type = Column(String, nullable=True)
    entity_id = Column(String, nullable=True)
    payload_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_event_log_type_created", "event_type", "created_at"),
    )
