"""compat_schema

Creates every table and index that does not exist yet, using the loose
column set of earlier deployments. Never alters an existing object, so a
database built by a previous release passes through unchanged.

Revision ID: 7a1e3c5d9b20
Revises:
Create Date: 2026-09-28 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = "7a1e3c5d9b20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


COMPAT_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS telegram_registrations (
        telegram_id INTEGER PRIMARY KEY,
        teamtalk_username TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_telegram_registrations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        request_key TEXT UNIQUE,
        registrant_telegram_id INTEGER,
        username TEXT,
        password_cleartext TEXT,
        nickname TEXT,
        source_info TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_web_registrations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        request_key TEXT UNIQUE,
        username TEXT,
        password_cleartext TEXT,
        nickname TEXT,
        ip_address TEXT,
        user_agent TEXT,
        source_info TEXT,
        created_at DATETIME
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS banned_users (
        telegram_id INTEGER PRIMARY KEY,
        teamtalk_username TEXT,
        banned_at DATETIME NOT NULL,
        banned_by_admin_id INTEGER,
        reason TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS download_tokens (
        token TEXT PRIMARY KEY,
        filepath_on_server TEXT NOT NULL,
        original_filename TEXT NOT NULL,
        token_type TEXT NOT NULL,
        created_at DATETIME,
        expires_at DATETIME NOT NULL,
        is_used BOOLEAN DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS registered_ips (
        ip_address TEXT PRIMARY KEY,
        username TEXT,
        registration_timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deeplink_tokens (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        token TEXT UNIQUE,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        expires_at DATETIME NOT NULL,
        is_used BOOLEAN DEFAULT 0,
        generated_by_admin_id INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_download_tokens_expires_at ON download_tokens (expires_at)",
    "CREATE INDEX IF NOT EXISTS ix_deeplink_tokens_expires_at ON deeplink_tokens (expires_at)",
)


def upgrade() -> None:
    for statement in COMPAT_STATEMENTS:
        op.execute(statement)


def downgrade() -> None:
    # Tables may predate this revision; dropping them would lose user data.
    pass
