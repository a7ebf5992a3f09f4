"""strict_schema

Rebuilds the loosely typed tables with NOT NULL columns and defaults.
Rows that would violate the new constraints are backfilled with
deterministic placeholders instead of failing the upgrade. Pending tables
gain the claim columns used for first-committer-wins decisions, and rows
from the legacy ``fastapi_*`` tables are carried over before those are
dropped.

Revision ID: b4d2f6a8c1e3
Revises: 7a1e3c5d9b20
Create Date: 2026-09-28 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "b4d2f6a8c1e3"
down_revision: Union[str, Sequence[str], None] = "7a1e3c5d9b20"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _columns(table: str) -> set:
    return {column["name"] for column in sa.inspect(op.get_bind()).get_columns(table)}


def _has_table(table: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(table)


def _optional(columns: set, name: str, fallback: str = "NULL") -> str:
    return name if name in columns else fallback


def _rebuild(table: str, create_sql: str, insert_sql: str, indexes: Sequence[str] = ()) -> None:
    op.execute(f"DROP TABLE IF EXISTS {table}_new")
    op.execute(create_sql)
    op.execute(insert_sql)
    op.execute(f"DROP TABLE {table}")
    op.execute(f"ALTER TABLE {table}_new RENAME TO {table}")
    for statement in indexes:
        op.execute(statement)


def _rebuild_pending_telegram() -> None:
    cols = _columns("pending_telegram_registrations")
    c = {name: _optional(cols, name) for name in (
        "request_key", "registrant_telegram_id", "username", "password_cleartext",
        "nickname", "source_info", "wants_admin", "created_at",
    )}
    _rebuild(
        "pending_telegram_registrations",
        """
        CREATE TABLE pending_telegram_registrations_new (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            request_key TEXT NOT NULL UNIQUE,
            registrant_telegram_id INTEGER NOT NULL,
            username TEXT NOT NULL,
            password_cleartext TEXT NOT NULL,
            nickname TEXT NOT NULL,
            source_info TEXT NOT NULL,
            wants_admin BOOLEAN NOT NULL DEFAULT 0,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            claimed_at DATETIME,
            claimed_by INTEGER
        )
        """,
        f"""
        INSERT INTO pending_telegram_registrations_new (
            id, request_key, registrant_telegram_id, username, password_cleartext,
            nickname, source_info, wants_admin, created_at
        )
        SELECT
            id,
            COALESCE({c['request_key']}, 'legacy_' || id),
            COALESCE({c['registrant_telegram_id']}, 0),
            COALESCE({c['username']}, 'legacy_user_' || id),
            COALESCE({c['password_cleartext']}, ''),
            COALESCE(NULLIF({c['nickname']}, ''), {c['username']}, 'legacy_user_' || id),
            COALESCE({c['source_info']}, 'legacy'),
            COALESCE({c['wants_admin']}, 0),
            COALESCE({c['created_at']}, CURRENT_TIMESTAMP)
        FROM pending_telegram_registrations
        """,
        (
            "CREATE INDEX ix_pending_telegram_registrations_username ON pending_telegram_registrations (username)",
            "CREATE INDEX ix_pending_telegram_registrations_created_at ON pending_telegram_registrations (created_at)",
        ),
    )


def _rebuild_pending_web() -> None:
    cols = _columns("pending_web_registrations")
    c = {name: _optional(cols, name) for name in (
        "request_key", "username", "password_cleartext", "nickname",
        "ip_address", "user_agent", "source_info", "created_at",
    )}
    _rebuild(
        "pending_web_registrations",
        """
        CREATE TABLE pending_web_registrations_new (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            request_key TEXT NOT NULL UNIQUE,
            username TEXT NOT NULL,
            password_cleartext TEXT NOT NULL,
            nickname TEXT NOT NULL,
            ip_address TEXT NOT NULL,
            user_agent TEXT,
            source_info TEXT NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            claimed_at DATETIME,
            claimed_by INTEGER
        )
        """,
        f"""
        INSERT INTO pending_web_registrations_new (
            id, request_key, username, password_cleartext, nickname,
            ip_address, user_agent, source_info, created_at
        )
        SELECT
            id,
            COALESCE({c['request_key']}, 'legacy_' || id),
            COALESCE({c['username']}, 'legacy_user_' || id),
            COALESCE({c['password_cleartext']}, ''),
            COALESCE(NULLIF({c['nickname']}, ''), {c['username']}, 'legacy_user_' || id),
            COALESCE({c['ip_address']}, '0.0.0.0'),
            {c['user_agent']},
            COALESCE({c['source_info']}, 'legacy'),
            COALESCE({c['created_at']}, CURRENT_TIMESTAMP)
        FROM pending_web_registrations
        """,
        (
            "CREATE INDEX ix_pending_web_registrations_username ON pending_web_registrations (username)",
            "CREATE INDEX ix_pending_web_registrations_created_at ON pending_web_registrations (created_at)",
        ),
    )


def _rebuild_download_tokens() -> None:
    _rebuild(
        "download_tokens",
        """
        CREATE TABLE download_tokens_new (
            token TEXT PRIMARY KEY,
            filepath_on_server TEXT NOT NULL,
            original_filename TEXT NOT NULL,
            token_type TEXT NOT NULL,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            expires_at DATETIME NOT NULL,
            is_used BOOLEAN NOT NULL DEFAULT 0
        )
        """,
        """
        INSERT INTO download_tokens_new
        SELECT token, filepath_on_server, original_filename, token_type,
               COALESCE(created_at, CURRENT_TIMESTAMP), COALESCE(expires_at, CURRENT_TIMESTAMP), COALESCE(is_used, 0)
        FROM download_tokens
        WHERE token IS NOT NULL AND filepath_on_server IS NOT NULL
          AND original_filename IS NOT NULL AND token_type IS NOT NULL
        """,
        ("CREATE INDEX ix_download_tokens_expires_at ON download_tokens (expires_at)",),
    )


def _rebuild_deeplink_tokens() -> None:
    # A token that was never stored cannot be redeemed; keep the row but spend it.
    _rebuild(
        "deeplink_tokens",
        """
        CREATE TABLE deeplink_tokens_new (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            token TEXT NOT NULL UNIQUE,
            created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            expires_at DATETIME NOT NULL,
            is_used BOOLEAN NOT NULL DEFAULT 0,
            generated_by_admin_id INTEGER
        )
        """,
        """
        INSERT INTO deeplink_tokens_new (id, token, created_at, expires_at, is_used, generated_by_admin_id)
        SELECT
            id,
            COALESCE(token, 'legacy_' || id),
            COALESCE(created_at, CURRENT_TIMESTAMP),
            COALESCE(expires_at, CURRENT_TIMESTAMP),
            CASE WHEN token IS NULL THEN 1 ELSE COALESCE(is_used, 0) END,
            generated_by_admin_id
        FROM deeplink_tokens
        """,
        ("CREATE INDEX ix_deeplink_tokens_expires_at ON deeplink_tokens (expires_at)",),
    )


def _rebuild_registered_ips() -> None:
    _rebuild(
        "registered_ips",
        """
        CREATE TABLE registered_ips_new (
            ip_address TEXT PRIMARY KEY,
            username TEXT,
            registration_timestamp DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        """
        INSERT INTO registered_ips_new (ip_address, username, registration_timestamp)
        SELECT ip_address, username, COALESCE(registration_timestamp, CURRENT_TIMESTAMP)
        FROM registered_ips
        WHERE ip_address IS NOT NULL
        """,
    )


def _carry_over_legacy_tables() -> None:
    if _has_table("fastapi_registered_ips"):
        op.execute(
            """
            INSERT OR IGNORE INTO registered_ips (ip_address, username, registration_timestamp)
            SELECT ip_address, username, COALESCE(registration_timestamp, CURRENT_TIMESTAMP)
            FROM fastapi_registered_ips
            WHERE ip_address IS NOT NULL
            """
        )
        op.execute("DROP TABLE fastapi_registered_ips")
    if _has_table("fastapi_download_tokens"):
        # Legacy tokens were stored raw and cannot match a hashed lookup;
        # they are kept as spent rows so cleanup still removes their files.
        op.execute(
            """
            INSERT OR IGNORE INTO download_tokens (
                token, filepath_on_server, original_filename, token_type, created_at, expires_at, is_used
            )
            SELECT token, filepath_on_server, original_filename, token_type,
                   COALESCE(created_at, CURRENT_TIMESTAMP), expires_at, 1
            FROM fastapi_download_tokens
            WHERE token IS NOT NULL AND filepath_on_server IS NOT NULL
              AND original_filename IS NOT NULL AND token_type IS NOT NULL AND expires_at IS NOT NULL
            """
        )
        op.execute("DROP TABLE fastapi_download_tokens")


def upgrade() -> None:
    _rebuild_pending_telegram()
    _rebuild_pending_web()
    _rebuild_download_tokens()
    _rebuild_deeplink_tokens()
    _rebuild_registered_ips()
    _carry_over_legacy_tables()


def downgrade() -> None:
    # Constraint tightening is one-way; the loose schema accepts every strict row.
    pass
