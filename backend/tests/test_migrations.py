import sqlite3

from sqlalchemy import create_engine, inspect

from common.db import run_migrations
from common.models import Base

COMPAT_REVISION = "7a1e3c5d9b20"


def _url(path):
    return f"sqlite+aiosqlite:///{path}"


def _schema(path):
    with sqlite3.connect(path) as conn:
        rows = conn.execute(
            "SELECT type, name, sql FROM sqlite_master WHERE name NOT LIKE 'sqlite_%' AND name != 'alembic_version' "
            "ORDER BY type, name"
        ).fetchall()
    return rows


def test_fresh_database_reaches_head_and_rerun_is_noop(db_path):
    run_migrations(_url(db_path))
    first = _schema(db_path)
    run_migrations(_url(db_path))
    assert _schema(db_path) == first

    engine = create_engine(f"sqlite:///{db_path}")
    try:
        tables = set(inspect(engine).get_table_names())
        columns = {col["name"]: col for col in inspect(engine).get_columns("pending_telegram_registrations")}
    finally:
        engine.dispose()
    assert set(Base.metadata.tables) <= tables
    assert columns["username"]["nullable"] is False
    assert {"claimed_at", "claimed_by", "wants_admin"} <= set(columns)


def test_compat_revision_leaves_existing_tables_untouched(db_path):
    engine = create_engine(f"sqlite:///{db_path}")
    try:
        Base.metadata.create_all(engine)
    finally:
        engine.dispose()
    before = _schema(db_path)
    run_migrations(_url(db_path), revision=COMPAT_REVISION)
    assert _schema(db_path) == before


def _build_legacy_database(path):
    with sqlite3.connect(path) as conn:
        conn.executescript(
            """
            CREATE TABLE pending_telegram_registrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                request_key TEXT,
                registrant_telegram_id INTEGER,
                username TEXT,
                password_cleartext TEXT,
                nickname TEXT,
                source_info TEXT,
                created_at DATETIME
            );
            INSERT INTO pending_telegram_registrations (id, request_key, registrant_telegram_id, username)
                VALUES (7, NULL, NULL, NULL);
            INSERT INTO pending_telegram_registrations
                (id, request_key, registrant_telegram_id, username, password_cleartext, nickname, source_info, created_at)
                VALUES (8, 'abc', 42, 'alice', 'p1', '', 'lang=en', '2025-01-01 10:00:00');

            CREATE TABLE pending_web_registrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT,
                password_cleartext TEXT,
                ip_address TEXT,
                created_at DATETIME
            );
            INSERT INTO pending_web_registrations (id, username) VALUES (3, 'webby');

            CREATE TABLE deeplink_tokens (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                token TEXT,
                created_at DATETIME,
                expires_at DATETIME NOT NULL,
                is_used BOOLEAN,
                generated_by_admin_id INTEGER
            );
            INSERT INTO deeplink_tokens (id, token, expires_at) VALUES (5, NULL, '2025-01-01 00:00:00');

            CREATE TABLE fastapi_registered_ips (
                ip_address TEXT PRIMARY KEY,
                username TEXT,
                registration_timestamp DATETIME
            );
            INSERT INTO fastapi_registered_ips (ip_address, username) VALUES ('10.1.1.1', 'olduser');
            """
        )


def test_tightening_backfills_legacy_rows_with_placeholders(db_path):
    _build_legacy_database(db_path)
    run_migrations(_url(db_path))

    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        blank = conn.execute("SELECT * FROM pending_telegram_registrations WHERE id = 7").fetchone()
        kept = conn.execute("SELECT * FROM pending_telegram_registrations WHERE id = 8").fetchone()
        web = conn.execute("SELECT * FROM pending_web_registrations WHERE id = 3").fetchone()
        invite = conn.execute("SELECT * FROM deeplink_tokens WHERE id = 5").fetchone()
        ip_row = conn.execute("SELECT * FROM registered_ips WHERE ip_address = '10.1.1.1'").fetchone()
        legacy_tables = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name LIKE 'fastapi_%'"
        ).fetchall()

    assert blank["request_key"] == "legacy_7"
    assert blank["registrant_telegram_id"] == 0
    assert blank["username"] == "legacy_user_7"
    assert blank["password_cleartext"] == ""
    assert blank["nickname"] == "legacy_user_7"
    assert blank["source_info"] == "legacy"
    assert blank["created_at"] is not None
    assert blank["wants_admin"] == 0
    assert blank["claimed_at"] is None

    assert kept["request_key"] == "abc"
    assert kept["nickname"] == "alice"
    assert kept["created_at"] == "2025-01-01 10:00:00"

    assert web["ip_address"] == "0.0.0.0"
    assert web["nickname"] == "webby"
    assert web["request_key"] == "legacy_3"

    assert invite["token"] == "legacy_5"
    assert invite["is_used"] == 1

    assert ip_row["username"] == "olduser"
    assert ip_row["registration_timestamp"] is not None
    assert legacy_tables == []


def test_tightened_database_accepts_rerun(db_path):
    _build_legacy_database(db_path)
    run_migrations(_url(db_path))
    before = _schema(db_path)
    run_migrations(_url(db_path))
    assert _schema(db_path) == before
