import asyncio
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import urlparse

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from api.main import _http_error, app, client_ip, get_db
from common.approval import ApprovalWorkflow
from common.errors import (
    AlreadyHandled, AlreadyUsed, DirectoryUnavailable, Expired, InconsistentState, IpAlreadyRegistered,
    PayloadMissing, ProvisionFailed, TokenNotFound, UsernameTaken, ValidationError,
)
from common.intake import ChatIntake, ChatSubmission, WebIntake, WebSubmission
from common.models import BannedUser, EventLog, PendingTelegramRegistration, PendingWebRegistration
from common.provisioning import Provisioner
from conftest import FakeDirectory, FakeNotifier, create_test_db

ADMIN_HEADERS = {"Authorization": "Bearer admin_token"}


def _tg_update(text: str, chat_id: int = 42):
    return {
        "update_id": 1,
        "message": {
            "message_id": 7,
            "chat": {"id": chat_id, "type": "private"},
            "from": {"id": chat_id, "first_name": "Alice", "username": "al", "language_code": "en"},
            "text": text,
        },
    }


def _headers():
    return {"X-Telegram-Bot-Api-Secret-Token": "test_secret"}


def _override_db(factory):
    async def _get_db():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db


def _client():
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


# --- Error mapping ---

@pytest.mark.parametrize("error,status_code", [
    (ValidationError("username"), 400),
    (UsernameTaken("alice"), 409),
    (IpAlreadyRegistered(), 409),
    (AlreadyHandled(), 409),
    (DirectoryUnavailable(), 503),
    (Expired(), 410),
    (AlreadyUsed(), 410),
    (PayloadMissing(), 410),
    (TokenNotFound(), 404),
    (ProvisionFailed(), 502),
    (InconsistentState(), 500),
])
def test_registration_errors_map_to_http_status(error, status_code):
    exc = _http_error(error)
    assert exc.status_code == status_code
    assert exc.detail["code"] == error.code


def test_client_ip_honours_proxy_headers_only_when_enabled():
    request = MagicMock()
    request.headers = {"X-Forwarded-For": "203.0.113.9, 10.0.0.1", "X-Real-IP": "198.51.100.2"}
    request.client.host = "127.0.0.1"
    with patch("common.config.settings.WEB_PROXY_HEADERS", False):
        assert client_ip(request) == "127.0.0.1"
    with patch("common.config.settings.WEB_PROXY_HEADERS", True):
        assert client_ip(request) == "203.0.113.9"
        request.headers = {"X-Real-IP": "198.51.100.2"}
        assert client_ip(request) == "198.51.100.2"


# --- Health ---

def test_health_live_and_ready(app_no_db, mock_redis):
    async def _run():
        async with _client() as client:
            assert (await client.get("/health/live")).json() == {"status": "ok"}
            ready = await client.get("/health/ready")
            assert ready.status_code == 200
            mock_redis.ping.side_effect = ConnectionError("down")
            assert (await client.get("/health/ready")).status_code == 503

    asyncio.run(_run())


def test_metrics_reports_queue_and_event_counters(db_path, mock_redis):
    async def _run():
        engine, factory = await create_test_db(db_path)
        try:
            async with factory() as db:
                db.add_all([
                    EventLog(id="e1", event_type="provision_orphaned_account", payload_json={}),
                    EventLog(id="e2", event_type="worker_topic_completed", payload_json={"topic": "directory.ban_sync"}),
                ])
                await db.commit()
            _override_db(factory)
            mock_redis.llen = AsyncMock(side_effect=[3, 1])
            with patch("api.main.redis_client", mock_redis):
                async with _client() as client:
                    unauthorized = await client.get("/health/metrics")
                    resp = await client.get("/health/metrics", headers=ADMIN_HEADERS)
            assert unauthorized.status_code == 401
            body = resp.json()
            assert body["queue_depth"] == {"default_queue": 3, "dead_letter_queue": 1}
            assert body["event_counters"]["provision_orphaned_account"] == 1
            assert body["last_ban_sync_at"] is not None
            assert "orphaned_accounts" in body["alerts"]
        finally:
            app.dependency_overrides.clear()
            await engine.dispose()

    asyncio.run(_run())


# --- Telegram webhook ---

def test_webhook_rejects_wrong_secret(app_no_db):
    async def _run():
        async with _client() as client:
            resp = await client.post(
                "/v1/integrations/telegram/webhook",
                json=_tg_update("/start"),
                headers={"X-Telegram-Bot-Api-Secret-Token": "wrong"},
            )
        assert resp.status_code == 403

    asyncio.run(_run())


def test_webhook_ignores_unparseable_updates(app_no_db):
    async def _run():
        async with _client() as client:
            resp = await client.post("/v1/integrations/telegram/webhook", json={"update_id": 1}, headers=_headers())
        assert resp.json() == {"status": "ignored"}

    asyncio.run(_run())


def test_webhook_routes_update_to_bot(app_no_db):
    async def _run():
        bot = MagicMock()
        bot.handle_update = AsyncMock()
        with patch("api.main.get_bot", return_value=bot):
            async with _client() as client:
                resp = await client.post(
                    "/v1/integrations/telegram/webhook", json=_tg_update("/start"), headers=_headers()
                )
        assert resp.json() == {"status": "ok"}
        data = bot.handle_update.call_args.args[0]
        assert data["user_id"] == 42
        assert data["text"] == "/start"
        assert data["language_code"] == "en"

    asyncio.run(_run())


def test_webhook_answers_ok_when_routing_fails(app_no_db, mock_send):
    async def _run():
        bot = MagicMock()
        bot.handle_update = AsyncMock(side_effect=RuntimeError("boom"))
        with patch("api.main.get_bot", return_value=bot):
            async with _client() as client:
                resp = await client.post(
                    "/v1/integrations/telegram/webhook", json=_tg_update("hello"), headers=_headers()
                )
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
        assert mock_send.call_args.args[0] == "42"
        assert "Sorry" in mock_send.call_args.args[1]

    asyncio.run(_run())


# --- Web registration and downloads ---

def test_web_registration_disabled_returns_404(app_no_db):
    async def _run():
        with patch("common.config.settings.WEB_REGISTRATION_ENABLED", False):
            async with _client() as client:
                resp = await client.post("/v1/web/register", json={"username": "carol", "password": "pw"})
        assert resp.status_code == 404

    asyncio.run(_run())


def test_web_registration_rate_limited(app_no_db, mock_redis):
    async def _run():
        mock_redis.incr = AsyncMock(return_value=6)
        with patch("common.config.settings.WEB_REGISTRATION_ENABLED", True):
            async with _client() as client:
                resp = await client.post("/v1/web/register", json={"username": "carol", "password": "pw"})
        assert resp.status_code == 429

    asyncio.run(_run())


def test_web_registration_delivers_single_use_downloads(db_path, temp_files, mock_redis):
    async def _run():
        engine, factory = await create_test_db(db_path)
        try:
            directory = FakeDirectory()
            _override_db(factory)
            with patch("api.main.redis_client", mock_redis), \
                    patch("api.main.web_intake", WebIntake(directory, one_per_ip=True)), \
                    patch("api.main.provisioner", Provisioner(directory, FakeNotifier())), \
                    patch("common.config.settings.WEB_REGISTRATION_ENABLED", True):
                async with _client() as client:
                    resp = await client.post(
                        "/v1/web/register",
                        json={"username": "carol", "password": "pw", "nickname": "Caz"},
                        headers={"User-Agent": "pytest"},
                    )
                    assert resp.status_code == 201
                    body = resp.json()
                    assert body["username"] == "carol"
                    assert body["nickname"] == "Caz"

                    config_url = urlparse(body["downloads"]["config_url"])
                    config_path = f"{config_url.path}?{config_url.query}"
                    first = await client.get(config_path)
                    assert first.status_code == 200
                    assert "<nickname>Caz</nickname>" in first.text
                    assert "Server.tt" in first.headers["content-disposition"]
                    second = await client.get(config_path)
                    assert second.status_code == 410
                    assert second.json()["detail"]["code"] == "already_used"

                    link = await client.get(urlparse(body["downloads"]["quick_connect_url"]).path)
                    assert link.status_code == 200
                    assert link.json()["tt_link"].startswith("tt://tt.example.org?")

                    again = await client.post("/v1/web/register", json={"username": "dan", "password": "pw"})
                    assert again.status_code == 409
                    assert again.json()["detail"]["code"] == "ip_already_registered"

            assert directory.created[0]["nickname"] == "Caz"
        finally:
            app.dependency_overrides.clear()
            await engine.dispose()

    asyncio.run(_run())


def test_unknown_download_token_is_404(db_path):
    async def _run():
        engine, factory = await create_test_db(db_path)
        try:
            _override_db(factory)
            async with _client() as client:
                resp = await client.get("/download/not-a-token")
                link = await client.get("/link/not-a-token")
            assert resp.status_code == 404
            assert link.status_code == 404
        finally:
            app.dependency_overrides.clear()
            await engine.dispose()

    asyncio.run(_run())


# --- Admin REST ---

def test_admin_endpoints_require_bearer_token(app_no_db):
    async def _run():
        async with _client() as client:
            missing = await client.get("/v1/admin/pending")
            invalid = await client.get("/v1/admin/pending", headers={"Authorization": "Bearer nope"})
        assert missing.status_code == 401
        assert invalid.status_code == 401

    asyncio.run(_run())


def test_admin_lists_and_decides_pending_requests(db_path, temp_files):
    async def _run():
        engine, factory = await create_test_db(db_path)
        try:
            directory = FakeDirectory()
            notifier = FakeNotifier()
            async with factory() as db:
                chat = await ChatIntake(directory, admin_ids=[900]).submit(db, ChatSubmission(42, "alice", "p1"))
                web = await WebIntake(directory, one_per_ip=True).submit(db, WebSubmission("carol", "pw", "10.0.0.3"))
            _override_db(factory)
            provisioner = Provisioner(directory, notifier)
            with patch("api.main.approval", ApprovalWorkflow(provisioner, notifier)), \
                    patch("api.main.provisioner", provisioner):
                async with _client() as client:
                    listing = await client.get("/v1/admin/pending", headers={"Authorization": "Bearer test_token"})
                    assert {item["channel"] for item in listing.json()} == {"chat", "web"}

                    approve = await client.post(
                        f"/v1/admin/pending/{chat.request_key}/decision",
                        json={"decision": "approve"}, headers=ADMIN_HEADERS,
                    )
                    assert approve.status_code == 200
                    assert approve.json()["username"] == "alice"

                    replay = await client.post(
                        f"/v1/admin/pending/{chat.request_key}/decision",
                        json={"decision": "reject"}, headers=ADMIN_HEADERS,
                    )
                    assert replay.status_code == 409

                    reject = await client.post(
                        f"/v1/admin/pending/{web.request_key}/decision",
                        json={"decision": "reject"}, headers=ADMIN_HEADERS,
                    )
                    assert reject.status_code == 200

                    bad = await client.post(
                        f"/v1/admin/pending/{web.request_key}/decision",
                        json={"decision": "maybe"}, headers=ADMIN_HEADERS,
                    )
                    assert bad.status_code == 422

            assert [c["username"] for c in directory.created] == ["alice"]
            async with factory() as db:
                assert (await db.execute(select(PendingTelegramRegistration))).first() is None
                assert (await db.execute(select(PendingWebRegistration))).first() is None
        finally:
            app.dependency_overrides.clear()
            await engine.dispose()

    asyncio.run(_run())


def test_admin_ban_crud(db_path):
    async def _run():
        engine, factory = await create_test_db(db_path)
        try:
            _override_db(factory)
            async with _client() as client:
                created = await client.post(
                    "/v1/admin/bans", json={"telegram_id": 77, "reason": "abuse"}, headers=ADMIN_HEADERS
                )
                assert created.status_code == 201
                assert created.json()["banned_by_admin_id"] == 900

                listing = await client.get("/v1/admin/bans", headers=ADMIN_HEADERS)
                assert [ban["telegram_id"] for ban in listing.json()] == [77]

                removed = await client.delete("/v1/admin/bans/77", headers=ADMIN_HEADERS)
                assert removed.status_code == 200
                missing = await client.delete("/v1/admin/bans/77", headers=ADMIN_HEADERS)
                assert missing.status_code == 404
            async with factory() as db:
                assert await db.get(BannedUser, 77) is None
        finally:
            app.dependency_overrides.clear()
            await engine.dispose()

    asyncio.run(_run())


def test_admin_deeplink_creation(db_path):
    async def _run():
        engine, factory = await create_test_db(db_path)
        try:
            _override_db(factory)
            async with _client() as client:
                with patch("common.config.settings.TELEGRAM_DEEPLINK_REGISTRATION_ENABLED", False):
                    disabled = await client.post("/v1/admin/deeplinks", headers=ADMIN_HEADERS)
                with patch("common.config.settings.TELEGRAM_DEEPLINK_REGISTRATION_ENABLED", True):
                    created = await client.post("/v1/admin/deeplinks", headers=ADMIN_HEADERS)
            assert disabled.status_code == 404
            assert created.status_code == 201
            body = created.json()
            assert body["deep_link"] == f"https://t.me/tt_reg_bot?start={body['token']}"
        finally:
            app.dependency_overrides.clear()
            await engine.dispose()

    asyncio.run(_run())


def test_admin_ban_sync_enqueues_job(app_no_db, mock_redis):
    async def _run():
        async with _client() as client:
            resp = await client.post("/v1/admin/ban_sync", headers=ADMIN_HEADERS)
        assert resp.status_code == 202
        assert resp.json()["topic"] == "directory.ban_sync"
        queue, _ = mock_redis.rpush.call_args.args
        assert queue == "default_queue"

    asyncio.run(_run())
