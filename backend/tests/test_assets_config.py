import asyncio
import os
import time
import zipfile
from urllib.parse import parse_qs, urlparse
from unittest.mock import patch

import httpx
import pytest

from common.assets import build_client_zip, build_tt_file, build_tt_link, purge_old_temp_files, tt_filename, write_temp_file
from common.config import Settings
from common.crypto import SEALED_PREFIX, open_secret, seal_secret
from common.directory import USERTYPE_ADMIN, USERTYPE_DEFAULT, HttpDirectoryClient, rights_mask
from common.errors import DirectoryUnavailable, UsernameTaken


# --- Connection artifacts ---

def test_tt_file_escapes_account_fields():
    content = build_tt_file("a<b", 'p&"w', "Nick's")
    assert "<username>a&lt;b</username>" in content
    assert "<password>p&amp;&quot;w</password>" in content
    assert "<nickname>Nick&apos;s</nickname>" in content
    assert "<name>Test Server</name>" in content
    assert "<address>tt.example.org</address>" in content
    assert "<udpport>10333</udpport>" in content


def test_tt_file_nickname_defaults_to_username():
    assert "<nickname>bob</nickname>" in build_tt_file("bob", "pw")


def test_tt_link_encodes_credentials():
    with patch("common.config.settings.TEAMTALK_PUBLIC_HOSTNAME", "voice.example.org"), \
            patch("common.config.settings.TEAMTALK_UDP_PORT", 10334):
        link = build_tt_link("alice", "p w&x", "Ali")
    parsed = urlparse(link)
    assert parsed.scheme == "tt"
    assert parsed.netloc == "voice.example.org"
    query = parse_qs(parsed.query)
    assert query["password"] == ["p w&x"]
    assert query["udpport"] == ["10334"]
    assert query["encrypted"] == ["0"]


def test_client_zip_bundles_template_and_config(temp_files, tmp_path):
    template = tmp_path / "template"
    (template / "Client").mkdir(parents=True)
    (template / "Client" / "TeamTalk5.exe").write_bytes(b"MZ")
    with patch("common.config.settings.TEAMTALK_CLIENT_TEMPLATE_DIR", str(template)):
        path = build_client_zip("alice", "<teamtalk/>")
    with zipfile.ZipFile(path) as archive:
        names = set(archive.namelist())
        assert archive.read(f"Client/{tt_filename()}") == b"<teamtalk/>"
    assert "Client/TeamTalk5.exe" in names
    assert path.endswith("_alice_TeamTalk.zip")


def test_client_zip_without_template_is_skipped(temp_files):
    with patch("common.config.settings.TEAMTALK_CLIENT_TEMPLATE_DIR", None):
        assert build_client_zip("alice", "<teamtalk/>") is None
    with patch("common.config.settings.TEAMTALK_CLIENT_TEMPLATE_DIR", "/nonexistent/template"):
        assert build_client_zip("alice", "<teamtalk/>") is None


def test_purge_old_temp_files_keeps_recent(temp_files):
    old_path = write_temp_file("old.tt", "x")
    new_path = write_temp_file("new.tt", "y")
    stale = time.time() - 1200
    os.utime(old_path, (stale, stale))
    assert purge_old_temp_files(600) == 1
    assert not os.path.exists(old_path)
    assert os.path.exists(new_path)


# --- Sealing ---

def test_sealed_password_round_trips_and_hides_cleartext():
    sealed = seal_secret("hunter2", secret="k1")
    assert sealed.startswith(SEALED_PREFIX)
    assert "hunter2" not in sealed
    assert open_secret(sealed, secret="k1") == "hunter2"


def test_unsealed_values_pass_through():
    assert seal_secret("hunter2", secret="") == "hunter2"
    assert open_secret("hunter2", secret="k1") == "hunter2"
    assert open_secret("", secret="k1") == ""


def test_sealed_value_with_wrong_or_missing_key_fails():
    sealed = seal_secret("hunter2", secret="k1")
    with pytest.raises(RuntimeError):
        open_secret(sealed, secret="k2")
    with patch("common.config.settings.PENDING_PASSWORD_KEY", None):
        with pytest.raises(RuntimeError):
            open_secret(sealed)


# --- Settings ---

def test_settings_parse_lists_and_maps():
    cfg = Settings(
        APP_AUTH_BEARER_TOKENS="a, b,,",
        APP_AUTH_TOKEN_USER_MAP="tok1:900, bad, tok2:",
        TELEGRAM_ADMIN_IDS="900, x, 901",
        TEAMTALK_DEFAULT_USER_RIGHTS="multi_login, transmit_voice",
        TEAMTALK_HOST="10.0.0.2",
        TEAMTALK_TCP_PORT=10555,
        _env_file=None,
    )
    assert cfg.auth_tokens == ["a", "b"]
    assert cfg.token_user_map == {"tok1": "900"}
    assert cfg.admin_ids == {900, 901}
    assert cfg.default_user_rights == ["MULTI_LOGIN", "TRANSMIT_VOICE"]
    assert cfg.teamtalk_udp_port == 10555
    assert cfg.teamtalk_public_host == "10.0.0.2"


def test_rights_mask_ignores_unknown_names():
    assert rights_mask(["MULTI_LOGIN", "USERRIGHT_VIEW_ALL_USERS", "FLY"]) == 0x3


# --- Directory gateway client ---

def _directory(handler):
    real_client = httpx.AsyncClient

    def _factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    return patch("common.directory.httpx.AsyncClient", _factory)


def test_list_accounts_parses_gateway_listing():
    def handler(request):
        assert request.headers["Authorization"] == "Bearer gw"
        return httpx.Response(200, json={
            "accounts": [
                {"username": "alice", "usertype": USERTYPE_DEFAULT, "note": "Reg via Bot"},
                {"username": "root", "usertype": USERTYPE_ADMIN},
                {"note": "no name"},
            ],
            "complete": True,
        })

    async def _run():
        client = HttpDirectoryClient("http://gw/api/", token="gw")
        with _directory(handler):
            return await client.list_accounts(), await client.account_exists("root")

    accounts, exists = asyncio.run(_run())
    assert [a.username for a in accounts] == ["alice", "root"]
    assert accounts[1].is_admin is True
    assert exists is True


@pytest.mark.parametrize("response", [
    httpx.Response(503),
    httpx.Response(200, json={"accounts": [], "complete": False}),
    httpx.Response(200, json=["alice"]),
    httpx.Response(403),
])
def test_unusable_listing_is_unavailable(response):
    async def _run():
        with _directory(lambda request: response):
            await HttpDirectoryClient("http://gw/api").list_accounts()

    with pytest.raises(DirectoryUnavailable):
        asyncio.run(_run())


def test_transport_error_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async def _run():
        with _directory(handler):
            await HttpDirectoryClient("http://gw/api").account_exists("alice")

    with pytest.raises(DirectoryUnavailable):
        asyncio.run(_run())


def test_create_account_posts_rights_and_maps_conflict():
    bodies = []

    def handler(request):
        bodies.append(request.read())
        return httpx.Response(201 if len(bodies) == 1 else 409)

    async def _run():
        client = HttpDirectoryClient("http://gw/api")
        with _directory(handler):
            await client.create_account("alice", "pw", "Ali", False, note="Reg via Bot")
            with pytest.raises(UsernameTaken):
                await client.create_account("alice", "pw", "Ali", True)

    with patch("common.config.settings.TEAMTALK_DEFAULT_USER_RIGHTS", "MULTI_LOGIN,TRANSMIT_VOICE"):
        asyncio.run(_run())
    assert b'"usertype": 1' in bodies[0] or b'"usertype":1' in bodies[0]
    assert str(0x1001).encode() in bodies[0]


def test_delete_account_reports_missing():
    def handler(request):
        assert request.url.raw_path in (b"/api/accounts/bob", b"/api/accounts/a%2Fb")
        return httpx.Response(204 if request.url.raw_path.endswith(b"bob") else 404)

    async def _run():
        client = HttpDirectoryClient("http://gw/api")
        with _directory(handler):
            return await client.delete_account("bob"), await client.delete_account("a/b")

    assert asyncio.run(_run()) == (True, False)
