"""Account directory of the TeamTalk server.

The orchestration code only ever talks to ``DirectoryClient``. The concrete
adapter speaks to an HTTP admin gateway that fronts the server:

- ``GET    {base}/accounts``            -> ``{"accounts": [...], "complete": true}``
- ``POST   {base}/accounts``            -> 201, or 409 when the username exists
- ``DELETE {base}/accounts/{username}`` -> 204, or 404 when unknown
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

import httpx

from common.config import settings
from common.errors import DirectoryUnavailable, UsernameTaken

logger = logging.getLogger(__name__)

USERTYPE_DEFAULT = 1
USERTYPE_ADMIN = 2

USER_RIGHTS = {
    "NONE": 0x00000000,
    "MULTI_LOGIN": 0x00000001,
    "VIEW_ALL_USERS": 0x00000002,
    "CREATE_TEMPORARY_CHANNEL": 0x00000004,
    "MODIFY_CHANNELS": 0x00000008,
    "TEXTMESSAGE_BROADCAST": 0x00000010,
    "KICK_USERS": 0x00000020,
    "BAN_USERS": 0x00000040,
    "MOVE_USERS": 0x00000080,
    "OPERATOR_ENABLE": 0x00000100,
    "UPLOAD_FILES": 0x00000200,
    "DOWNLOAD_FILES": 0x00000400,
    "UPDATE_SERVERPROPERTIES": 0x00000800,
    "TRANSMIT_VOICE": 0x00001000,
    "TRANSMIT_VIDEOCAPTURE": 0x00002000,
    "TRANSMIT_DESKTOP": 0x00004000,
    "TRANSMIT_DESKTOPINPUT": 0x00008000,
    "TRANSMIT_MEDIAFILE_AUDIO": 0x00010000,
    "TRANSMIT_MEDIAFILE_VIDEO": 0x00020000,
    "TRANSMIT_MEDIAFILE": 0x00030000,
    "LOCKED_NICKNAME": 0x00040000,
    "LOCKED_STATUS": 0x00080000,
    "RECORD_VOICE": 0x00100000,
    "VIEW_HIDDEN_CHANNELS": 0x00200000,
    "TEXTMESSAGE_USER": 0x00400000,
    "TEXTMESSAGE_CHANNEL": 0x00800000,
}


def rights_mask(names: List[str]) -> int:
    mask = 0
    for name in names:
        key = name.strip().upper()
        if key.startswith("USERRIGHT_"):
            key = key[len("USERRIGHT_"):]
        value = USER_RIGHTS.get(key)
        if value is None:
            logger.warning("Ignoring unknown TeamTalk user right %s", name)
            continue
        mask |= value
    return mask


@dataclass(frozen=True)
class AccountSummary:
    username: str
    user_type: int = USERTYPE_DEFAULT
    note: str = ""

    @property
    def is_admin(self) -> bool:
        return self.user_type == USERTYPE_ADMIN


class DirectoryClient(Protocol):
    async def account_exists(self, username: str) -> bool: ...

    async def list_accounts(self) -> List[AccountSummary]: ...

    async def create_account(
        self,
        username: str,
        password: str,
        nickname: str,
        is_admin: bool,
        note: str = "",
    ) -> None: ...

    async def delete_account(self, username: str) -> bool: ...


class HttpDirectoryClient:
    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.DIRECTORY_API_BASE).rstrip("/")
        self.token = token if token is not None else settings.DIRECTORY_API_TOKEN
        self.timeout = timeout or settings.DIRECTORY_TIMEOUT_SECONDS

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method, url, headers=self._get_headers(), json=json)
        except httpx.HTTPError as e:
            logger.warning("Directory request %s %s failed: %s", method, path, e)
            raise DirectoryUnavailable(f"directory unreachable: {e}") from e
        if resp.status_code >= 500:
            logger.warning("Directory request %s %s returned %s", method, path, resp.status_code)
            raise DirectoryUnavailable(f"directory returned {resp.status_code}")
        return resp

    async def list_accounts(self) -> List[AccountSummary]:
        """Lists every account on the server, including offline users.

        A listing the gateway flags as incomplete is refused as a whole.
        """
        resp = await self._request("GET", "/accounts")
        if resp.status_code >= 400:
            raise DirectoryUnavailable(f"account listing rejected with {resp.status_code}")
        payload = resp.json()
        if not isinstance(payload, dict) or not isinstance(payload.get("accounts"), list):
            raise DirectoryUnavailable("malformed account listing")
        if payload.get("complete") is False:
            raise DirectoryUnavailable("account listing is incomplete")
        accounts = []
        for item in payload["accounts"]:
            if not isinstance(item, dict) or not item.get("username"):
                continue
            accounts.append(
                AccountSummary(
                    username=str(item["username"]),
                    user_type=int(item.get("usertype") or USERTYPE_DEFAULT),
                    note=str(item.get("note") or ""),
                )
            )
        return accounts

    async def account_exists(self, username: str) -> bool:
        accounts = await self.list_accounts()
        return any(account.username == username for account in accounts)

    async def create_account(
        self,
        username: str,
        password: str,
        nickname: str,
        is_admin: bool,
        note: str = "",
    ) -> None:
        payload = {
            "username": username,
            "password": password,
            "nickname": nickname,
            "usertype": USERTYPE_ADMIN if is_admin else USERTYPE_DEFAULT,
            "userrights": rights_mask(settings.default_user_rights),
            "note": note,
        }
        resp = await self._request("POST", "/accounts", json=payload)
        if resp.status_code == 409:
            raise UsernameTaken(username, "directory rejected duplicate username")
        resp.raise_for_status()
        logger.info("Directory account created for %s (admin=%s)", username, is_admin)

    async def delete_account(self, username: str) -> bool:
        resp = await self._request("DELETE", f"/accounts/{quote(username, safe='')}")
        if resp.status_code == 404:
            return False
        resp.raise_for_status()
        logger.info("Directory account deleted: %s", username)
        return True


directory_client = HttpDirectoryClient()
