"""Registration intake for the chat and web channels.

Both variants validate in the same order and stop at the first failure:
required fields, channel policy, pending username, live directory username.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional, Set, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.crypto import seal_secret
from common.directory import DirectoryClient
from common.errors import (
    AlreadyRegistered, IpAlreadyRegistered, RegistrantBanned, RequestAlreadyPending,
    UsernameTaken, ValidationError,
)
from common.models import (
    BannedUser, PendingTelegramRegistration, PendingWebRegistration, RegisteredIp,
    TelegramRegistration, utc_now,
)

logger = logging.getLogger(__name__)

PendingRegistration = Union[PendingTelegramRegistration, PendingWebRegistration]


@dataclass
class ChatSubmission:
    registrant_id: Optional[int]
    username: str
    password: str
    nickname: Optional[str] = None
    wants_admin: bool = False
    source_info: str = ""


@dataclass
class WebSubmission:
    username: str
    password: str
    ip_address: str
    nickname: Optional[str] = None
    user_agent: Optional[str] = None


def new_request_key() -> str:
    return uuid.uuid4().hex


def _require(field: str, value) -> str:
    if value is None:
        raise ValidationError(field)
    text_value = str(value).strip()
    if not text_value:
        raise ValidationError(field)
    return text_value


async def username_pending(db: AsyncSession, username: str) -> bool:
    for model in (PendingTelegramRegistration, PendingWebRegistration):
        stmt = select(model.id).where(model.username == username).limit(1)
        if (await db.execute(stmt)).first() is not None:
            return True
    return False


async def username_linked(db: AsyncSession, username: str) -> bool:
    stmt = select(TelegramRegistration.telegram_id).where(TelegramRegistration.teamtalk_username == username)
    return (await db.execute(stmt)).first() is not None


class _Intake:
    def __init__(self, directory: DirectoryClient):
        self.directory = directory

    async def _check_username(self, db: AsyncSession, username: str) -> None:
        if await username_pending(db, username):
            raise UsernameTaken(username, "username already requested")
        if await username_linked(db, username):
            raise UsernameTaken(username, "username already linked")
        # DirectoryUnavailable propagates to the caller as retryable.
        if await self.directory.account_exists(username):
            raise UsernameTaken(username)


class ChatIntake(_Intake):
    def __init__(self, directory: DirectoryClient, admin_ids: Optional[Iterable[int]] = None):
        super().__init__(directory)
        self.admin_ids: Set[int] = set(admin_ids) if admin_ids is not None else settings.admin_ids

    def is_admin(self, registrant_id: int) -> bool:
        return registrant_id in self.admin_ids

    async def check_registrant(self, db: AsyncSession, registrant_id: int) -> None:
        """Channel policy for a chat identity; also used before the dialogue starts."""
        banned = await db.get(BannedUser, registrant_id)
        if banned is not None:
            raise RegistrantBanned("registrant is banned")
        if self.is_admin(registrant_id):
            return
        linked = await db.get(TelegramRegistration, registrant_id)
        if linked is not None:
            raise AlreadyRegistered("chat identity already has an account")
        stmt = select(PendingTelegramRegistration.id).where(
            PendingTelegramRegistration.registrant_telegram_id == registrant_id
        ).limit(1)
        if (await db.execute(stmt)).first() is not None:
            raise RequestAlreadyPending("a request from this chat identity is awaiting a decision")

    async def submit(self, db: AsyncSession, submission: ChatSubmission) -> PendingTelegramRegistration:
        if submission.registrant_id is None:
            raise ValidationError("registrant_id")
        registrant_id = int(submission.registrant_id)
        username = _require("username", submission.username)
        password = _require("password", submission.password)
        nickname = (submission.nickname or "").strip() or username

        await self.check_registrant(db, registrant_id)
        await self._check_username(db, username)

        pending = PendingTelegramRegistration(
            request_key=new_request_key(),
            registrant_telegram_id=registrant_id,
            username=username,
            password_cleartext=seal_secret(password),
            nickname=nickname,
            source_info=submission.source_info or "",
            wants_admin=bool(submission.wants_admin) and self.is_admin(registrant_id),
            created_at=utc_now(),
        )
        db.add(pending)
        await db.commit()
        logger.info("Chat registration request %s stored for %s", pending.request_key, registrant_id)
        return pending


class WebIntake(_Intake):
    def __init__(self, directory: DirectoryClient, one_per_ip: Optional[bool] = None):
        super().__init__(directory)
        self.one_per_ip = settings.WEB_ONE_REGISTRATION_PER_IP if one_per_ip is None else one_per_ip

    async def submit(self, db: AsyncSession, submission: WebSubmission) -> PendingWebRegistration:
        username = _require("username", submission.username)
        password = _require("password", submission.password)
        ip_address = _require("ip_address", submission.ip_address)
        nickname = (submission.nickname or "").strip() or username

        if self.one_per_ip and await db.get(RegisteredIp, ip_address) is not None:
            raise IpAlreadyRegistered("this address already registered an account")

        # A request left behind by a failed provisioning is resumed by the same address.
        stmt = select(PendingWebRegistration).where(
            PendingWebRegistration.username == username,
            PendingWebRegistration.ip_address == ip_address,
            PendingWebRegistration.claimed_at.is_(None),
        ).execution_options(populate_existing=True)
        stalled = (await db.execute(stmt)).scalar_one_or_none()
        if stalled is not None:
            stalled.password_cleartext = seal_secret(password)
            stalled.nickname = nickname
            stalled.user_agent = submission.user_agent
            await db.commit()
            logger.info("Web registration request %s resumed", stalled.request_key)
            return stalled

        await self._check_username(db, username)

        pending = PendingWebRegistration(
            request_key=new_request_key(),
            username=username,
            password_cleartext=seal_secret(password),
            nickname=nickname,
            ip_address=ip_address,
            user_agent=submission.user_agent,
            source_info=f"web;ip={ip_address}",
            created_at=utc_now(),
        )
        db.add(pending)
        await db.commit()
        logger.info("Web registration request %s stored", pending.request_key)
        return pending
