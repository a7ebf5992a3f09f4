"""Account provisioning: directory creation plus local finalize.

The directory is the final authority on username uniqueness; local checks
only save a round trip. A request is claimed before provisioning so two
workers never create the same account for one request_key.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Type

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from common.assets import build_client_zip, build_tt_file, build_tt_link, tt_filename, write_temp_file
from common.config import settings
from common.crypto import open_secret
from common.directory import DirectoryClient
from common.errors import AlreadyHandled, DirectoryUnavailable, InconsistentState, ProvisionFailed, UsernameTaken
from common.events import emit_event, record_event
from common.intake import PendingRegistration
from common.models import (
    Channel, DownloadTokenType, PendingTelegramRegistration, PendingWebRegistration,
    RegisteredIp, TelegramRegistration, utc_now,
)
from common.telegram import Notifier, build_decision_markup, escape_html
from common.tokens import DownloadPayload, IssuedToken, issue_download_token

logger = logging.getLogger(__name__)


@dataclass
class ProvisionedAccount:
    request_key: str
    username: str
    nickname: str
    is_admin: bool
    channel: Channel
    registrant_id: Optional[int] = None
    tt_filename: str = ""
    tt_content: str = ""
    tt_link: Optional[str] = None
    client_zip_path: Optional[str] = None
    tokens: Dict[str, IssuedToken] = field(default_factory=dict)

    @property
    def config_token(self) -> Optional[IssuedToken]:
        return self.tokens.get(DownloadTokenType.tt_config.value)


async def find_pending(db: AsyncSession, request_key: str) -> Optional[PendingRegistration]:
    for model in (PendingTelegramRegistration, PendingWebRegistration):
        stmt = select(model).where(model.request_key == request_key).execution_options(populate_existing=True)
        row = (await db.execute(stmt)).scalar_one_or_none()
        if row is not None:
            return row
    return None


async def claim_pending(db: AsyncSession, model: Type, request_key: str, actor_id: Optional[int] = None):
    """Marks an unclaimed request as being provisioned. First committer wins."""
    res = await db.execute(
        update(model)
        .where(model.request_key == request_key, model.claimed_at.is_(None))
        .values(claimed_at=utc_now(), claimed_by=actor_id)
    )
    if res.rowcount != 1:
        await db.rollback()
        raise AlreadyHandled("request already handled")
    await db.commit()
    stmt = select(model).where(model.request_key == request_key).execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one()


async def release_claim(db: AsyncSession, pending: PendingRegistration) -> None:
    model = type(pending)
    await db.execute(update(model).where(model.id == pending.id).values(claimed_at=None, claimed_by=None))
    await db.commit()


def account_note(pending: PendingRegistration) -> str:
    return f"Reg via Bot ({pending.source_info}), nick={pending.nickname}"


class Provisioner:
    def __init__(self, directory: DirectoryClient, notifier: Optional[Notifier] = None):
        self.directory = directory
        self.notifier = notifier

    async def _alert(self, text: str, retry_key: Optional[str] = None) -> None:
        if self.notifier is None:
            return
        markup = build_decision_markup(retry_key) if retry_key else None
        try:
            await self.notifier.notify_admins(text, reply_markup=markup)
        except Exception as e:
            logger.error(f"Failed to alert admins: {e}")

    async def _discard(self, db: AsyncSession, pending: PendingRegistration, reason: str) -> None:
        model = type(pending)
        await db.execute(delete(model).where(model.id == pending.id))
        record_event(
            db, "registration_discarded", entity_type="pending_registration",
            entity_id=pending.request_key, payload={"username": pending.username, "reason": reason},
        )
        await db.commit()

    async def provision_unclaimed(self, db: AsyncSession, pending: PendingRegistration, actor_id: Optional[int] = None) -> ProvisionedAccount:
        claimed = await claim_pending(db, type(pending), pending.request_key, actor_id)
        return await self.provision(db, claimed)

    async def provision(self, db: AsyncSession, pending: PendingRegistration) -> ProvisionedAccount:
        """Provisions a claimed pending request.

        Raises UsernameTaken (request discarded), DirectoryUnavailable or
        ProvisionFailed (claim released, request kept for retry) and
        InconsistentState (account exists remotely, local finalize failed).
        """
        channel = pending.channel
        username = pending.username
        request_key = pending.request_key
        password = open_secret(pending.password_cleartext)
        is_admin = channel == Channel.chat and bool(pending.wants_admin)

        # 1. Re-check against the live directory.
        try:
            exists = await self.directory.account_exists(username)
        except DirectoryUnavailable as e:
            logger.error("Directory unavailable while provisioning request %s (%s): %s", request_key, username, e)
            await release_claim(db, pending)
            await emit_event(
                db, "provision_failed", entity_type="pending_registration",
                entity_id=request_key, payload={"username": username, "error": str(e), "reason": "directory_unavailable"},
            )
            await self._alert(
                f"TeamTalk server unreachable while creating <b>{escape_html(username)}</b>. "
                f"The request is kept and can be retried.",
                request_key if channel == Channel.chat else None,
            )
            raise
        if exists:
            await self._discard(db, pending, "username_taken")
            raise UsernameTaken(username)

        # 2. Create the account.
        try:
            await self.directory.create_account(
                username, password, pending.nickname, is_admin, note=account_note(pending)
            )
        except UsernameTaken:
            await self._discard(db, pending, "username_taken")
            raise
        except Exception as e:
            logger.error("Directory creation failed for request %s (%s): %s", request_key, username, e)
            await release_claim(db, pending)
            await emit_event(
                db, "provision_failed", entity_type="pending_registration",
                entity_id=request_key, payload={"username": username, "error": str(e)},
            )
            await self._alert(
                f"Provisioning failed for <b>{escape_html(username)}</b>. "
                f"The request is kept and can be retried.",
                request_key if channel == Channel.chat else None,
            )
            raise ProvisionFailed(f"directory creation failed: {e}", request_key=request_key) from e

        # 3. Finalize locally in one transaction.
        registrant_id = getattr(pending, "registrant_telegram_id", None)
        nickname = pending.nickname
        try:
            model = type(pending)
            await db.execute(delete(model).where(model.id == pending.id))
            if channel == Channel.chat:
                if await db.get(TelegramRegistration, registrant_id) is None:
                    db.add(TelegramRegistration(telegram_id=registrant_id, teamtalk_username=username))
            elif settings.WEB_ONE_REGISTRATION_PER_IP:
                await db.merge(RegisteredIp(
                    ip_address=pending.ip_address, username=username, registration_timestamp=utc_now()
                ))
            record_event(
                db, "registration_provisioned", actor_id=pending.claimed_by,
                entity_type="pending_registration", entity_id=pending.request_key,
                payload={"username": username, "channel": channel.value, "is_admin": is_admin},
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(
                "Orphaned external account: %s exists in the directory but request %s failed to finalize: %s",
                username, request_key, e,
            )
            await emit_event(
                db, "provision_orphaned_account", entity_type="pending_registration",
                entity_id=request_key,
                payload={"username": username, "channel": channel.value, "registrant_id": registrant_id, "error": str(e)},
            )
            await self._alert(
                f"DB SYNC ERROR: <b>{escape_html(username)}</b> was created in TeamTalk but the local save failed. "
                f"Manual reconciliation required."
            )
            raise InconsistentState(f"orphaned external account {username}", request_key=request_key) from e

        logger.info("Provisioned %s via %s (admin=%s)", username, channel.value, is_admin)
        account = ProvisionedAccount(
            request_key=request_key,
            username=username,
            nickname=nickname,
            is_admin=is_admin,
            channel=channel,
            registrant_id=registrant_id,
        )
        # 4. Delivery artifacts.
        await self._issue_artifacts(db, account, password)
        return account

    async def _issue_artifacts(self, db: AsyncSession, account: ProvisionedAccount, password: str) -> None:
        account.tt_filename = tt_filename()
        account.tt_content = build_tt_file(account.username, password, account.nickname)
        if settings.QUICK_CONNECT_LINK_ENABLED:
            account.tt_link = build_tt_link(account.username, password, account.nickname)
        try:
            path = write_temp_file(account.tt_filename, account.tt_content)
            account.tokens[DownloadTokenType.tt_config.value] = await issue_download_token(
                db, DownloadPayload(path, account.tt_filename, DownloadTokenType.tt_config)
            )
            if account.tt_link:
                link_path = write_temp_file("link.txt", account.tt_link)
                account.tokens[DownloadTokenType.tt_link.value] = await issue_download_token(
                    db, DownloadPayload(link_path, "link.txt", DownloadTokenType.tt_link)
                )
            zip_path = build_client_zip(account.username, account.tt_content)
            if zip_path:
                account.client_zip_path = zip_path
                account.tokens[DownloadTokenType.client_zip.value] = await issue_download_token(
                    db, DownloadPayload(zip_path, f"{account.username}_TeamTalk.zip", DownloadTokenType.client_zip)
                )
        except (OSError, SQLAlchemyError) as e:
            await db.rollback()
            logger.error("Delivery artifacts for %s could not be issued: %s", account.username, e)
            await emit_event(
                db, "delivery_failed", entity_type="account", entity_id=account.username,
                payload={"error": str(e)},
            )
