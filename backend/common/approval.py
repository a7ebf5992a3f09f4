"""Admin approval of chat registrations.

A request moves Submitted -> Approved | Rejected | Expired exactly once.
Approval claims the pending row with a conditional update and rejection
deletes it with a conditional delete, so concurrent admin decisions resolve
first-committer-wins and the loser gets AlreadyHandled.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.errors import (
    AlreadyHandled, ApprovedButProvisionFailed, DirectoryUnavailable, ProvisionFailed, UsernameTaken,
)
from common.events import emit_event, record_event
from common.models import PendingTelegramRegistration
from common.provisioning import ProvisionedAccount, Provisioner, claim_pending
from common.telegram import Notifier, build_decision_markup, escape_html

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    approve = "approve"
    reject = "reject"


class Delivery(Protocol):
    async def deliver(self, account: ProvisionedAccount) -> None: ...


@dataclass
class DecisionOutcome:
    decision: Decision
    request_key: str
    username: str
    registrant_id: int
    account: Optional[ProvisionedAccount] = None


def describe_request(pending: PendingTelegramRegistration) -> str:
    lines = [
        "<b>New registration request</b>",
        f"Username: <code>{escape_html(pending.username)}</code>",
    ]
    if pending.nickname and pending.nickname != pending.username:
        lines.append(f"Nickname: {escape_html(pending.nickname)}")
    lines.append(f"Telegram: <code>{pending.registrant_telegram_id}</code> ({escape_html(pending.source_info)})")
    if pending.wants_admin:
        lines.append("Account type: admin")
    return "\n".join(lines)


class ApprovalWorkflow:
    def __init__(self, provisioner: Provisioner, notifier: Notifier, delivery: Optional[Delivery] = None):
        self.provisioner = provisioner
        self.notifier = notifier
        self.delivery = delivery

    def requires_approval(self, registrant_id: int) -> bool:
        return settings.VERIFY_REGISTRATION and registrant_id not in settings.admin_ids

    async def announce(self, pending: PendingTelegramRegistration) -> None:
        await self.notifier.notify_admins(describe_request(pending), reply_markup=build_decision_markup(pending.request_key))

    async def decide(self, db: AsyncSession, request_key: str, decision: Decision, admin_id: Optional[int]) -> DecisionOutcome:
        if Decision(decision) == Decision.approve:
            return await self.approve(db, request_key, admin_id)
        return await self.reject(db, request_key, admin_id)

    async def approve(self, db: AsyncSession, request_key: str, admin_id: Optional[int]) -> DecisionOutcome:
        pending = await claim_pending(db, PendingTelegramRegistration, request_key, admin_id)
        registrant_id = pending.registrant_telegram_id
        username = pending.username
        logger.info("Request %s approved by %s", request_key, admin_id)

        try:
            account = await self.provisioner.provision(db, pending)
        except UsernameTaken:
            await self.notifier.notify_user(
                registrant_id,
                f"The username <code>{escape_html(username)}</code> was taken before your request was processed. "
                f"Please start again with /start.",
            )
            await self.notifier.notify_admins(
                f"Request for <code>{escape_html(username)}</code> dropped: username already exists.",
            )
            raise
        except (DirectoryUnavailable, ProvisionFailed) as e:
            logger.error("Request %s approved but provisioning failed: %s", request_key, e)
            await emit_event(
                db, "approval_provision_failed", actor_id=admin_id, entity_type="pending_registration",
                entity_id=request_key, payload={"username": username, "error": str(e)},
            )
            await self.notifier.notify_admins(
                f"Approved <code>{escape_html(username)}</code> but provisioning failed: {escape_html(str(e))}\n"
                f"The request is still pending; approve it again to retry.",
                reply_markup=build_decision_markup(request_key),
            )
            raise ApprovedButProvisionFailed(str(e), request_key=request_key) from e

        await self.notifier.notify_admins(
            f"Request for <code>{escape_html(username)}</code> was approved by <code>{admin_id}</code>.",
            exclude=[admin_id] if admin_id is not None else None,
        )
        if self.delivery is not None:
            await self.delivery.deliver(account)
        return DecisionOutcome(Decision.approve, request_key, username, registrant_id, account)

    async def reject(self, db: AsyncSession, request_key: str, admin_id: Optional[int]) -> DecisionOutcome:
        stmt = select(PendingTelegramRegistration).where(
            PendingTelegramRegistration.request_key == request_key
        ).execution_options(populate_existing=True)
        pending = (await db.execute(stmt)).scalar_one_or_none()
        if pending is None:
            raise AlreadyHandled("request already handled")

        res = await db.execute(
            delete(PendingTelegramRegistration).where(
                PendingTelegramRegistration.request_key == request_key,
                PendingTelegramRegistration.claimed_at.is_(None),
            )
        )
        if res.rowcount != 1:
            await db.rollback()
            raise AlreadyHandled("request already handled")
        record_event(
            db, "registration_rejected", actor_id=admin_id, entity_type="pending_registration",
            entity_id=request_key, payload={"username": pending.username},
        )
        await db.commit()
        logger.info("Request %s rejected by %s", request_key, admin_id)

        await self.notifier.notify_user(
            pending.registrant_telegram_id,
            "Your registration request was rejected by an administrator.",
        )
        await self.notifier.notify_admins(
            f"Request for <code>{escape_html(pending.username)}</code> was rejected by <code>{admin_id}</code>.",
            exclude=[admin_id] if admin_id is not None else None,
        )
        return DecisionOutcome(Decision.reject, request_key, pending.username, pending.registrant_telegram_id)
