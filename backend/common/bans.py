import logging
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from common.events import record_event
from common.models import BannedUser, TelegramRegistration, utc_now

logger = logging.getLogger(__name__)

ADMIN_PANEL_REASON = "Deleted via admin panel"
DIRECTORY_REMOVAL_REASON = "Account deleted from TeamTalk server"


async def ban_user(
    db: AsyncSession,
    telegram_id: int,
    username: Optional[str] = None,
    banned_by: Optional[int] = None,
    reason: Optional[str] = None,
) -> BannedUser:
    ban = await db.merge(BannedUser(
        telegram_id=telegram_id,
        teamtalk_username=username,
        banned_at=utc_now(),
        banned_by_admin_id=banned_by,
        reason=reason,
    ))
    record_event(
        db, "user_banned", actor_id=banned_by, entity_type="telegram_identity",
        entity_id=str(telegram_id), payload={"username": username, "reason": reason},
    )
    await db.commit()
    logger.info("Banned telegram id %s (%s): %s", telegram_id, username, reason)
    return ban


async def unban_user(db: AsyncSession, telegram_id: int, admin_id: Optional[int] = None) -> bool:
    res = await db.execute(delete(BannedUser).where(BannedUser.telegram_id == telegram_id))
    if res.rowcount == 0:
        await db.rollback()
        return False
    record_event(db, "user_unbanned", actor_id=admin_id, entity_type="telegram_identity", entity_id=str(telegram_id))
    await db.commit()
    logger.info("Unbanned telegram id %s", telegram_id)
    return True


async def is_banned(db: AsyncSession, telegram_id: int) -> bool:
    return await db.get(BannedUser, telegram_id) is not None


async def list_bans(db: AsyncSession) -> List[BannedUser]:
    stmt = select(BannedUser).order_by(BannedUser.banned_at.desc())
    return list((await db.execute(stmt)).scalars().all())


async def list_links(db: AsyncSession) -> List[TelegramRegistration]:
    stmt = select(TelegramRegistration).order_by(TelegramRegistration.teamtalk_username)
    return list((await db.execute(stmt)).scalars().all())


async def unlink_and_ban(
    db: AsyncSession,
    telegram_id: int,
    admin_id: Optional[int],
    reason: str = ADMIN_PANEL_REASON,
) -> Optional[str]:
    """Removes the link for a chat identity and bans it. Returns the unlinked username."""
    link = await db.get(TelegramRegistration, telegram_id)
    username = link.teamtalk_username if link else None
    if link is not None:
        await db.delete(link)
    await ban_user(db, telegram_id, username=username, banned_by=admin_id, reason=reason)
    return username
