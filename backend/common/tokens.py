"""Single-use, time-boxed tokens for file downloads and deeplink invitations.

Only the SHA-256 of a raw token is stored. Redemption is a conditional
``UPDATE ... WHERE is_used = 0 AND expires_at > now`` so concurrent redeemers
of the same token get exactly one winner.
"""
import hashlib
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.errors import AlreadyUsed, Expired, PayloadMissing, TokenNotFound
from common.models import DeeplinkToken, DownloadToken, DownloadTokenType, TokenKind, utc_now

logger = logging.getLogger(__name__)


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.strip().encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class DownloadPayload:
    filepath: str
    original_filename: str
    token_type: DownloadTokenType


@dataclass(frozen=True)
class IssuedToken:
    token: str
    kind: TokenKind
    expires_at: datetime


def _expires_at(ttl_seconds: int, now: Optional[datetime] = None) -> datetime:
    return (now or utc_now()) + timedelta(seconds=ttl_seconds)


def _classify_failure(row, now: datetime) -> Exception:
    if row is None:
        return TokenNotFound("token not found")
    if row.is_used:
        return AlreadyUsed("token already used")
    if row.expires_at <= now:
        return Expired("token expired")
    # Row exists, unused and live, yet the update lost: another redeemer won.
    return AlreadyUsed("token already used")


async def issue_download_token(
    db: AsyncSession,
    payload: DownloadPayload,
    ttl_seconds: Optional[int] = None,
) -> IssuedToken:
    raw_token = secrets.token_urlsafe(24)
    ttl = settings.GENERATED_FILE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    now = utc_now()
    record = DownloadToken(
        token=hash_token(raw_token),
        filepath_on_server=payload.filepath,
        original_filename=payload.original_filename,
        token_type=payload.token_type.value,
        created_at=now,
        expires_at=_expires_at(ttl, now),
        is_used=False,
    )
    db.add(record)
    await db.commit()
    return IssuedToken(token=raw_token, kind=TokenKind.download, expires_at=record.expires_at)


async def issue_deeplink_token(
    db: AsyncSession,
    admin_id: Optional[int],
    ttl_seconds: Optional[int] = None,
) -> IssuedToken:
    raw_token = secrets.token_urlsafe(24)
    ttl = settings.DEEPLINK_TOKEN_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    now = utc_now()
    record = DeeplinkToken(
        token=hash_token(raw_token),
        created_at=now,
        expires_at=_expires_at(ttl, now),
        is_used=False,
        generated_by_admin_id=admin_id,
    )
    db.add(record)
    await db.commit()
    return IssuedToken(token=raw_token, kind=TokenKind.deeplink, expires_at=record.expires_at)


async def issue(db: AsyncSession, kind: TokenKind, payload_ref, ttl_seconds: Optional[int] = None) -> IssuedToken:
    if kind == TokenKind.download:
        return await issue_download_token(db, payload_ref, ttl_seconds)
    return await issue_deeplink_token(db, payload_ref, ttl_seconds)


async def redeem_download_token(
    db: AsyncSession,
    raw_token: str,
    expected_type: Optional[DownloadTokenType] = None,
) -> DownloadPayload:
    """Marks a download token used and returns its payload.

    A token whose backing file is gone fails with PayloadMissing and is spent,
    so artifacts of abandoned requests are never reachable.
    """
    token_hash = hash_token(raw_token)
    now = utc_now()
    row = (await db.execute(select(DownloadToken).where(DownloadToken.token == token_hash))).scalar_one_or_none()
    if row is None:
        raise TokenNotFound("token not found")
    if expected_type is not None and row.token_type != expected_type.value:
        raise TokenNotFound("token type mismatch")

    res = await db.execute(
        update(DownloadToken)
        .where(
            DownloadToken.token == token_hash,
            DownloadToken.is_used.is_(False),
            DownloadToken.expires_at > now,
        )
        .values(is_used=True)
    )
    if res.rowcount != 1:
        await db.rollback()
        # Classify against the committed row state; cleanup may have purged it.
        stmt = select(DownloadToken).where(DownloadToken.token == token_hash).execution_options(populate_existing=True)
        current = (await db.execute(stmt)).scalar_one_or_none()
        raise _classify_failure(current, now)
    await db.commit()

    if not os.path.isfile(row.filepath_on_server):
        logger.warning("Download token redeemed but payload is missing: %s", row.original_filename)
        raise PayloadMissing("payload no longer available")
    return DownloadPayload(
        filepath=row.filepath_on_server,
        original_filename=row.original_filename,
        token_type=DownloadTokenType(row.token_type),
    )


async def redeem_deeplink_token(db: AsyncSession, raw_token: str) -> Optional[int]:
    """Consumes an invitation and returns the issuing admin id."""
    token_hash = hash_token(raw_token)
    now = utc_now()
    res = await db.execute(
        update(DeeplinkToken)
        .where(
            DeeplinkToken.token == token_hash,
            DeeplinkToken.is_used.is_(False),
            DeeplinkToken.expires_at > now,
        )
        .values(is_used=True)
    )
    if res.rowcount != 1:
        await db.rollback()
        row = (await db.execute(select(DeeplinkToken).where(DeeplinkToken.token == token_hash))).scalar_one_or_none()
        raise _classify_failure(row, now)
    await db.commit()
    row = (await db.execute(select(DeeplinkToken).where(DeeplinkToken.token == token_hash))).scalar_one()
    return row.generated_by_admin_id


async def redeem(db: AsyncSession, kind: TokenKind, raw_token: str):
    if kind == TokenKind.download:
        return await redeem_download_token(db, raw_token)
    return await redeem_deeplink_token(db, raw_token)


async def purge_tokens(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """Deletes used or expired tokens and the files behind download tokens."""
    now = now or utc_now()
    stale = or_(DownloadToken.is_used.is_(True), DownloadToken.expires_at <= now)
    rows = (await db.execute(select(DownloadToken).where(stale))).scalars().all()
    removed_files = remove_files([row.filepath_on_server for row in rows])
    downloads = (await db.execute(delete(DownloadToken).where(stale))).rowcount
    deeplinks = (
        await db.execute(
            delete(DeeplinkToken).where(or_(DeeplinkToken.is_used.is_(True), DeeplinkToken.expires_at <= now))
        )
    ).rowcount
    await db.commit()
    return {"download_tokens": downloads, "deeplink_tokens": deeplinks, "files": removed_files}


def remove_files(paths: List[str]) -> int:
    removed = 0
    for path in set(paths):
        try:
            os.remove(path)
            removed += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning("Could not remove generated file %s: %s", path, e)
    return removed
