import asyncio
import logging
import json
import uuid
from datetime import timedelta
from typing import Dict, List, Tuple

import redis.asyncio as redis
from sqlalchemy import delete, update

from common.config import settings
from common.assets import purge_old_temp_files
from common.bans import DIRECTORY_REMOVAL_REASON, list_links
from common.db import AsyncSessionLocal, run_migrations
from common.directory import directory_client
from common.errors import DirectoryUnavailable
from common.events import record_event
from common.models import (
    BannedUser, EventLog, PendingTelegramRegistration, PendingWebRegistration,
    RegisteredIp, TelegramRegistration, utc_now,
)
from common.telegram import TelegramNotifier, escape_html
from common.tokens import purge_tokens

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger("worker")

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
notifier = TelegramNotifier()

DEFAULT_QUEUE = "default_queue"
DLQ = "dead_letter_queue"
MAX_ATTEMPTS = 5

TOPIC_BAN_SYNC = "directory.ban_sync"
TOPIC_DB_CLEANUP = "db.cleanup"


def periodic_topics() -> List[Tuple[str, int]]:
    topics = [(TOPIC_DB_CLEANUP, settings.DB_CLEANUP_INTERVAL_SECONDS)]
    if settings.BAN_SYNC_ENABLED:
        topics.append((TOPIC_BAN_SYNC, settings.BAN_SYNC_INTERVAL_SECONDS))
    return topics


async def _emit_worker_event(
    event_type: str,
    topic: str,
    job_id: str,
    attempt: int,
    queue: str,
    max_attempts: int = MAX_ATTEMPTS,
    extra: dict | None = None,
):
    payload = {
        "topic": topic,
        "job_id": job_id,
        "attempt": attempt,
        "max_attempts": max_attempts,
        "queue": queue,
    }
    if extra:
        payload.update(extra)
    try:
        async with AsyncSessionLocal() as db:
            db.add(EventLog(
                id=str(uuid.uuid4()),
                request_id=f"job_{job_id}",
                actor_id="system",
                event_type=event_type,
                payload_json=payload,
                created_at=utc_now(),
            ))
            await db.commit()
    except Exception as log_error:
        logger.error(f"Failed to emit worker event {event_type} for {job_id}: {log_error}")


async def enqueue_job(topic: str, payload: dict | None = None) -> str:
    job_id = str(uuid.uuid4())
    await redis_client.rpush(DEFAULT_QUEUE, json.dumps({"job_id": job_id, "topic": topic, "payload": payload or {}}))
    return job_id


async def process_job(job_data: dict):
    topic = job_data.get("topic")
    payload = job_data.get("payload", {})
    job_id = job_data.get("job_id")
    attempt = job_data.get("attempt", 1)

    logger.info(f"Processing job: {topic} (id: {job_id}, attempt: {attempt})")

    try:
        if topic == TOPIC_BAN_SYNC:
            result = await handle_ban_sync(job_id, payload)
        elif topic == TOPIC_DB_CLEANUP:
            result = await handle_db_cleanup(job_id, payload)
        else:
            logger.warning(f"Unknown topic: {topic}")
            return
        await _emit_worker_event(
            event_type="worker_topic_completed",
            topic=topic,
            job_id=job_id,
            attempt=attempt,
            max_attempts=MAX_ATTEMPTS,
            queue=DEFAULT_QUEUE,
            extra={"result": result},
        )

    except Exception as e:
        logger.error(f"Job failed (attempt {attempt}): {e}")
        if attempt < MAX_ATTEMPTS:
            job_data["attempt"] = attempt + 1
            wait_time = min(2 ** attempt, 60)
            logger.info(f"Retrying in {wait_time}s...")
            await _emit_worker_event(
                event_type="worker_retry_scheduled",
                topic=topic,
                job_id=job_id,
                attempt=attempt,
                max_attempts=MAX_ATTEMPTS,
                queue=DEFAULT_QUEUE,
                extra={"delay_seconds": wait_time, "error": str(e)},
            )
            await asyncio.sleep(wait_time)
            await redis_client.rpush(DEFAULT_QUEUE, json.dumps(job_data))
        else:
            logger.error(f"Max attempts reached for job {job_id}. Moving to DLQ.")
            await _emit_worker_event(
                event_type="worker_moved_to_dlq",
                topic=topic,
                job_id=job_id,
                attempt=attempt,
                max_attempts=MAX_ATTEMPTS,
                queue=DLQ,
                extra={"error": str(e)},
            )
            await redis_client.rpush(DLQ, json.dumps(job_data))


async def handle_ban_sync(job_id: str, payload: dict) -> Dict[str, int]:
    """Bans chat identities whose linked account vanished from the directory.

    Links are snapshotted before the listing call and no session is open while
    the directory is queried. Every link in the snapshot had its account
    created before the listing began, so a missing username is a real removal.
    """
    async with AsyncSessionLocal() as db:
        snapshot = [
            (row.telegram_id, row.teamtalk_username)
            for row in await list_links(db)
        ]

    try:
        accounts = await directory_client.list_accounts()
    except DirectoryUnavailable as e:
        logger.warning(f"Ban sync skipped: directory listing failed: {e}")
        await _emit_worker_event(
            event_type="ban_sync_skipped", topic=TOPIC_BAN_SYNC, job_id=job_id, attempt=1,
            queue=DEFAULT_QUEUE, extra={"reason": "directory_unavailable", "error": str(e)},
        )
        return {"checked": len(snapshot), "banned": 0, "skipped": 1}

    if not accounts and snapshot:
        logger.warning("Ban sync skipped: directory returned no accounts while %s links exist", len(snapshot))
        await _emit_worker_event(
            event_type="ban_sync_skipped", topic=TOPIC_BAN_SYNC, job_id=job_id, attempt=1,
            queue=DEFAULT_QUEUE, extra={"reason": "empty_listing", "links": len(snapshot)},
        )
        return {"checked": len(snapshot), "banned": 0, "skipped": 1}

    live = {account.username for account in accounts}
    gaps = [(telegram_id, username) for telegram_id, username in snapshot if username not in live]
    banned: List[Tuple[int, str]] = []

    async with AsyncSessionLocal() as db:
        for telegram_id, username in gaps:
            res = await db.execute(
                delete(TelegramRegistration).where(
                    TelegramRegistration.telegram_id == telegram_id,
                    TelegramRegistration.teamtalk_username == username,
                )
            )
            if res.rowcount == 0:
                # Link changed since the snapshot.
                continue
            await db.merge(BannedUser(
                telegram_id=telegram_id,
                teamtalk_username=username,
                banned_at=utc_now(),
                banned_by_admin_id=None,
                reason=DIRECTORY_REMOVAL_REASON,
            ))
            record_event(
                db, "ban_sync_banned", request_id=f"job_{job_id}", entity_type="telegram_identity",
                entity_id=str(telegram_id), payload={"username": username},
            )
            await db.commit()
            banned.append((telegram_id, username))

    for telegram_id, username in banned:
        logger.info(f"Ban sync: {username} missing from directory, banned telegram id {telegram_id}")
        await notifier.notify_user(
            telegram_id,
            f"Your TeamTalk account <code>{escape_html(username)}</code> was deleted from the server. "
            f"Registration through this bot is no longer available to you.",
        )
        await notifier.notify_admins(
            f"Account <code>{escape_html(username)}</code> disappeared from TeamTalk; "
            f"telegram id <code>{telegram_id}</code> was banned.",
        )
    return {"checked": len(snapshot), "banned": len(banned), "skipped": 0}


async def handle_db_cleanup(job_id: str, payload: dict) -> Dict[str, int]:
    now = utc_now()
    pending_cutoff = now - timedelta(seconds=settings.PENDING_REG_TTL_SECONDS)
    ip_cutoff = now - timedelta(seconds=settings.REGISTERED_IP_TTL_SECONDS)
    claim_cutoff = now - timedelta(seconds=settings.PROVISION_CLAIM_TIMEOUT_SECONDS)

    async with AsyncSessionLocal() as db:
        token_stats = await purge_tokens(db, now)

        expired_pending = 0
        released_claims = 0
        for model in (PendingTelegramRegistration, PendingWebRegistration):
            expired_pending += (await db.execute(delete(model).where(model.created_at < pending_cutoff))).rowcount
            released_claims += (await db.execute(
                update(model).where(model.claimed_at < claim_cutoff).values(claimed_at=None, claimed_by=None)
            )).rowcount
        expired_ips = (
            await db.execute(delete(RegisteredIp).where(RegisteredIp.registration_timestamp < ip_cutoff))
        ).rowcount

        stats = {
            "download_tokens": token_stats["download_tokens"],
            "deeplink_tokens": token_stats["deeplink_tokens"],
            "expired_pending": expired_pending,
            "released_claims": released_claims,
            "expired_ips": expired_ips,
        }
        record_event(db, "db_cleanup_completed", request_id=f"job_{job_id}", payload=stats)
        await db.commit()

    stats["files"] = token_stats["files"] + purge_old_temp_files(settings.GENERATED_FILE_TTL_SECONDS)
    if released_claims:
        logger.warning(f"Released {released_claims} stale provisioning claim(s)")
    logger.info(f"Cleanup complete: {stats}")
    return stats


async def schedule_periodic_jobs() -> List[str]:
    """Enqueues periodic topics whose interval lock has lapsed.

    The lock lives in redis so several workers schedule each topic once.
    """
    scheduled = []
    for topic, interval in periodic_topics():
        acquired = await redis_client.set(f"schedule:{topic}", utc_now().isoformat(), nx=True, ex=max(interval, 1))
        if acquired:
            await enqueue_job(topic)
            scheduled.append(topic)
    return scheduled


async def worker_loop():
    logger.info("Worker started, listening for jobs...")
    while True:
        try:
            await schedule_periodic_jobs()
            result = await redis_client.blpop(DEFAULT_QUEUE, timeout=5)
            if result:
                _, raw_data = result
                job_data = json.loads(raw_data)
                await process_job(job_data)
        except Exception as e:
            logger.error(f"Error in worker loop: {e}")
            await asyncio.sleep(5)

if __name__ == "__main__":
    run_migrations()
    asyncio.run(worker_loop())
