import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import FileResponse
from sqlalchemy import delete, func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from api.bot import ChatDelivery, RegistrationBot, build_invite_link, download_url
from api.schemas import (
    BanCreate, BanView, DecisionRequest, DecisionResponse, DeeplinkCreateResponse, DeliveryLinks,
    JobEnqueuedResponse, MetricsResponse, PendingRequestView, QuickConnectResponse,
    TelegramWebhookResponse, WebRegistrationRequest, WebRegistrationResponse,
)
from common.approval import ApprovalWorkflow, Decision
from common.bans import ban_user, list_bans, unban_user
from common.config import settings
from common.db import get_db, run_migrations
from common.directory import directory_client
from common.errors import (
    AlreadyHandled, ConflictError, DirectoryUnavailable, Expired, AlreadyUsed, InconsistentState,
    PayloadMissing, ProvisionFailed, RegistrationError, StaleActionError, TokenNotFound, ValidationError,
)
from common.events import record_event
from common.intake import ChatIntake, WebIntake, WebSubmission
from common.models import (
    Channel, DownloadTokenType, EventLog, PendingTelegramRegistration, PendingWebRegistration, utc_now,
)
from common.provisioning import ProvisionedAccount, Provisioner, find_pending
from common.telegram import TelegramNotifier, parse_update, send_message, verify_telegram_secret
from common.tokens import issue_deeplink_token, redeem_download_token

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

DEFAULT_QUEUE = "default_queue"
DLQ = "dead_letter_queue"
TOPIC_BAN_SYNC = "directory.ban_sync"


@asynccontextmanager
async def lifespan(app: FastAPI):
    await asyncio.to_thread(run_migrations)
    yield


app = FastAPI(title="TeamTalk Registration API", lifespan=lifespan)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

# Registration services
notifier = TelegramNotifier()
delivery = ChatDelivery()
provisioner = Provisioner(directory_client, notifier)
approval = ApprovalWorkflow(provisioner, notifier, delivery)
chat_intake = ChatIntake(directory_client)
web_intake = WebIntake(directory_client)


def get_bot() -> RegistrationBot:
    return RegistrationBot(redis_client, directory_client, chat_intake, provisioner, approval, delivery)


def _http_error(error: RegistrationError) -> HTTPException:
    """Maps a registration outcome onto the HTTP status the caller sees."""
    if isinstance(error, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, (ConflictError, AlreadyHandled)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, DirectoryUnavailable):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(error, (Expired, AlreadyUsed, PayloadMissing)):
        code = status.HTTP_410_GONE
    elif isinstance(error, TokenNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, ProvisionFailed):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(error, InconsistentState):
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail={"code": error.code, "message": str(error)})


# --- Middleware & Dependencies ---

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

async def get_authenticated_admin(request: Request) -> Optional[int]:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid authorization header")
    token = auth_header.split(" ")[1]
    mapped_admin = settings.token_user_map.get(token)
    if mapped_admin:
        try:
            return int(mapped_admin)
        except ValueError:
            return None
    if token not in settings.auth_tokens:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return None

async def enforce_rate_limit(client_key: str, endpoint_class: str, limit: int):
    key = f"rate_limit:{endpoint_class}:{client_key}"
    current = await redis_client.incr(key)
    if current == 1:
        await redis_client.expire(key, settings.RATE_LIMIT_WINDOW_SECONDS)
    if current > limit:
        ttl = await redis_client.ttl(key)
        if ttl is None or ttl < 0:
            ttl = settings.RATE_LIMIT_WINDOW_SECONDS
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded for {endpoint_class}. Retry in {ttl}s.",
        )

def client_ip(request: Request) -> str:
    if settings.WEB_PROXY_HEADERS:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("X-Real-IP")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return request.client.host if request.client else "unknown"

async def _enqueue_job(topic: str, payload: Optional[Dict[str, Any]] = None) -> str:
    job_id = str(uuid.uuid4())
    await redis_client.rpush(DEFAULT_QUEUE, json.dumps({"job_id": job_id, "topic": topic, "payload": payload or {}}))
    return job_id


def _download_links(account: ProvisionedAccount) -> DeliveryLinks:
    config = account.tokens.get(DownloadTokenType.tt_config.value)
    return DeliveryLinks(
        config_url=download_url(account, DownloadTokenType.tt_config),
        quick_connect_url=download_url(account, DownloadTokenType.tt_link),
        client_zip_url=download_url(account, DownloadTokenType.client_zip),
        expires_at=config.expires_at if config else None,
    )


def _pending_view(row) -> PendingRequestView:
    return PendingRequestView(
        request_key=row.request_key,
        channel=row.channel.value,
        username=row.username,
        nickname=row.nickname,
        registrant_id=getattr(row, "registrant_telegram_id", None),
        ip_address=getattr(row, "ip_address", None),
        created_at=row.created_at,
        claimed_at=row.claimed_at,
    )


# --- Health Endpoints ---

@app.get("/health/live")
async def health_live():
    return {"status": "ok"}

@app.get("/health/ready")
async def health_ready(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        await redis_client.ping()
    except Exception:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Infrastructure unreachable")
    return {"status": "ready"}

@app.get("/health/metrics", response_model=MetricsResponse, dependencies=[Depends(get_authenticated_admin)])
async def health_metrics(db: AsyncSession = Depends(get_db)):
    window_hours = settings.OPERATIONS_METRICS_WINDOW_HOURS
    window_cutoff = utc_now() - timedelta(hours=window_hours)

    queue_depth = {
        DEFAULT_QUEUE: await redis_client.llen(DEFAULT_QUEUE),
        DLQ: await redis_client.llen(DLQ),
    }

    rows = (await db.execute(
        select(EventLog.event_type, func.count()).where(EventLog.created_at >= window_cutoff).group_by(EventLog.event_type)
    )).all()
    event_counters = {event_type: count for event_type, count in rows}

    pending_requests = 0
    for model in (PendingTelegramRegistration, PendingWebRegistration):
        pending_requests += (await db.execute(select(func.count()).select_from(model))).scalar_one()

    last_sync = None
    for event in (await db.execute(
        select(EventLog).where(EventLog.event_type == "worker_topic_completed")
        .order_by(EventLog.created_at.desc()).limit(200)
    )).scalars().all():
        if (event.payload_json or {}).get("topic") == TOPIC_BAN_SYNC and event.created_at:
            last_sync = event.created_at.isoformat()
            break

    alerts: List[str] = []
    failures = event_counters.get("worker_retry_scheduled", 0) + event_counters.get("worker_moved_to_dlq", 0)
    if failures >= settings.WORKER_ALERT_FAILURE_THRESHOLD:
        alerts.append("worker_failures")
    if event_counters.get("provision_orphaned_account"):
        alerts.append("orphaned_accounts")
    if event_counters.get("provision_failed"):
        alerts.append("provision_failures")

    return MetricsResponse(
        window_hours=window_hours,
        queue_depth=queue_depth,
        event_counters=event_counters,
        pending_requests=pending_requests,
        last_ban_sync_at=last_sync,
        alerts=alerts,
    )


# --- Telegram ---

@app.post("/v1/integrations/telegram/webhook", response_model=TelegramWebhookResponse)
async def telegram_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    # 1. Validate secret
    if not verify_telegram_secret(request.headers):
        raise HTTPException(status_code=403, detail="Unauthorized webhook source")

    # 2. Parse update
    try:
        update_json = await request.json()
    except Exception:
        return {"status": "ignored"}

    data = parse_update(update_json)
    if not data or data.get("user_id") is None:
        return {"status": "ignored"}

    # 3. Route
    try:
        await get_bot().handle_update(data, db)
    except Exception as e:
        logger.error(f"Telegram routing failed: {e}")
        await send_message(data["chat_id"], "Sorry, something went wrong while processing that. Please try again later.")

    return {"status": "ok"}


# --- Web Registration ---

@app.post("/v1/web/register", response_model=WebRegistrationResponse, status_code=status.HTTP_201_CREATED)
async def web_register(request: Request, payload: WebRegistrationRequest, db: AsyncSession = Depends(get_db)):
    if not settings.WEB_REGISTRATION_ENABLED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Web registration is disabled")
    ip_address = client_ip(request)
    await enforce_rate_limit(ip_address, "web_register", settings.RATE_LIMIT_REGISTER_PER_WINDOW)

    submission = WebSubmission(
        username=payload.username,
        password=payload.password,
        ip_address=ip_address,
        nickname=payload.nickname,
        user_agent=request.headers.get("User-Agent"),
    )
    try:
        pending = await web_intake.submit(db, submission)
        account = await provisioner.provision_unclaimed(db, pending)
    except RegistrationError as e:
        logger.info("Web registration refused (%s): %s", e.code, e)
        raise _http_error(e)

    return WebRegistrationResponse(
        status="created",
        username=account.username,
        nickname=account.nickname,
        downloads=_download_links(account),
    )

@app.get("/download/{token}")
async def download_file(token: str, type: Optional[DownloadTokenType] = Query(None), db: AsyncSession = Depends(get_db)):
    try:
        payload = await redeem_download_token(db, token, expected_type=type)
    except StaleActionError as e:
        raise _http_error(e)
    media_type = "application/zip" if payload.token_type == DownloadTokenType.client_zip else "application/octet-stream"
    return FileResponse(payload.filepath, filename=payload.original_filename, media_type=media_type)

@app.get("/link/{token}", response_model=QuickConnectResponse)
async def quick_connect_link(token: str, db: AsyncSession = Depends(get_db)):
    try:
        payload = await redeem_download_token(db, token, expected_type=DownloadTokenType.tt_link)
    except StaleActionError as e:
        raise _http_error(e)
    with open(payload.filepath, "r", encoding="utf-8") as handle:
        return QuickConnectResponse(tt_link=handle.read().strip())


# --- Admin Endpoints ---

@app.get("/v1/admin/pending", response_model=List[PendingRequestView])
async def list_pending(admin_id: Optional[int] = Depends(get_authenticated_admin), db: AsyncSession = Depends(get_db)):
    views = []
    for model in (PendingTelegramRegistration, PendingWebRegistration):
        rows = (await db.execute(select(model).order_by(model.created_at))).scalars().all()
        views.extend(_pending_view(row) for row in rows)
    return views

@app.post("/v1/admin/pending/{request_key}/decision", response_model=DecisionResponse)
async def decide_pending(
    request_key: str,
    payload: DecisionRequest,
    admin_id: Optional[int] = Depends(get_authenticated_admin),
    db: AsyncSession = Depends(get_db),
):
    decision = Decision(payload.decision)
    pending = await find_pending(db, request_key)
    if pending is None:
        raise _http_error(AlreadyHandled("request already handled"))
    try:
        if pending.channel == Channel.chat:
            outcome = await approval.decide(db, request_key, decision, admin_id)
            username = outcome.username
        elif decision == Decision.approve:
            account = await provisioner.provision_unclaimed(db, pending, actor_id=admin_id)
            username = account.username
        else:
            username = pending.username
            res = await db.execute(
                delete(PendingWebRegistration).where(
                    PendingWebRegistration.request_key == request_key,
                    PendingWebRegistration.claimed_at.is_(None),
                )
            )
            if res.rowcount != 1:
                await db.rollback()
                raise AlreadyHandled("request already handled")
            record_event(
                db, "registration_rejected", actor_id=admin_id, entity_type="pending_registration",
                entity_id=request_key, payload={"username": username},
            )
            await db.commit()
    except RegistrationError as e:
        raise _http_error(e)
    return DecisionResponse(status="ok", decision=decision.value, request_key=request_key, username=username)

@app.get("/v1/admin/bans", response_model=List[BanView], dependencies=[Depends(get_authenticated_admin)])
async def get_bans(db: AsyncSession = Depends(get_db)):
    return [
        BanView(
            telegram_id=ban.telegram_id,
            username=ban.teamtalk_username,
            banned_at=ban.banned_at,
            banned_by_admin_id=ban.banned_by_admin_id,
            reason=ban.reason,
        )
        for ban in await list_bans(db)
    ]

@app.post("/v1/admin/bans", response_model=BanView, status_code=status.HTTP_201_CREATED)
async def create_ban(payload: BanCreate, admin_id: Optional[int] = Depends(get_authenticated_admin), db: AsyncSession = Depends(get_db)):
    ban = await ban_user(db, payload.telegram_id, username=payload.username, banned_by=admin_id, reason=payload.reason)
    return BanView(
        telegram_id=ban.telegram_id,
        username=ban.teamtalk_username,
        banned_at=ban.banned_at,
        banned_by_admin_id=ban.banned_by_admin_id,
        reason=ban.reason,
    )

@app.delete("/v1/admin/bans/{telegram_id}")
async def delete_ban(telegram_id: int, admin_id: Optional[int] = Depends(get_authenticated_admin), db: AsyncSession = Depends(get_db)):
    if not await unban_user(db, telegram_id, admin_id=admin_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not banned")
    return {"status": "ok", "telegram_id": telegram_id}

@app.post("/v1/admin/deeplinks", response_model=DeeplinkCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_deeplink(admin_id: Optional[int] = Depends(get_authenticated_admin), db: AsyncSession = Depends(get_db)):
    if not settings.TELEGRAM_DEEPLINK_REGISTRATION_ENABLED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invitation links are disabled")
    issued = await issue_deeplink_token(db, admin_id)
    return DeeplinkCreateResponse(token=issued.token, expires_at=issued.expires_at, deep_link=build_invite_link(issued.token))

@app.post("/v1/admin/ban_sync", response_model=JobEnqueuedResponse, status_code=status.HTTP_202_ACCEPTED, dependencies=[Depends(get_authenticated_admin)])
async def trigger_ban_sync():
    job_id = await _enqueue_job(TOPIC_BAN_SYNC)
    return JobEnqueuedResponse(status="enqueued", job_id=job_id, topic=TOPIC_BAN_SYNC)
