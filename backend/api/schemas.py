from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime


class WebRegistrationRequest(BaseModel):
    username: str = Field(..., max_length=128)
    password: str = Field(..., max_length=256)
    nickname: Optional[str] = Field(None, max_length=128)


class DeliveryLinks(BaseModel):
    config_url: Optional[str] = None
    quick_connect_url: Optional[str] = None
    client_zip_url: Optional[str] = None
    expires_at: Optional[datetime] = None


class WebRegistrationResponse(BaseModel):
    status: str
    username: str
    nickname: str
    downloads: DeliveryLinks


class QuickConnectResponse(BaseModel):
    tt_link: str


class PendingRequestView(BaseModel):
    request_key: str
    channel: str
    username: str
    nickname: str
    registrant_id: Optional[int] = None
    ip_address: Optional[str] = None
    created_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None


class DecisionRequest(BaseModel):
    decision: str = Field(..., pattern="^(approve|reject)$")


class DecisionResponse(BaseModel):
    status: str
    decision: str
    request_key: str
    username: str


class BanCreate(BaseModel):
    telegram_id: int
    username: Optional[str] = None
    reason: Optional[str] = None


class BanView(BaseModel):
    telegram_id: int
    username: Optional[str] = None
    banned_at: Optional[datetime] = None
    banned_by_admin_id: Optional[int] = None
    reason: Optional[str] = None


class DeeplinkCreateResponse(BaseModel):
    token: str
    expires_at: datetime
    deep_link: Optional[str] = None


class TelegramWebhookResponse(BaseModel):
    status: str


class JobEnqueuedResponse(BaseModel):
    status: str
    job_id: str
    topic: str


class MetricsResponse(BaseModel):
    window_hours: int
    queue_depth: Dict[str, int]
    event_counters: Dict[str, int]
    pending_requests: int
    last_ban_sync_at: Optional[str] = None
    alerts: List[str] = []
    extra: Dict[str, Any] = {}
