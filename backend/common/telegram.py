import logging
import httpx
from html import escape as _html_escape
from typing import Optional, Tuple, Dict, Any, List, Iterable, Protocol
from common.config import settings


def escape_html(text: str) -> str:
    """Escape <, >, & for Telegram HTML parse mode."""
    return _html_escape(str(text), quote=False)

logger = logging.getLogger(__name__)

TELEGRAM_TEXT_MAX_LEN = 4096
TELEGRAM_UPLOAD_MAX_BYTES = 49 * 1024 * 1024


def verify_telegram_secret(headers: Dict[str, str]) -> bool:
    if not settings.TELEGRAM_WEBHOOK_SECRET:
        return True
    return headers.get("X-Telegram-Bot-Api-Secret-Token") == settings.TELEGRAM_WEBHOOK_SECRET


def _sender_fields(sender: Dict[str, Any]) -> Dict[str, Any]:
    full_name = " ".join(
        part for part in (sender.get("first_name"), sender.get("last_name")) if part
    ).strip()
    return {
        "user_id": sender.get("id"),
        "username": sender.get("username"),
        "full_name": full_name or None,
        "language_code": sender.get("language_code"),
    }


def parse_update(update_json: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract basic update info from Telegram payload.
    Supports message and callback_query updates.
    """
    message = update_json.get("message")
    if message:
        chat = message.get("chat")
        text = message.get("text")
        if chat and text:
            sender = message.get("from") or chat
            data = {
                "kind": "message",
                "chat_id": str(chat.get("id")),
                "text": text,
                "message_id": message.get("message_id"),
            }
            data.update(_sender_fields(sender))
            if data["user_id"] is None:
                data["user_id"] = chat.get("id")
            return data

    callback = update_json.get("callback_query")
    if callback and isinstance(callback, dict):
        cb_message = callback.get("message") or {}
        cb_chat = cb_message.get("chat") or {}
        data = callback.get("data")
        if cb_chat and isinstance(data, str):
            from_user = callback.get("from") or {}
            parsed = {
                "kind": "callback",
                "chat_id": str(cb_chat.get("id")),
                "callback_query_id": callback.get("id"),
                "callback_data": data,
                "message_id": cb_message.get("message_id"),
                "text": "",
            }
            parsed.update(_sender_fields(from_user))
            if parsed["user_id"] is None:
                parsed["user_id"] = cb_chat.get("id")
            return parsed

    return None


def build_decision_markup(request_key: str) -> Dict[str, Any]:
    return {
        "inline_keyboard": [
            [
                {"text": "Approve", "callback_data": f"approve:{request_key}"},
                {"text": "Reject", "callback_data": f"reject:{request_key}"},
            ]
        ]
    }


def build_choice_markup(options: Iterable[Tuple[str, str]]) -> Dict[str, Any]:
    return {"inline_keyboard": [[{"text": label, "callback_data": data} for label, data in options]]}


def _bot_url(method: str) -> str:
    return f"{settings.TELEGRAM_API_BASE}/bot{settings.TELEGRAM_BOT_TOKEN}/{method}"


async def answer_callback_query(callback_query_id: str, text: Optional[str] = None) -> Dict[str, Any]:
    if not settings.TELEGRAM_BOT_TOKEN:
        return {"ok": False, "error": "token_missing"}
    payload: Dict[str, Any] = {"callback_query_id": callback_query_id}
    if text:
        payload["text"] = text[:200]
    try:
        async with httpx.AsyncClient(timeout=settings.TELEGRAM_COMMAND_TIMEOUT_SECONDS) as client:
            resp = await client.post(_bot_url("answerCallbackQuery"), json=payload)
            if resp.status_code < 400:
                return resp.json()
            logger.error(
                "Failed to answer callback query (status=%s, body=%s)",
                resp.status_code,
                resp.text,
            )
            return {"ok": False, "error": "telegram_callback_failed"}
    except Exception as e:
        logger.error(f"Failed to answer callback query: {e}")
        return {"ok": False, "error": str(e)}


async def edit_message(chat_id: str, message_id: int, text: str, reply_markup: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    if not settings.TELEGRAM_BOT_TOKEN:
        return {"ok": False, "error": "token_missing"}
    safe_text = (text or "")[:TELEGRAM_TEXT_MAX_LEN]
    payload: Dict[str, Any] = {
        "chat_id": chat_id,
        "message_id": message_id,
        "text": safe_text,
        "parse_mode": "HTML",
    }
    if isinstance(reply_markup, dict):
        payload["reply_markup"] = reply_markup
    try:
        async with httpx.AsyncClient(timeout=settings.TELEGRAM_COMMAND_TIMEOUT_SECONDS) as client:
            resp = await client.post(_bot_url("editMessageText"), json=payload)
            if resp.status_code < 400:
                return resp.json()
            logger.warning(
                "Telegram edit failed (status=%s, body=%s).",
                resp.status_code,
                resp.text,
            )
            return {"ok": False, "error": f"status_{resp.status_code}"}
    except Exception as e:
        logger.error(f"Failed to edit Telegram message: {e}")
        return {"ok": False, "error": str(e)}


async def send_message(chat_id: str, text: str, reply_markup: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Sends a message back to Telegram.
    """
    if not settings.TELEGRAM_BOT_TOKEN:
        logger.error("TELEGRAM_BOT_TOKEN not configured.")
        return {"ok": False, "error": "token_missing"}

    chunks = split_telegram_text(text or "", TELEGRAM_TEXT_MAX_LEN)
    if not chunks:
        chunks = [""]

    try:
        async with httpx.AsyncClient(timeout=settings.TELEGRAM_COMMAND_TIMEOUT_SECONDS) as client:
            last_json: Dict[str, Any] = {"ok": True}
            total_chunks = len(chunks)
            for idx, chunk in enumerate(chunks):
                payload: Dict[str, Any] = {
                    "chat_id": chat_id,
                    "text": chunk,
                    "parse_mode": "HTML",
                }
                # Keep inline controls on the final chunk only.
                if isinstance(reply_markup, dict) and idx == total_chunks - 1:
                    payload["reply_markup"] = reply_markup
                resp = await client.post(_bot_url("sendMessage"), json=payload)
                if resp.status_code < 400:
                    last_json = resp.json()
                    continue

                # Common 400 case is parse issues; retry once with plain text.
                logger.warning(
                    "Telegram send failed with HTML mode (status=%s, body=%s). Retrying without parse_mode.",
                    resp.status_code,
                    resp.text,
                )
                payload.pop("parse_mode", None)
                resp = await client.post(_bot_url("sendMessage"), json=payload)
                if resp.status_code < 400:
                    last_json = resp.json()
                    continue

                logger.error(
                    "Failed to send Telegram message (status=%s, body=%s)",
                    resp.status_code,
                    resp.text,
                )
                return {"ok": False, "error": "telegram_send_failed"}
            return last_json
    except Exception as e:
        logger.error(f"Failed to send Telegram message: {e}")
        return {"ok": False, "error": str(e)}


async def send_document(
    chat_id: str,
    filename: str,
    content: bytes,
    caption: Optional[str] = None,
) -> Dict[str, Any]:
    """Uploads a file to a chat. Telegram bots cannot upload more than ~50 MB."""
    if not settings.TELEGRAM_BOT_TOKEN:
        logger.error("TELEGRAM_BOT_TOKEN not configured.")
        return {"ok": False, "error": "token_missing"}
    if len(content) > TELEGRAM_UPLOAD_MAX_BYTES:
        logger.warning("Refusing to upload %s: %s bytes exceeds the bot limit", filename, len(content))
        return {"ok": False, "error": "file_too_large"}
    data: Dict[str, Any] = {"chat_id": chat_id}
    if caption:
        data["caption"] = caption[:1024]
        data["parse_mode"] = "HTML"
    try:
        async with httpx.AsyncClient(timeout=settings.TELEGRAM_COMMAND_TIMEOUT_SECONDS * 3) as client:
            resp = await client.post(_bot_url("sendDocument"), data=data, files={"document": (filename, content)})
            if resp.status_code < 400:
                return resp.json()
            logger.error(
                "Failed to send Telegram document (status=%s, body=%s)",
                resp.status_code,
                resp.text,
            )
            return {"ok": False, "error": "telegram_document_failed"}
    except Exception as e:
        logger.error(f"Failed to send Telegram document: {e}")
        return {"ok": False, "error": str(e)}


class Notifier(Protocol):
    async def notify_user(self, chat_id: Any, text: str, reply_markup: Optional[Dict[str, Any]] = None) -> None: ...

    async def notify_admins(
        self,
        text: str,
        reply_markup: Optional[Dict[str, Any]] = None,
        exclude: Optional[Iterable[Any]] = None,
    ) -> None: ...


class TelegramNotifier:
    """Delivers operator and requester notifications through the bot."""

    def __init__(self, admin_ids: Optional[Iterable[int]] = None):
        self._admin_ids = set(admin_ids) if admin_ids is not None else None

    @property
    def admin_ids(self) -> List[int]:
        ids = self._admin_ids if self._admin_ids is not None else settings.admin_ids
        return sorted(ids)

    async def notify_user(self, chat_id: Any, text: str, reply_markup: Optional[Dict[str, Any]] = None) -> None:
        result = await send_message(str(chat_id), text, reply_markup=reply_markup)
        if not result.get("ok"):
            logger.warning("Notification to %s not delivered: %s", chat_id, result.get("error"))

    async def notify_admins(
        self,
        text: str,
        reply_markup: Optional[Dict[str, Any]] = None,
        exclude: Optional[Iterable[Any]] = None,
    ) -> None:
        skip = {str(item) for item in (exclude or [])}
        if not self.admin_ids:
            logger.warning("No TELEGRAM_ADMIN_IDS configured; admin notification dropped: %s", text[:120])
            return
        for admin_id in self.admin_ids:
            if str(admin_id) in skip:
                continue
            await self.notify_user(admin_id, text, reply_markup=reply_markup)


def extract_command(text: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Parses a string for a command like /start arg1 arg2.
    Returns (command, args_string).
    """
    if not text.startswith("/"):
        return None, None

    parts = text.split(maxsplit=1)
    command = parts[0].lower().split("@")[0]  # strip @botname suffix
    args = parts[1] if len(parts) > 1 else None
    return command, args


def split_telegram_text(text: str, max_len: int = TELEGRAM_TEXT_MAX_LEN) -> List[str]:
    """Split long text into Telegram-safe chunks while preferring line boundaries."""
    if len(text) <= max_len:
        return [text]

    lines = text.splitlines(keepends=True)
    chunks: List[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current:
            chunks.append(current)
            current = ""

    for line in lines:
        if len(line) > max_len:
            flush()
            remaining = line
            while len(remaining) > max_len:
                split_at = remaining.rfind(" ", 0, max_len)
                if split_at <= 0:
                    split_at = max_len
                chunks.append(remaining[:split_at])
                remaining = remaining[split_at:]
            if remaining:
                current = remaining
            continue

        if len(current) + len(line) > max_len:
            flush()
        current += line

    flush()
    return chunks if chunks else [text[:max_len]]
