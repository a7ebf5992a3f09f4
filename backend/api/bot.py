"""Telegram conversation: registration dialogue, admin commands, decisions.

Dialogue state lives in redis under ``tg:dialog:<user_id>`` with a TTL; the
password is sealed with the pending-password cipher before it is stored.
"""
import json
import logging
import os
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from common.approval import ApprovalWorkflow, Decision
from common.bans import ban_user, is_banned, list_bans, unban_user, unlink_and_ban
from common.config import settings
from common.crypto import open_secret, seal_secret
from common.directory import DirectoryClient
from common.errors import (
    AlreadyHandled, AlreadyRegistered, ApprovedButProvisionFailed, DirectoryUnavailable,
    InconsistentState, ProvisionFailed, RegistrantBanned, RegistrationError, RequestAlreadyPending,
    StaleActionError, UsernameTaken, ValidationError,
)
from common.intake import ChatIntake, ChatSubmission
from common.models import DownloadTokenType, PendingTelegramRegistration, PendingWebRegistration
from common.provisioning import ProvisionedAccount, Provisioner
from common.telegram import (
    TELEGRAM_UPLOAD_MAX_BYTES, answer_callback_query, build_choice_markup, build_decision_markup,
    edit_message, escape_html, extract_command, send_document, send_message,
)
from common.tokens import issue_deeplink_token, redeem_deeplink_token

logger = logging.getLogger(__name__)

DEFAULT_QUEUE = "default_queue"
TOPIC_BAN_SYNC = "directory.ban_sync"

STEP_USERNAME = "username"
STEP_PASSWORD = "password"
STEP_NICKNAME = "nickname"
STEP_ACCOUNT_TYPE = "account_type"

CB_SKIP_NICKNAME = "reg:skip_nick"
CB_TYPE_USER = "reg:type:user"
CB_TYPE_ADMIN = "reg:type:admin"

ADMIN_HELP = (
    "<b>Admin commands</b>\n"
    "/pending - Requests awaiting a decision\n"
    "/banlist - Banned Telegram ids\n"
    "/ban &lt;telegram_id&gt; [reason] - Ban an id\n"
    "/unban &lt;telegram_id&gt; - Lift a ban\n"
    "/unlink &lt;telegram_id&gt; - Remove a registration and ban the id\n"
    "/accounts - List TeamTalk accounts\n"
    "/delete_account &lt;username&gt; - Delete a TeamTalk account\n"
    "/invite - Create a single-use invitation link\n"
    "/sync - Run the ban sync now"
)

USER_HELP = (
    "/start - Register a TeamTalk account\n"
    "/cancel - Abandon the current registration"
)

ERROR_MESSAGES = {
    ValidationError.code: "That value cannot be empty. Please try again with /start.",
    UsernameTaken.code: "This username is already taken. Please start again with /start and pick another one.",
    AlreadyRegistered.code: "You already have a registered TeamTalk account.",
    RequestAlreadyPending.code: "Your previous request is still waiting for an administrator.",
    DirectoryUnavailable.code: "The TeamTalk server is not reachable right now. Please try again later.",
    ProvisionFailed.code: "Your account could not be created right now. An administrator has been notified.",
    InconsistentState.code: "Your account was created but could not be saved. An administrator has been notified.",
}


def dialog_key(user_id: int) -> str:
    return f"tg:dialog:{user_id}"


def build_source_info(data: Dict[str, Any], invited_by: Optional[int] = None) -> str:
    info = "lang={};tg_username={};fullname={}".format(
        data.get("language_code") or "",
        data.get("username") or "",
        data.get("full_name") or "",
    )
    if invited_by is not None:
        info += f";invited_by={invited_by}"
    return info


def parse_decision_callback(callback_data: str) -> tuple[Optional[Decision], Optional[str]]:
    # Expected format: <approve|reject>:<request_key>
    action, _, request_key = (callback_data or "").partition(":")
    if action not in {"approve", "reject"} or not request_key.strip():
        return None, None
    return Decision(action), request_key.strip()


def build_invite_link(raw_token: str) -> Optional[str]:
    if settings.TELEGRAM_BOT_USERNAME:
        return f"https://t.me/{settings.TELEGRAM_BOT_USERNAME}?start={raw_token}"
    return None


def download_url(account: ProvisionedAccount, token_type: DownloadTokenType) -> Optional[str]:
    issued = account.tokens.get(token_type.value)
    if issued is None:
        return None
    base = settings.WEB_PUBLIC_BASE_URL.rstrip("/")
    if token_type == DownloadTokenType.tt_link:
        return f"{base}/link/{issued.token}"
    return f"{base}/download/{issued.token}?type={token_type.value}"


class ChatDelivery:
    """Sends the connection file, quick-connect link and client zip to the requester.

    When Telegram refuses an upload, the single-use download links are sent instead.
    """

    async def deliver(self, account: ProvisionedAccount) -> None:
        chat_id = str(account.registrant_id)
        caption = (
            f"Your TeamTalk account <b>{escape_html(account.username)}</b> is ready. "
            f"Open the attached file to connect."
        )
        sent = await send_document(chat_id, account.tt_filename, account.tt_content.encode("utf-8"), caption=caption)
        if not sent.get("ok"):
            logger.error("Connection file for %s not delivered: %s", account.username, sent.get("error"))
            await self._send_links(chat_id, account, (DownloadTokenType.tt_config, DownloadTokenType.client_zip))
            return
        if account.tt_link:
            await send_message(chat_id, f"Quick connect link:\n<code>{escape_html(account.tt_link)}</code>")
        if account.client_zip_path and os.path.isfile(account.client_zip_path):
            if os.path.getsize(account.client_zip_path) > TELEGRAM_UPLOAD_MAX_BYTES:
                logger.warning("Client zip for %s exceeds the upload limit; sending a link", account.username)
                await self._send_links(chat_id, account, (DownloadTokenType.client_zip,))
                return
            with open(account.client_zip_path, "rb") as handle:
                content = handle.read()
            sent = await send_document(chat_id, f"{account.username}_TeamTalk.zip", content, caption="Portable TeamTalk client")
            if not sent.get("ok"):
                logger.error("Client zip for %s not delivered: %s", account.username, sent.get("error"))
                await self._send_links(chat_id, account, (DownloadTokenType.client_zip,))

    async def _send_links(self, chat_id: str, account: ProvisionedAccount, token_types) -> None:
        labels = {
            DownloadTokenType.tt_config: "Connection file",
            DownloadTokenType.client_zip: "Portable client",
        }
        lines = []
        for token_type in token_types:
            url = download_url(account, token_type)
            if url:
                lines.append(f"{labels[token_type]}: {escape_html(url)}")
        if not lines:
            await send_message(
                chat_id,
                f"Your TeamTalk account <b>{escape_html(account.username)}</b> was created, but the files could not "
                f"be sent. Please contact an administrator.",
            )
            return
        await send_message(
            chat_id,
            f"Your TeamTalk account <b>{escape_html(account.username)}</b> is ready. "
            f"Download your files (each link works once):\n" + "\n".join(lines),
        )


class RegistrationBot:
    def __init__(
        self,
        redis_client,
        directory: DirectoryClient,
        intake: ChatIntake,
        provisioner: Provisioner,
        approval: ApprovalWorkflow,
        delivery: Optional[ChatDelivery] = None,
    ):
        self.redis = redis_client
        self.directory = directory
        self.intake = intake
        self.provisioner = provisioner
        self.approval = approval
        self.delivery = delivery or ChatDelivery()

    def is_admin(self, user_id: int) -> bool:
        return self.intake.is_admin(user_id)

    # --- Dialogue state ---

    async def _load_dialog(self, user_id: int) -> Optional[Dict[str, Any]]:
        raw = await self.redis.get(dialog_key(user_id))
        if not raw:
            return None
        try:
            state = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return state if isinstance(state, dict) else None

    async def _save_dialog(self, user_id: int, state: Dict[str, Any]) -> None:
        await self.redis.setex(dialog_key(user_id), settings.DIALOG_TTL_SECONDS, json.dumps(state))

    async def _clear_dialog(self, user_id: int) -> None:
        await self.redis.delete(dialog_key(user_id))

    # --- Entry point ---

    async def handle_update(self, data: Dict[str, Any], db: AsyncSession) -> None:
        if data.get("kind") == "callback":
            await self.handle_callback(data, db)
        else:
            await self.handle_message(data, db)

    async def handle_message(self, data: Dict[str, Any], db: AsyncSession) -> None:
        chat_id = data["chat_id"]
        user_id = int(data["user_id"])
        text = (data.get("text") or "").strip()
        admin = self.is_admin(user_id)

        if not admin and await is_banned(db, user_id):
            logger.info("Ignoring message from banned telegram id %s", user_id)
            return

        command, args = extract_command(text)
        if command == "/start":
            await self.start(chat_id, user_id, args, data, db)
        elif command == "/cancel":
            await self._clear_dialog(user_id)
            await send_message(chat_id, "Registration cancelled.")
        elif command == "/help":
            await send_message(chat_id, USER_HELP + ("\n\n" + ADMIN_HELP if admin else ""))
        elif command and admin:
            await self.handle_admin_command(command, args, chat_id, user_id, db)
        elif command:
            await send_message(chat_id, f"Unknown command. Supported:\n{USER_HELP}")
        else:
            await self.continue_dialog(chat_id, user_id, text, data, db)

    # --- Registration dialogue ---

    async def start(self, chat_id: str, user_id: int, args: Optional[str], data: Dict[str, Any], db: AsyncSession) -> None:
        admin = self.is_admin(user_id)
        try:
            await self.intake.check_registrant(db, user_id)
        except RegistrantBanned:
            return
        except (AlreadyRegistered, RequestAlreadyPending) as e:
            await send_message(chat_id, ERROR_MESSAGES[e.code])
            return

        invited = False
        invited_by = None
        if args and settings.TELEGRAM_DEEPLINK_REGISTRATION_ENABLED:
            try:
                invited_by = await redeem_deeplink_token(db, args)
                invited = True
            except StaleActionError as e:
                logger.info("Invitation rejected for %s: %s", user_id, e.code)
                if not settings.TELEGRAM_PUBLIC_REGISTRATION_ENABLED and not admin:
                    await send_message(chat_id, "This invitation link is invalid or has expired.")
                    return
        if not (admin or invited or settings.TELEGRAM_PUBLIC_REGISTRATION_ENABLED):
            await send_message(chat_id, "Registration is by invitation only.")
            return

        await self._save_dialog(user_id, {"step": STEP_USERNAME, "invited_by": invited_by})
        await send_message(chat_id, "Welcome! Send the username you want for TeamTalk.")

    async def continue_dialog(self, chat_id: str, user_id: int, text: str, data: Dict[str, Any], db: AsyncSession) -> None:
        state = await self._load_dialog(user_id)
        if not state:
            await send_message(chat_id, "Send /start to register a TeamTalk account.")
            return
        step = state.get("step")

        if step == STEP_USERNAME:
            if not text or any(ch.isspace() for ch in text):
                await send_message(chat_id, "The username must be a single word. Try again.")
                return
            state.update({"step": STEP_PASSWORD, "username": text})
            await self._save_dialog(user_id, state)
            await send_message(chat_id, "Now send the password for your account.")
        elif step == STEP_PASSWORD:
            if not text:
                await send_message(chat_id, "The password cannot be empty. Try again.")
                return
            state.update({"step": STEP_NICKNAME, "password": seal_secret(text)})
            await self._save_dialog(user_id, state)
            await send_message(
                chat_id,
                "Send the nickname to show in TeamTalk, or skip to use your username.",
                reply_markup=build_choice_markup([("Skip", CB_SKIP_NICKNAME)]),
            )
        elif step == STEP_NICKNAME:
            state["nickname"] = text
            await self._after_nickname(chat_id, user_id, state, data, db)
        else:
            await send_message(chat_id, "Please use the buttons above, or /cancel.")

    async def _after_nickname(self, chat_id: str, user_id: int, state: Dict[str, Any], data: Dict[str, Any], db: AsyncSession) -> None:
        if self.is_admin(user_id):
            state["step"] = STEP_ACCOUNT_TYPE
            await self._save_dialog(user_id, state)
            await send_message(
                chat_id,
                "Which account type should be created?",
                reply_markup=build_choice_markup([("User", CB_TYPE_USER), ("Admin", CB_TYPE_ADMIN)]),
            )
            return
        await self.submit(chat_id, user_id, state, data, db)

    async def submit(self, chat_id: str, user_id: int, state: Dict[str, Any], data: Dict[str, Any], db: AsyncSession) -> None:
        await self._clear_dialog(user_id)
        submission = ChatSubmission(
            registrant_id=user_id,
            username=state.get("username") or "",
            password=open_secret(state.get("password") or ""),
            nickname=state.get("nickname"),
            wants_admin=bool(state.get("wants_admin")),
            source_info=build_source_info(data, state.get("invited_by")),
        )
        try:
            pending = await self.intake.submit(db, submission)
        except RegistrantBanned:
            return
        except RegistrationError as e:
            await send_message(chat_id, ERROR_MESSAGES.get(e.code, "Registration failed. Please try again later."))
            return

        if self.approval.requires_approval(user_id):
            await self.approval.announce(pending)
            await send_message(chat_id, "Your request was sent to the administrators. You will be notified here.")
            return

        try:
            account = await self.provisioner.provision_unclaimed(db, pending, actor_id=user_id)
        except UsernameTaken as e:
            await send_message(chat_id, ERROR_MESSAGES[e.code])
            return
        except (DirectoryUnavailable, ProvisionFailed):
            await send_message(
                chat_id,
                "Your request was saved but the account could not be created yet. An administrator will retry it.",
            )
            return
        except InconsistentState as e:
            await send_message(chat_id, ERROR_MESSAGES[e.code])
            return
        await self.delivery.deliver(account)

    # --- Callbacks ---

    async def handle_callback(self, data: Dict[str, Any], db: AsyncSession) -> None:
        chat_id = data["chat_id"]
        user_id = int(data["user_id"])
        callback_query_id = data.get("callback_query_id")
        callback_data = data.get("callback_data", "")

        decision, request_key = parse_decision_callback(callback_data)
        if decision is not None:
            if not self.is_admin(user_id):
                if callback_query_id:
                    await answer_callback_query(callback_query_id, "Not allowed.")
                return
            if callback_query_id:
                await answer_callback_query(callback_query_id)
            text = await self.decide(decision, request_key, user_id, db)
            message_id = data.get("message_id")
            if isinstance(message_id, int):
                edited = await edit_message(chat_id, message_id, text)
                if edited.get("ok") is True:
                    return
            await send_message(chat_id, text)
            return

        if callback_query_id:
            await answer_callback_query(callback_query_id)
        state = await self._load_dialog(user_id)
        if not state:
            await send_message(chat_id, "This registration is no longer active. Send /start to begin again.")
            return
        if callback_data == CB_SKIP_NICKNAME and state.get("step") == STEP_NICKNAME:
            state["nickname"] = ""
            await self._after_nickname(chat_id, user_id, state, data, db)
        elif callback_data in (CB_TYPE_USER, CB_TYPE_ADMIN) and state.get("step") == STEP_ACCOUNT_TYPE:
            state["wants_admin"] = callback_data == CB_TYPE_ADMIN
            await self.submit(chat_id, user_id, state, data, db)
        else:
            await send_message(chat_id, "This button is no longer active.")

    async def decide(self, decision: Decision, request_key: str, admin_id: int, db: AsyncSession) -> str:
        try:
            outcome = await self.approval.decide(db, request_key, decision, admin_id)
        except AlreadyHandled:
            return "This request was already handled."
        except UsernameTaken as e:
            return f"Request dropped: username <code>{escape_html(e.username)}</code> already exists."
        except ApprovedButProvisionFailed as e:
            return f"Approved, but the account could not be created: {escape_html(str(e))}"
        except InconsistentState:
            return "Account created in TeamTalk but the local save failed. Manual reconciliation required."
        if outcome.decision == Decision.approve:
            return f"Approved <code>{escape_html(outcome.username)}</code>; the account was created."
        return f"Rejected <code>{escape_html(outcome.username)}</code>."

    # --- Admin commands ---

    async def handle_admin_command(self, command: str, args: Optional[str], chat_id: str, admin_id: int, db: AsyncSession) -> None:
        if command == "/admin":
            await send_message(chat_id, ADMIN_HELP)

        elif command == "/pending":
            chat_rows = (await db.execute(
                select(PendingTelegramRegistration).order_by(PendingTelegramRegistration.created_at)
            )).scalars().all()
            web_rows = (await db.execute(
                select(PendingWebRegistration).order_by(PendingWebRegistration.created_at)
            )).scalars().all()
            if not chat_rows and not web_rows:
                await send_message(chat_id, "No pending requests.")
                return
            for row in chat_rows:
                state = " (in progress)" if row.claimed_at else ""
                await send_message(
                    chat_id,
                    f"<code>{escape_html(row.username)}</code> from <code>{row.registrant_telegram_id}</code>{state}",
                    reply_markup=None if row.claimed_at else build_decision_markup(row.request_key),
                )
            for row in web_rows:
                await send_message(chat_id, f"Web: <code>{escape_html(row.username)}</code> from {escape_html(row.ip_address)}")

        elif command == "/banlist":
            bans = await list_bans(db)
            if not bans:
                await send_message(chat_id, "The ban list is empty.")
                return
            lines = ["<b>Banned ids</b>"]
            for ban in bans:
                who = escape_html(ban.teamtalk_username or "-")
                reason = escape_html(ban.reason or "")
                lines.append(f"<code>{ban.telegram_id}</code> {who} {reason}".rstrip())
            await send_message(chat_id, "\n".join(lines))

        elif command == "/ban":
            target, reason = _parse_id_and_rest(args)
            if target is None:
                await send_message(chat_id, "Usage: <code>/ban &lt;telegram_id&gt; [reason]</code>")
                return
            await ban_user(db, target, banned_by=admin_id, reason=reason)
            await send_message(chat_id, f"Telegram id <code>{target}</code> banned.")

        elif command == "/unban":
            target, _ = _parse_id_and_rest(args)
            if target is None:
                await send_message(chat_id, "Usage: <code>/unban &lt;telegram_id&gt;</code>")
                return
            if await unban_user(db, target, admin_id=admin_id):
                await send_message(chat_id, f"Telegram id <code>{target}</code> unbanned.")
            else:
                await send_message(chat_id, f"Telegram id <code>{target}</code> was not banned.")

        elif command == "/unlink":
            target, _ = _parse_id_and_rest(args)
            if target is None:
                await send_message(chat_id, "Usage: <code>/unlink &lt;telegram_id&gt;</code>")
                return
            username = await unlink_and_ban(db, target, admin_id)
            label = escape_html(username) if username else "no account"
            await send_message(chat_id, f"Registration of <code>{target}</code> ({label}) removed and the id banned.")

        elif command == "/accounts":
            try:
                accounts = await self.directory.list_accounts()
            except DirectoryUnavailable:
                await send_message(chat_id, ERROR_MESSAGES[DirectoryUnavailable.code])
                return
            if not accounts:
                await send_message(chat_id, "No TeamTalk accounts.")
                return
            lines = [f"<b>TeamTalk accounts ({len(accounts)})</b>"]
            for account in sorted(accounts, key=lambda a: a.username.lower()):
                marker = " (admin)" if account.is_admin else ""
                lines.append(f"{escape_html(account.username)}{marker}")
            await send_message(chat_id, "\n".join(lines))

        elif command == "/delete_account":
            username = (args or "").strip()
            if not username:
                await send_message(chat_id, "Usage: <code>/delete_account &lt;username&gt;</code>")
                return
            try:
                deleted = await self.directory.delete_account(username)
            except DirectoryUnavailable:
                await send_message(chat_id, ERROR_MESSAGES[DirectoryUnavailable.code])
                return
            if deleted:
                await send_message(
                    chat_id,
                    f"Account <code>{escape_html(username)}</code> deleted. The linked Telegram id is banned on the next sync.",
                )
            else:
                await send_message(chat_id, f"Account <code>{escape_html(username)}</code> not found.")

        elif command == "/invite":
            if not settings.TELEGRAM_DEEPLINK_REGISTRATION_ENABLED:
                await send_message(chat_id, "Invitation links are disabled (TELEGRAM_DEEPLINK_REGISTRATION_ENABLED).")
                return
            issued = await issue_deeplink_token(db, admin_id)
            link = build_invite_link(issued.token)
            minutes = max(1, settings.DEEPLINK_TOKEN_TTL_SECONDS // 60)
            body = link or f"/start {issued.token}"
            await send_message(chat_id, f"Single-use invitation, valid for {minutes} min:\n{escape_html(body)}")

        elif command == "/sync":
            job_id = str(uuid.uuid4())
            await self.redis.rpush(DEFAULT_QUEUE, json.dumps({"job_id": job_id, "topic": TOPIC_BAN_SYNC, "payload": {}}))
            await send_message(chat_id, "Ban sync enqueued.")

        else:
            await send_message(chat_id, f"Unknown command.\n\n{ADMIN_HELP}")


def _parse_id_and_rest(args: Optional[str]) -> tuple[Optional[int], Optional[str]]:
    parts = (args or "").strip().split(maxsplit=1)
    if not parts:
        return None, None
    try:
        target = int(parts[0])
    except ValueError:
        return None, None
    rest = parts[1].strip() if len(parts) > 1 else None
    return target, rest or None
