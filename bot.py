#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Telegram bot in front of a 3x-ui panel: self-service accounts with admin approval

Admin:
- List clients of every inbound, open a client card (traffic, expiry)
- Enable/disable or delete a client, write to a client
- Approve/reject registration and extension requests (sent to every admin)
- /usage <email>, /clients, /status (server load and client counts)
- Broadcast an announcement to every client with a Telegram ID
User:
- Register (username + duration), wait for approval, receive the subscription link
- My subscription, extend subscription, change username
- Contact admin
- Expiry warnings a few days before a subscription runs out

ENV: see config.py
"""

import os
import html
import logging
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from telegram import (
    Update, InlineKeyboardButton, InlineKeyboardMarkup, ReplyKeyboardMarkup,
)
from telegram.error import BadRequest, TelegramError
from telegram.ext import (
    Application, CommandHandler, CallbackQueryHandler, MessageHandler,
    ContextTypes, filters,
)

import views
from apis import sanaei
from config import Settings, load_settings
from core.broadcast import Broadcast
from core.client_cache import ClientRecordCache, set_enabled
from core.conversation import ConversationState, ConversationStore
from core.errors import BotError, ExternalCallFailed, NotFound, ValidationFailed
from core.notifier import ExpiryNotifier
from core.ratelimit import RateLimiter
from core.relay import MessageRelay
from core.sweeper import ExpirySweeper
from core.workflows import (
    ExtensionWorkflow, Profile, RegistrationWorkflow, validate_email,
)

# ---------- logging ----------
logging.basicConfig(
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
)
log = logging.getLogger("xui_bot")

MAX_TEXT_LEN = 2000


# ---------- gateway ----------
def to_markup(keyboard) -> Optional[InlineKeyboardMarkup]:
    if not keyboard:
        return None
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(label, callback_data=data) for label, data in row]
        for row in keyboard
    ])


def reply_menu(rows: List[List[str]]) -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(rows, resize_keyboard=True)


class TelegramGateway:
    """Delivery through the Bot API; failures are logged, never raised."""

    def __init__(self, bot):
        self.bot = bot

    async def send_text(self, chat_id: int, text: str, keyboard=None) -> Optional[int]:
        try:
            msg = await self.bot.send_message(
                chat_id, text, parse_mode="HTML",
                reply_markup=to_markup(keyboard), disable_web_page_preview=True,
            )
        except TelegramError as e:
            log.error("send to %s failed: %s", chat_id, e)
            return None
        return msg.message_id

    async def edit_text(self, chat_id: int, message_id: int, text: str, keyboard=None) -> bool:
        try:
            await self.bot.edit_message_text(
                text, chat_id=chat_id, message_id=message_id, parse_mode="HTML",
                reply_markup=to_markup(keyboard), disable_web_page_preview=True,
            )
        except BadRequest as e:
            if "not modified" in str(e).lower():
                return True
            log.error("edit of %s/%s failed: %s", chat_id, message_id, e)
            return False
        except TelegramError as e:
            log.error("edit of %s/%s failed: %s", chat_id, message_id, e)
            return False
        return True

    async def answer_callback(self, callback_id: str, text: Optional[str] = None, alert: bool = False) -> bool:
        try:
            await self.bot.answer_callback_query(callback_id, text=text, show_alert=alert)
        except TelegramError as e:
            log.error("answer to callback %s failed: %s", callback_id, e)
            return False
        return True


# ---------- runtime ----------
@dataclass
class Runtime:
    settings: Settings
    panel: object
    gateway: object
    limiter: RateLimiter
    cache: ClientRecordCache
    conversations: ConversationStore
    registrations: RegistrationWorkflow
    extensions: ExtensionWorkflow
    relay: MessageRelay
    broadcasts: Broadcast
    sweeper: ExpirySweeper
    notifier: ExpiryNotifier

    def is_admin(self, tg_id: int) -> bool:
        return tg_id in self.settings.admin_ids

    def admitted(self, tg_id: int) -> bool:
        return self.is_admin(tg_id) or self.limiter.admit(tg_id)


def build_runtime(settings: Settings, gateway, panel=None, clock: Callable[[], float] = time.time) -> Runtime:
    if panel is None:
        panel = sanaei.Panel(
            settings.panel_url, settings.panel_username, settings.panel_password, settings.panel_limit_ip,
        )
    conversations = ConversationStore()
    limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window)
    registrations = RegistrationWorkflow(
        conversations, gateway, panel, settings.admin_ids, clock, settings.instructions_url,
    )
    extensions = ExtensionWorkflow(
        gateway, panel, settings.admin_ids, clock, settings.instructions_url, ttl=settings.state_ttl,
    )
    relay = MessageRelay(conversations, gateway, settings.admin_ids, clock)
    broadcasts = Broadcast(conversations, gateway, panel, clock)
    sweeper = ExpirySweeper(
        registrations, extensions, relay, limiter,
        ttl=settings.state_ttl, interval=settings.cleanup_interval, broadcasts=broadcasts,
    )
    return Runtime(
        settings=settings,
        panel=panel,
        gateway=gateway,
        limiter=limiter,
        cache=ClientRecordCache(),
        conversations=conversations,
        registrations=registrations,
        extensions=extensions,
        relay=relay,
        broadcasts=broadcasts,
        sweeper=sweeper,
        notifier=ExpiryNotifier(
            panel, gateway, clock, settings.expiry_warn_days, settings.notify_interval,
        ),
    )


def rt_of(context: ContextTypes.DEFAULT_TYPE) -> Runtime:
    return context.application.bot_data["rt"]


async def in_thread(fn, *args):
    """Run a blocking panel call without stalling the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fn, *args)


def display_name(user) -> str:
    return user.full_name or user.username or str(user.id)


async def own_record(rt: Runtime, tg_id: int):
    """Caller's client on the panel, or ``None`` when they have none."""
    record, err = await in_thread(rt.panel.find_client_by_tg_id, tg_id)
    if err == sanaei.NOT_FOUND:
        return None
    if err:
        raise ExternalCallFailed(f"Panel is not reachable right now: {err}")
    return record


def refuse_blocked(record) -> None:
    if record is not None and not record.enabled:
        raise ValidationFailed("🚫 Your account is blocked. Contact an administrator.")


# ---------- commands ----------
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    rt = rt_of(context)
    uid = update.effective_user.id
    if not rt.admitted(uid):
        return
    rt.relay.cancel(update.effective_chat.id)
    rt.broadcasts.cancel(update.effective_chat.id)
    rt.conversations.clear(update.effective_chat.id)
    if rt.is_admin(uid):
        text = "👋 <b>Administrator panel</b>\n\nChoose an option:"
        kb = reply_menu(views.admin_menu_rows())
    else:
        text = f"👋 Hello, {html.escape(display_name(update.effective_user))}!\n\nChoose an option:"
        kb = reply_menu(views.user_menu_rows())
    await update.message.reply_text(text, reply_markup=kb, parse_mode="HTML")


async def help_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    rt = rt_of(context)
    uid = update.effective_user.id
    if not rt.admitted(uid):
        return
    text = views.ADMIN_HELP if rt.is_admin(uid) else views.USER_HELP
    await update.message.reply_text(text, parse_mode="HTML")


async def id_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    rt = rt_of(context)
    uid = update.effective_user.id
    if not rt.admitted(uid):
        return
    await update.message.reply_text(f"🆔 Your Telegram ID: <code>{uid}</code>", parse_mode="HTML")


async def cancel(update: Update, context: ContextTypes.DEFAULT_TYPE):
    rt = rt_of(context)
    if not rt.admitted(update.effective_user.id):
        return
    chat_id = update.effective_chat.id
    rt.relay.cancel(chat_id)
    rt.broadcasts.cancel(chat_id)
    rt.conversations.clear(chat_id)
    await update.message.reply_text("Cancelled.")


async def usage_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    rt = rt_of(context)
    if not rt.is_admin(update.effective_user.id):
        return
    if not context.args:
        await update.message.reply_text("Usage: /usage &lt;email&gt;", parse_mode="HTML")
        return
    email = context.args[0].strip()
    stats, err = await in_thread(rt.panel.fetch_traffic, email)
    if err:
        await update.message.reply_text(f"❌ {html.escape(email)}: {html.escape(err)}", parse_mode="HTML")
        return
    up, down = int(stats.get("up") or 0), int(stats.get("down") or 0)
    await update.message.reply_text(
        "\n".join([
            f"📊 <b>{html.escape(email)}</b>",
            "",
            f"⬆️ Up: {views.fmt_bytes(up)}",
            f"⬇️ Down: {views.fmt_bytes(down)}",
            f"📊 Total: {views.fmt_bytes(up + down)}",
        ]),
        parse_mode="HTML",
    )


async def clients_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    rt = rt_of(context)
    if not rt.is_admin(update.effective_user.id):
        return
    try:
        await show_client_list(rt, update.effective_chat.id)
    except BotError as e:
        await update.message.reply_text(f"❌ {e.message}")


async def status_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE):
    rt = rt_of(context)
    if not rt.is_admin(update.effective_user.id):
        return
    await show_status(rt, update.effective_chat.id)


# ---------- admin: clients ----------
async def load_client_list(rt: Runtime):
    inbounds, err = await in_thread(rt.panel.list_inbounds)
    if err:
        raise ExternalCallFailed(f"Could not load clients: {err}")
    records = sanaei.client_records(inbounds)
    rt.cache.store_listing(records)
    return records, sanaei.client_usage(inbounds)


async def show_client_list(rt: Runtime, chat_id: int, message_id: Optional[int] = None):
    records, usage = await load_client_list(rt)
    text = views.client_list_text(len(records))
    kb = views.client_list_keyboard(records, usage)
    if message_id is None:
        await rt.gateway.send_text(chat_id, text, kb)
    else:
        await rt.gateway.edit_text(chat_id, message_id, text, kb)


def cached_client(rt: Runtime, suffix: str):
    try:
        lid, pos = (int(x) for x in suffix.split("_", 1))
    except ValueError:
        raise ValidationFailed("Bad button data.")
    record = rt.cache.load((lid, pos))
    if record is None:
        raise NotFound("Client list is out of date. Open it again with /clients.")
    return record


async def show_client_card(rt: Runtime, chat_id: int, message_id: int, record):
    stats, err = await in_thread(rt.panel.fetch_traffic, record.email)
    if err:
        log.warning("traffic of %s unavailable: %s", record.email, err)
        stats = {}
    text = views.client_card(record, int(stats.get("up") or 0), int(stats.get("down") or 0))
    await rt.gateway.edit_text(chat_id, message_id, text, views.client_card_keyboard(record))


async def toggle_client(rt: Runtime, chat_id: int, message_id: int, record) -> str:
    enabled = not record.enabled
    # Only the flag goes out; the panel merges it into the live document.
    ok, err = await in_thread(rt.panel.update_client, record.listing_id, record.email, {"enable": enabled})
    if not ok:
        raise ExternalCallFailed(f"Failed to update client: {err}")
    updated = rt.cache.patch(record.key, set_enabled(enabled)) or record.with_enabled(enabled)
    log.info("client %s %s by %s", record.email, "enabled" if enabled else "disabled", chat_id)
    await show_client_card(rt, chat_id, message_id, updated)
    return "✅ Enabled" if enabled else "🔒 Disabled"


async def delete_client(rt: Runtime, chat_id: int, message_id: int, record) -> str:
    ok, err = await in_thread(rt.panel.delete_client, record.listing_id, record.client_key)
    if not ok:
        raise ExternalCallFailed(f"Failed to delete client: {err}")
    rt.cache.discard(record.key)
    sanaei.forget_client_link(record.email)
    log.info("client %s deleted by %s", record.email, chat_id)
    await rt.gateway.edit_text(
        chat_id, message_id,
        f"🗑️ Client <b>{html.escape(record.email)}</b> deleted.",
        [[("◀️ Back", views.CB_BACK_TO_CLIENTS)]],
    )
    return "🗑️ Deleted"


# ---------- admin: status and broadcast ----------
async def show_status(rt: Runtime, chat_id: int):
    server, server_err = await in_thread(rt.panel.server_status)
    records, clients_err = await in_thread(rt.panel.list_clients)
    await rt.gateway.send_text(chat_id, views.status_text(
        server, records, len(rt.registrations), len(rt.conversations),
        server_err=server_err or "", clients_err=clients_err or "",
    ))


async def begin_broadcast(rt: Runtime, chat_id: int):
    rt.relay.cancel(chat_id)
    rt.broadcasts.begin(chat_id)
    await rt.gateway.send_text(
        chat_id, "📢 Write the announcement for every client.\n\n/cancel to stop.",
    )


# ---------- user menu ----------
async def show_subscription(rt: Runtime, update: Update):
    record = await own_record(rt, update.effective_user.id)
    if record is None:
        raise NotFound(f"You have no account yet. Press {views.BTN_REGISTER} to request one.")
    refuse_blocked(record)
    stats, err = await in_thread(rt.panel.fetch_traffic, record.email)
    if err:
        stats = {}
    used = int(stats.get("up") or 0) + int(stats.get("down") or 0)
    link, lerr = await in_thread(rt.panel.get_subscription_link, record.email)
    if lerr:
        raise ExternalCallFailed(f"Could not get your link: {lerr}")
    header = f"📱 <b>Your subscription</b>\n\n📊 Used: {views.fmt_bytes(used)}" + (
        f" / {views.fmt_bytes(record.total_bytes)}" if record.total_bytes > 0 else " (∞)"
    )
    await update.message.reply_text(
        views.subscription_delivery(header, record.email, link, record.expiry_ms, rt.settings.instructions_url),
        parse_mode="HTML", disable_web_page_preview=True,
    )


async def begin_registration(rt: Runtime, update: Update):
    user = update.effective_user
    record = await own_record(rt, user.id)
    refuse_blocked(record)
    if record is not None:
        raise ValidationFailed(f"You already have an account: {record.email}.")
    rt.registrations.begin(user.id, Profile(
        chat_id=update.effective_chat.id,
        display_name=display_name(user),
        transport_username=user.username or "",
    ))
    await update.message.reply_text(
        "📝 Send the username you want for your account (3 to 32 characters).\n\n/cancel to stop.",
    )


async def begin_extension(rt: Runtime, chat_id: int, user_id: int):
    refuse_blocked(await own_record(rt, user_id))
    record = await rt.extensions.check_eligible(user_id)
    await rt.gateway.send_text(
        chat_id,
        f"⏰ Current expiry: {views.fmt_ts(record.expiry_ms)}\n\nChoose how long to extend:",
        views.duration_keyboard(views.CB_EXTEND, rt.settings.prices),
    )


async def begin_username_change(rt: Runtime, update: Update):
    record = await own_record(rt, update.effective_user.id)
    if record is None:
        raise NotFound(f"You have no account yet. Press {views.BTN_REGISTER} to request one.")
    refuse_blocked(record)
    rt.conversations.set_state(update.effective_chat.id, ConversationState.AWAITING_NEW_EMAIL)
    await update.message.reply_text(
        f"Current username: <b>{html.escape(record.email)}</b>\n\n"
        "Send the new username (3 to 32 characters).\n\n/cancel to stop.",
        parse_mode="HTML",
    )


async def change_username(rt: Runtime, update: Update, raw_text: str):
    new_email = validate_email(raw_text)
    record = await own_record(rt, update.effective_user.id)
    if record is None:
        rt.conversations.clear(update.effective_chat.id)
        raise NotFound("You have no account yet.")
    refuse_blocked(record)
    ok, err = await in_thread(rt.panel.update_client, record.listing_id, record.email, {"email": new_email})
    if not ok:
        raise ExternalCallFailed(f"Could not change the username: {err}")
    rt.conversations.clear(update.effective_chat.id)
    log.info("user %s renamed %s -> %s", update.effective_user.id, record.email, new_email)
    await update.message.reply_text(
        f"✅ Username changed to <b>{html.escape(new_email)}</b>.",
        parse_mode="HTML", reply_markup=reply_menu(views.user_menu_rows()),
    )


async def begin_contact_admin(rt: Runtime, chat_id: int, user):
    rt.relay.begin_user_message(chat_id, user.id, display_name(user))
    await rt.gateway.send_text(chat_id, "💬 Write your message for the administrators.\n\n/cancel to stop.")


async def on_menu(rt: Runtime, update: Update, text: str) -> bool:
    """Handle a reply-keyboard press; ``False`` when *text* is no menu label."""
    uid = update.effective_user.id
    chat_id = update.effective_chat.id
    if rt.is_admin(uid):
        if text == views.BTN_CLIENTS:
            await show_client_list(rt, chat_id)
            return True
        if text == views.BTN_STATUS:
            await show_status(rt, chat_id)
            return True
        if text == views.BTN_BROADCAST:
            await begin_broadcast(rt, chat_id)
            return True
        if text == views.BTN_HELP:
            await update.message.reply_text(views.ADMIN_HELP, parse_mode="HTML")
            return True
        return False

    if text == views.BTN_REGISTER:
        await begin_registration(rt, update)
    elif text == views.BTN_MY_SUBSCRIPTION:
        await show_subscription(rt, update)
    elif text == views.BTN_EXTEND:
        await begin_extension(rt, chat_id, uid)
    elif text == views.BTN_SETTINGS:
        await update.message.reply_text("⚙️ Settings", reply_markup=reply_menu(views.settings_menu_rows()))
    elif text == views.BTN_UPDATE_USERNAME:
        await begin_username_change(rt, update)
    elif text == views.BTN_BACK:
        rt.conversations.clear(chat_id)
        await update.message.reply_text("Main menu", reply_markup=reply_menu(views.user_menu_rows()))
    elif text == views.BTN_CONTACT_ADMIN:
        await begin_contact_admin(rt, chat_id, update.effective_user)
    elif text == views.BTN_INSTRUCTIONS:
        await update.message.reply_text(
            views.instructions_text(rt.settings.instructions_url), parse_mode="HTML", disable_web_page_preview=True,
        )
    elif text == views.BTN_HELP:
        await update.message.reply_text(views.USER_HELP, parse_mode="HTML")
    else:
        return False
    return True


# ---------- free text ----------
async def on_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
    rt = rt_of(context)
    uid = update.effective_user.id
    chat_id = update.effective_chat.id
    text = update.message.text or ""

    if not rt.admitted(uid):
        return
    if len(text) > MAX_TEXT_LEN:
        await update.message.reply_text(f"❌ Message is too long (max {MAX_TEXT_LEN} characters).")
        return

    try:
        if await on_menu(rt, update, text.strip()):
            return
        state = rt.conversations.get_state(chat_id)
        if state is ConversationState.AWAITING_EMAIL:
            req = rt.registrations.submit_email(uid, text)
            await update.message.reply_text(
                f"👤 Username: <b>{html.escape(req.desired_email)}</b>\n\nChoose the duration:",
                parse_mode="HTML",
                reply_markup=to_markup(views.duration_keyboard(views.CB_REG_DURATION, rt.settings.prices)),
            )
        elif state is ConversationState.AWAITING_DURATION:
            await update.message.reply_text("Choose the duration with the buttons above.")
        elif state is ConversationState.AWAITING_NEW_EMAIL:
            await change_username(rt, update, text)
        elif state is ConversationState.AWAITING_ADMIN_MESSAGE:
            ctx = await rt.relay.relay_admin_message(chat_id, text)
            await update.message.reply_text(
                f"✅ Sent to {html.escape(ctx.display_name or str(ctx.counterpart_id))}.", parse_mode="HTML",
            )
        elif state is ConversationState.AWAITING_USER_MESSAGE:
            await rt.relay.relay_user_message(chat_id, text, update.effective_user.username or "")
            await update.message.reply_text("✅ Your message was sent to the administrators.")
        elif state is ConversationState.AWAITING_BROADCAST_MESSAGE:
            draft = rt.broadcasts.submit(chat_id, text)
            await update.message.reply_text(
                views.broadcast_preview(draft.text), parse_mode="HTML",
                reply_markup=to_markup(views.broadcast_keyboard()),
            )
        else:
            await update.message.reply_text("Use the menu buttons or /help.")
    except BotError as e:
        await update.message.reply_text(f"❌ {e.message}")


# ---------- buttons ----------
ADMIN_PREFIXES = (
    views.CB_APPROVE_REG, views.CB_REJECT_REG, views.CB_APPROVE_EXT, views.CB_REJECT_EXT,
    views.CB_CLIENT, views.CB_TOGGLE, views.CB_DELETE, views.CB_CONFIRM_DELETE,
    views.CB_CANCEL_DELETE, views.CB_MESSAGE, views.CB_REPLY, views.CB_BACK_TO_CLIENTS,
    views.CB_BROADCAST_CONFIRM, views.CB_BROADCAST_CANCEL,
)


async def on_button(update: Update, context: ContextTypes.DEFAULT_TYPE):
    rt = rt_of(context)
    q = update.callback_query
    uid = update.effective_user.id
    if not rt.admitted(uid):
        await rt.gateway.answer_callback(q.id)
        return
    data = q.data or ""
    if data.startswith(ADMIN_PREFIXES) and not rt.is_admin(uid):
        await rt.gateway.answer_callback(q.id, "Admins only.", alert=True)
        return
    try:
        toast = await route_button(rt, update, data)
    except NotFound as e:
        await rt.gateway.answer_callback(q.id, e.message, alert=True)
        return
    except BotError as e:
        await rt.gateway.answer_callback(q.id, e.message, alert=True)
        log.warning("button %s from %s failed: %s", data, uid, e)
        return
    await rt.gateway.answer_callback(q.id, toast)


async def route_button(rt: Runtime, update: Update, data: str) -> Optional[str]:
    q = update.callback_query
    user = update.effective_user
    chat_id = q.message.chat_id
    message_id = q.message.message_id

    # ---- user side
    if data.startswith(views.CB_REG_DURATION):
        days = int(data[len(views.CB_REG_DURATION):])
        await rt.registrations.submit_duration(user.id, days)
        await rt.gateway.edit_text(
            chat_id, message_id,
            views.payment_notice(days, rt.settings.prices, rt.settings.payment_details),
        )
        return None

    if data.startswith(views.CB_EXTEND):
        days = int(data[len(views.CB_EXTEND):])
        refuse_blocked(await own_record(rt, user.id))
        await rt.extensions.request(user.id, days, display_name(user), user.username or "")
        await rt.gateway.edit_text(
            chat_id, message_id,
            views.payment_notice(days, rt.settings.prices, rt.settings.payment_details),
        )
        return None

    if data == views.CB_CONTACT_ADMIN:
        await begin_contact_admin(rt, chat_id, user)
        return None

    if data == views.CB_RENEW:
        await begin_extension(rt, chat_id, user.id)
        return None

    # ---- admin: registration decisions
    if data.startswith((views.CB_APPROVE_REG, views.CB_REJECT_REG)):
        approve = data.startswith(views.CB_APPROVE_REG)
        target = int(data.rsplit("_", 1)[1])
        try:
            req = await rt.registrations.decide(target, chat_id, approve)
        except NotFound:
            await rt.gateway.edit_text(chat_id, message_id, "ℹ️ This request was already handled.")
            return "Already handled"
        await rt.gateway.edit_text(chat_id, message_id, views.registration_outcome(req, approve))
        return "✅ Approved" if approve else "❌ Rejected"

    # ---- admin: extension decisions
    if data.startswith(views.CB_APPROVE_EXT):
        target, days, ticket = data[len(views.CB_APPROVE_EXT):].split("_", 2)
        try:
            result = await rt.extensions.approve(int(target), int(days), ticket, chat_id)
        except NotFound as e:
            await rt.gateway.edit_text(chat_id, message_id, f"ℹ️ {html.escape(e.message)}")
            return "Already handled"
        await rt.gateway.edit_text(
            chat_id, message_id,
            views.extension_outcome(result.email, result.days, result.old_expiry_ms, result.new_expiry_ms),
        )
        return "✅ Extended"

    if data.startswith(views.CB_REJECT_EXT):
        target, ticket = data[len(views.CB_REJECT_EXT):].split("_", 1)
        try:
            await rt.extensions.reject(int(target), ticket, chat_id)
        except NotFound as e:
            await rt.gateway.edit_text(chat_id, message_id, f"ℹ️ {html.escape(e.message)}")
            return "Already handled"
        await rt.gateway.edit_text(
            chat_id, message_id, f"❌ <b>Extension REJECTED</b>\n\n🆔 User: <code>{int(target)}</code>",
        )
        return "❌ Rejected"

    # ---- admin: broadcast
    if data == views.CB_BROADCAST_CONFIRM:
        await rt.gateway.edit_text(chat_id, message_id, "📢 Sending...")
        try:
            report = await rt.broadcasts.confirm(chat_id)
        except NotFound as e:
            await rt.gateway.edit_text(chat_id, message_id, f"ℹ️ {html.escape(e.message)}")
            return "Already handled"
        except ExternalCallFailed:
            draft = rt.broadcasts.draft(chat_id)
            if draft is not None:
                await rt.gateway.edit_text(
                    chat_id, message_id, views.broadcast_preview(draft.text), views.broadcast_keyboard(),
                )
            raise
        await rt.gateway.edit_text(chat_id, message_id, views.broadcast_report(report))
        return f"📢 {report.sent} sent"

    if data == views.CB_BROADCAST_CANCEL:
        rt.broadcasts.cancel(chat_id)
        await rt.gateway.edit_text(chat_id, message_id, "❌ Announcement cancelled.")
        return None

    # ---- admin: client management
    if data == views.CB_BACK_TO_CLIENTS:
        await show_client_list(rt, chat_id, message_id)
        return None

    if data.startswith(views.CB_REPLY):
        target = int(data[len(views.CB_REPLY):])
        rt.relay.begin_admin_message(chat_id, target, str(target))
        await rt.gateway.send_text(
            chat_id, f"✏️ Write your reply for <code>{target}</code>.\n\n/cancel to stop.",
        )
        return None

    if data.startswith(views.CB_TOGGLE):
        return await toggle_client(rt, chat_id, message_id, cached_client(rt, data[len(views.CB_TOGGLE):]))

    if data.startswith(views.CB_CONFIRM_DELETE):
        return await delete_client(rt, chat_id, message_id, cached_client(rt, data[len(views.CB_CONFIRM_DELETE):]))

    if data.startswith(views.CB_CANCEL_DELETE):
        await show_client_card(rt, chat_id, message_id, cached_client(rt, data[len(views.CB_CANCEL_DELETE):]))
        return None

    if data.startswith(views.CB_DELETE):
        record = cached_client(rt, data[len(views.CB_DELETE):])
        await rt.gateway.edit_text(
            chat_id, message_id,
            f"⚠️ Delete client <b>{html.escape(record.email)}</b>? This cannot be undone.",
            views.delete_confirm_keyboard(record),
        )
        return None

    if data.startswith(views.CB_MESSAGE):
        record = cached_client(rt, data[len(views.CB_MESSAGE):])
        if not record.tg_id:
            raise ValidationFailed("This client has no Telegram ID.")
        rt.relay.begin_admin_message(chat_id, record.tg_id, record.email)
        await rt.gateway.send_text(
            chat_id, f"✏️ Write your message for <b>{html.escape(record.email)}</b>.\n\n/cancel to stop.",
        )
        return None

    if data.startswith(views.CB_CLIENT):
        await show_client_card(rt, chat_id, message_id, cached_client(rt, data[len(views.CB_CLIENT):]))
        return None

    log.warning("unknown button %r from %s", data, user.id)
    return None


# ---------- errors ----------
async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE):
    log.error("update %s failed", getattr(update, "update_id", update), exc_info=context.error)
    if isinstance(update, Update) and update.effective_chat:
        try:
            await context.bot.send_message(update.effective_chat.id, "⚠️ Something went wrong. Try again later.")
        except TelegramError:
            log.error("could not report failure to %s", update.effective_chat.id)


# ---------- wiring ----------
async def on_startup(app: Application):
    rt = app.bot_data["rt"]
    rt.sweeper.start()
    if rt.settings.expiry_warn_days:
        rt.notifier.start()


async def on_shutdown(app: Application):
    rt = app.bot_data["rt"]
    await rt.notifier.stop()
    await rt.sweeper.stop()


def build_app(settings: Optional[Settings] = None):
    settings = settings or load_settings()
    logging.getLogger().setLevel(settings.log_level)
    app = (
        Application.builder()
        .token(settings.bot_token)
        .concurrent_updates(True)
        .post_init(on_startup)
        .post_shutdown(on_shutdown)
        .build()
    )
    app.bot_data["rt"] = build_runtime(settings, TelegramGateway(app.bot))

    app.add_handler(CommandHandler("start", start))
    app.add_handler(CommandHandler("help", help_cmd))
    app.add_handler(CommandHandler("id", id_cmd))
    app.add_handler(CommandHandler("cancel", cancel))
    app.add_handler(CommandHandler("usage", usage_cmd))
    app.add_handler(CommandHandler("clients", clients_cmd))
    app.add_handler(CommandHandler("status", status_cmd))
    app.add_handler(CallbackQueryHandler(on_button))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, on_text))
    app.add_error_handler(on_error)
    log.info("bot configured for %d admins, panel %s", len(settings.admin_ids), settings.panel_url or "-")
    return app


if __name__ == "__main__":
    build_app().run_polling(drop_pending_updates=True)
