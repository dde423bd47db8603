#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Message texts and keyboard layouts.

Keyboards are plain ``[[(label, callback_data), ...], ...]`` rows so the state
core can build them without importing telegram; the gateway turns them into
``InlineKeyboardMarkup``.
"""

from __future__ import annotations

import html
import math
import time
from datetime import datetime, timezone
from typing import List, Optional, Tuple

Keyboard = List[List[Tuple[str, str]]]

DAY_MS = 24 * 60 * 60 * 1000
DURATIONS = (30, 90, 180, 365)

# ---------- reply-keyboard labels ----------
BTN_REGISTER = "📝 Register"
BTN_MY_SUBSCRIPTION = "📱 My subscription"
BTN_EXTEND = "⏰ Extend subscription"
BTN_SETTINGS = "⚙️ Settings"
BTN_UPDATE_USERNAME = "🔄 Update username"
BTN_CONTACT_ADMIN = "💬 Contact admin"
BTN_BACK = "◀️ Back"
BTN_CLIENTS = "👥 Clients"
BTN_HELP = "❓ Help"
BTN_BROADCAST = "📢 Broadcast"
BTN_STATUS = "📊 Status"
BTN_INSTRUCTIONS = "📖 Instructions"

MENU_LABELS = (
    BTN_REGISTER, BTN_MY_SUBSCRIPTION, BTN_EXTEND, BTN_SETTINGS,
    BTN_UPDATE_USERNAME, BTN_CONTACT_ADMIN, BTN_BACK, BTN_CLIENTS, BTN_HELP,
    BTN_BROADCAST, BTN_STATUS, BTN_INSTRUCTIONS,
)

# ---------- callback data ----------
CB_REG_DURATION = "reg_duration_"
CB_APPROVE_REG = "approve_reg_"
CB_REJECT_REG = "reject_reg_"
CB_EXTEND = "extend_"
CB_APPROVE_EXT = "approve_ext_"
CB_REJECT_EXT = "reject_ext_"
CB_CLIENT = "client_"
CB_TOGGLE = "toggle_"
CB_DELETE = "delete_"
CB_CONFIRM_DELETE = "confirm_delete_"
CB_CANCEL_DELETE = "cancel_delete_"
CB_MESSAGE = "msg_"
CB_REPLY = "reply_"
CB_BACK_TO_CLIENTS = "back_to_clients"
CB_CONTACT_ADMIN = "contact_admin"
CB_RENEW = "renew"
CB_BROADCAST_CONFIRM = "broadcast_confirm"
CB_BROADCAST_CANCEL = "broadcast_cancel"

UNIT = 1024


def is_menu_label(text: str) -> bool:
    """True when *text* is (or contains) one of the reply-keyboard labels."""
    t = (text or "").strip().lower()
    if not t:
        return False
    for label in MENU_LABELS:
        bare = label.split(" ", 1)[-1].lower()
        if t == bare or label.lower() in t:
            return True
    return False


def fmt_bytes(n: int) -> str:
    if n <= 0:
        return "0 B"
    if n < UNIT:
        return f"{n} B"
    value = float(n)
    for unit in ("KB", "MB", "GB", "TB"):
        value /= UNIT
        if value < UNIT or unit == "TB":
            return f"{value:.2f} {unit}"
    return f"{value:.2f} TB"


def fmt_ts(ms: int) -> str:
    if not ms or ms <= 0:
        return "∞"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%d.%m.%Y %H:%M UTC")


def time_left(expiry_ms: int, now_ms: Optional[int] = None) -> Tuple[int, int]:
    """Whole days and hours until *expiry_ms* (``(0, 0)`` when past)."""
    if expiry_ms <= 0:
        return 0, 0
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    left = expiry_ms - now_ms
    if left <= 0:
        return 0, 0
    return left // DAY_MS, (left % DAY_MS) // (60 * 60 * 1000)


def days_label(days: int) -> str:
    return f"{days} day" if days == 1 else f"{days} days"


def status_emoji(record, now_ms: Optional[int] = None) -> str:
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    if record.expiry_ms > 0 and record.expiry_ms < now_ms:
        return "⛔"
    if not record.enabled:
        return "🔴"
    if record.expiry_ms <= 0:
        return "💎"
    return "🟢"


def traffic_suffix(used: int, limit: int) -> str:
    if limit <= 0:
        return " ∞"
    pct = int(math.ceil(used / limit * 100)) if limit else 0
    return f" {used / UNIT**3:.1f}GB/{limit / UNIT**3:.0f}GB ({pct}%)"


# ---------- keyboards ----------
def duration_keyboard(prefix: str, prices: dict) -> Keyboard:
    rows = []
    for days in DURATIONS:
        price = int(prices.get(days) or 0)
        label = days_label(days) + (f" - {price}" if price else "")
        rows.append([(label, f"{prefix}{days}")])
    return rows


def registration_decision_keyboard(user_id: int) -> Keyboard:
    return [[
        ("✅ Approve", f"{CB_APPROVE_REG}{user_id}"),
        ("❌ Reject", f"{CB_REJECT_REG}{user_id}"),
    ]]


def extension_decision_keyboard(user_id: int, days: int, ticket: str) -> Keyboard:
    return [[
        ("✅ Approve", f"{CB_APPROVE_EXT}{user_id}_{days}_{ticket}"),
        ("❌ Reject", f"{CB_REJECT_EXT}{user_id}_{ticket}"),
    ]]


def reply_keyboard(user_id: int) -> Keyboard:
    return [[("💬 Reply", f"{CB_REPLY}{user_id}")]]


def contact_admin_keyboard() -> Keyboard:
    return [[("💬 Reply", CB_CONTACT_ADMIN)]]


def client_card_keyboard(record) -> Keyboard:
    lid, pos = record.key
    rows = [[(
        "✅ Enable" if not record.enabled else "🔒 Disable",
        f"{CB_TOGGLE}{lid}_{pos}",
    )]]
    if record.tg_id:
        rows.append([("💬 Message", f"{CB_MESSAGE}{lid}_{pos}")])
    rows.append([("🗑️ Delete", f"{CB_DELETE}{lid}_{pos}")])
    rows.append([("◀️ Back", CB_BACK_TO_CLIENTS)])
    return rows


def delete_confirm_keyboard(record) -> Keyboard:
    lid, pos = record.key
    return [[
        ("✅ Yes, delete", f"{CB_CONFIRM_DELETE}{lid}_{pos}"),
        ("❌ Cancel", f"{CB_CANCEL_DELETE}{lid}_{pos}"),
    ]]


def broadcast_keyboard() -> Keyboard:
    return [[("✅ Send", CB_BROADCAST_CONFIRM), ("❌ Cancel", CB_BROADCAST_CANCEL)]]


def renew_keyboard() -> Keyboard:
    return [[(BTN_EXTEND, CB_RENEW)]]


# ---------- texts ----------
def registration_prompt(req) -> str:
    tg = f"\n💬 Telegram: @{html.escape(req.transport_username)}" if req.transport_username else ""
    created = datetime.fromtimestamp(req.created_at, tz=timezone.utc).strftime("%d.%m.%Y %H:%M UTC")
    return "\n".join([
        "📝 <b>New registration request</b>",
        "",
        f"👤 User: {html.escape(req.display_name)} (ID: <code>{req.user_id}</code>){tg}",
        f"📧 Username: <b>{html.escape(req.desired_email)}</b>",
        f"📅 Duration: {days_label(req.duration_days)}",
        f"🕐 Submitted: {created}",
    ])


def registration_outcome(req, approved: bool) -> str:
    tg = f" (@{html.escape(req.transport_username)})" if req.transport_username else ""
    head = "✅ <b>Registration APPROVED</b>" if approved else "❌ <b>Registration REJECTED</b>"
    return "\n".join([
        head,
        "",
        f"👤 User: {html.escape(req.display_name)}{tg}",
        f"📧 Username: {html.escape(req.desired_email)}",
        f"📅 Duration: {days_label(req.duration_days)}",
    ])


def payment_notice(days: int, prices: dict, details: str) -> str:
    lines = ["✅ Request sent!", "", "⏳ Wait for an administrator to confirm it."]
    price = int(prices.get(days) or 0)
    if price or details:
        lines += ["", "💳 <b>Payment</b>"]
        if price:
            lines.append(f"💰 Amount: {price}")
        if details:
            lines.append(html.escape(details))
    return "\n".join(lines)


def subscription_delivery(header: str, email: str, link: str, expiry_ms: int, instructions_url: str = "") -> str:
    days, hours = time_left(expiry_ms)
    lines = [
        header,
        "",
        f"👤 Account: <b>{html.escape(email)}</b>",
        f"⏰ Expires: {fmt_ts(expiry_ms)}",
    ]
    if expiry_ms > 0:
        lines.append(f"📅 Left: {days} d {hours} h")
    lines += ["", "🔗 <b>Your subscription:</b>", f"<code>{html.escape(link)}</code>"]
    if instructions_url:
        lines += ["", f"📖 Instructions: {html.escape(instructions_url)}"]
    return "\n".join(lines)


def extension_prompt(user_id: int, display_name: str, tg_username: str, email: str, days: int, expiry_ms: int) -> str:
    tg = f"\n💬 Telegram: @{html.escape(tg_username)}" if tg_username else ""
    return "\n".join([
        "🔄 <b>Subscription extension request</b>",
        "",
        f"👤 User: {html.escape(display_name)} (ID: <code>{user_id}</code>){tg}",
        f"📧 Username: <b>{html.escape(email)}</b>",
        f"⏰ Current expiry: {fmt_ts(expiry_ms)}",
        f"📅 Extend by: {days_label(days)}",
    ])


def extension_outcome(email: str, days: int, old_ms: int, new_ms: int) -> str:
    return "\n".join([
        "✅ <b>Extension APPROVED</b>",
        "",
        f"📧 Username: {html.escape(email)}",
        f"⏰ Was: {fmt_ts(old_ms)}",
        f"📅 Added: +{days_label(days)}",
        f"⏰ Now: {fmt_ts(new_ms)}",
    ])


def client_card(record, up: int, down: int, now_ms: Optional[int] = None) -> str:
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    total = up + down
    if record.expiry_ms <= 0:
        sub = "💎 Unlimited (∞)"
    elif record.expiry_ms < now_ms:
        sub = f"⛔ Expired: {fmt_ts(record.expiry_ms)}"
    else:
        d, h = time_left(record.expiry_ms, now_ms)
        sub = f"✅ Until {fmt_ts(record.expiry_ms)} ({d} d {h} h)"
    state = {"⛔": "⛔ Expired", "🔴": "🔴 Disabled", "💎": "💎 Unlimited", "🟢": "🟢 Active"}[status_emoji(record, now_ms)]
    limit = f" / {fmt_bytes(record.total_bytes)}" if record.total_bytes > 0 else " (∞)"
    lines = [
        f"👤 <b>{html.escape(record.email)}</b>",
        "",
        f"📊 Status: {state}",
    ]
    if record.tg_id:
        lines.append(f"🆔 Telegram ID: <code>{record.tg_id}</code>")
    lines += [
        f"📅 Subscription: {sub}",
        "",
        f"⬆️ Up: {fmt_bytes(up)}",
        f"⬇️ Down: {fmt_bytes(down)}",
        f"📊 Total: {fmt_bytes(total)}{limit}",
    ]
    return "\n".join(lines)


def broadcast_preview(text: str) -> str:
    return "\n".join([
        "📢 <b>Announcement preview</b>",
        "",
        html.escape(text),
        "",
        "Send it to every client with a Telegram ID?",
    ])


def broadcast_report(report) -> str:
    if not report.recipients:
        return "📢 Nobody to send to: no client has a Telegram ID."
    return "\n".join([
        "📢 <b>Announcement sent</b>",
        "",
        f"✅ Delivered: {report.sent}",
        f"❌ Failed: {report.failed}",
    ])


def expiry_warning(email: str, expiry_ms: int, now_ms: Optional[int] = None) -> str:
    days, hours = time_left(expiry_ms, now_ms)
    head = "🔴 <b>Your subscription expires soon!</b>" if days < 1 else "⚠️ <b>Your subscription is about to expire</b>"
    return "\n".join([
        head,
        "",
        f"👤 Account: <b>{html.escape(email)}</b>",
        f"⏰ Expires: {fmt_ts(expiry_ms)}",
        f"📅 Left: {days} d {hours} h",
        "",
        "Extend it so you do not lose access.",
    ])


def instructions_text(url: str) -> str:
    if not url:
        return "📖 No setup instructions yet. Ask an administrator."
    return f"📖 <b>How to connect</b>\n\n{html.escape(url)}"


def fmt_uptime(seconds: int) -> str:
    seconds = max(int(seconds), 0)
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    return (f"{days}d " if days else "") + f"{hours}h {rest // 60}m"


def server_status_lines(status: dict) -> List[str]:
    lines = []
    if "cpu" in status:
        lines.append(f"💻 CPU: {float(status['cpu'] or 0):.2f}%")
    mem = status.get("mem") or {}
    if mem.get("total"):
        lines.append(f"🧠 Memory: {fmt_bytes(int(mem.get('current') or 0))} / {fmt_bytes(int(mem['total']))}")
    if "uptime" in status:
        lines.append(f"⏱️ Uptime: {fmt_uptime(status['uptime'] or 0)}")
    xray = status.get("xray") or {}
    if xray.get("state"):
        version = f" ({html.escape(str(xray['version']))})" if xray.get("version") else ""
        lines.append(f"⚙️ Xray: {html.escape(str(xray['state']))}{version}")
    return lines


def status_text(server: Optional[dict], records, registrations: int, conversations: int,
                server_err: str = "", clients_err: str = "", now_ms: Optional[int] = None) -> str:
    lines = ["📊 <b>Server status</b>", ""]
    if server_err:
        lines.append(f"❌ Unavailable: {html.escape(server_err)}")
    else:
        lines += server_status_lines(server or {}) or ["No data."]

    lines += [""]
    if clients_err:
        lines.append(f"👥 <b>Clients</b>: ❌ {html.escape(clients_err)}")
    else:
        counts = {"🟢": 0, "🔴": 0, "⛔": 0, "💎": 0}
        for record in records or []:
            counts[status_emoji(record, now_ms)] += 1
        lines += [
            f"👥 <b>Clients</b>: {len(records or [])}",
            f"🟢 Active: {counts['🟢']}  🔴 Disabled: {counts['🔴']}  "
            f"⛔ Expired: {counts['⛔']}  💎 Unlimited: {counts['💎']}",
        ]

    lines += [
        "",
        "🤖 <b>Bot</b>",
        f"📝 Registrations in progress: {registrations}",
        f"💬 Open conversations: {conversations}",
    ]
    return "\n".join(lines)


# ---------- menus ----------
def admin_menu_rows() -> List[List[str]]:
    return [[BTN_CLIENTS, BTN_STATUS], [BTN_BROADCAST, BTN_HELP]]


def user_menu_rows() -> List[List[str]]:
    return [
        [BTN_MY_SUBSCRIPTION, BTN_EXTEND],
        [BTN_REGISTER, BTN_SETTINGS],
        [BTN_CONTACT_ADMIN, BTN_INSTRUCTIONS],
        [BTN_HELP],
    ]


def settings_menu_rows() -> List[List[str]]:
    return [[BTN_UPDATE_USERNAME], [BTN_BACK]]


MAX_LISTED_CLIENTS = 90


def client_list_keyboard(records, usage: dict, now_ms: Optional[int] = None) -> Keyboard:
    rows = []
    for record in records[:MAX_LISTED_CLIENTS]:
        lid, pos = record.key
        label = f"{status_emoji(record, now_ms)} {record.email}{traffic_suffix(int(usage.get(record.email) or 0), record.total_bytes)}"
        rows.append([(label, f"{CB_CLIENT}{lid}_{pos}")])
    return rows


def client_list_text(count: int) -> str:
    if not count:
        return "👥 No clients on the panel yet."
    text = f"👥 <b>Clients</b> ({count})\n\n🟢 active  🔴 disabled  ⛔ expired  💎 unlimited"
    if count > MAX_LISTED_CLIENTS:
        text += f"\n\nShowing the first {MAX_LISTED_CLIENTS}. Use /usage &lt;email&gt; for the rest."
    return text


ADMIN_HELP = "\n".join([
    "🛠 <b>Administrator commands</b>",
    "",
    "/clients - list every client on the panel",
    "/usage &lt;email&gt; - traffic of one client",
    "/status - server load and client counts",
    f"{BTN_BROADCAST} - message every client with a Telegram ID",
    "/id - your Telegram ID",
    "/cancel - stop writing a message",
    "",
    "Registration and extension requests arrive here with Approve/Reject buttons.",
])

USER_HELP = "\n".join([
    "❓ <b>Help</b>",
    "",
    f"{BTN_REGISTER} - request a new account",
    f"{BTN_MY_SUBSCRIPTION} - status and connection link",
    f"{BTN_EXTEND} - ask for more days",
    f"{BTN_SETTINGS} - change your username",
    f"{BTN_CONTACT_ADMIN} - write to the administrators",
    f"{BTN_INSTRUCTIONS} - how to set up the app",
    "",
    "/id - your Telegram ID",
    "/cancel - cancel the current action",
])
