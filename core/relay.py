"""One-shot message relay between administrators and clients.

An administrator picks a client (or presses Reply under a user's message)
and the *next* text they send goes to that client; a user pressing
"Contact admin" has their next text fanned out to every administrator.
"""

from __future__ import annotations

import asyncio
import html
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Iterable, Optional, Tuple

import views
from core.conversation import ConversationState, ConversationStore
from core.errors import ExternalCallFailed, NotFound
from core.gateway import Gateway

log = logging.getLogger("xui_bot.relay")


@dataclass(frozen=True)
class RelayContext:
    counterpart_id: int
    display_name: str = ""
    created_at: float = 0.0


class MessageRelay:
    def __init__(
        self,
        conversations: ConversationStore,
        gateway: Gateway,
        admin_ids: Iterable[int],
        clock: Callable[[], float] = time.time,
    ):
        self.conversations = conversations
        self.gateway = gateway
        self.admin_ids: Tuple[int, ...] = tuple(admin_ids)
        self.clock = clock
        self._admin: Dict[int, RelayContext] = {}
        self._user: Dict[int, RelayContext] = {}
        self._lock = Lock()

    def begin_admin_message(self, admin_chat_id: int, counterpart_id: int, display_name: str = "") -> RelayContext:
        ctx = RelayContext(int(counterpart_id), display_name, self.clock())
        with self._lock:
            self._admin[admin_chat_id] = ctx
            self._user.pop(admin_chat_id, None)
        self.conversations.set_state(admin_chat_id, ConversationState.AWAITING_ADMIN_MESSAGE)
        return ctx

    def begin_user_message(self, chat_id: int, user_id: int, display_name: str = "") -> RelayContext:
        ctx = RelayContext(int(user_id), display_name, self.clock())
        with self._lock:
            self._user[chat_id] = ctx
            self._admin.pop(chat_id, None)
        self.conversations.set_state(chat_id, ConversationState.AWAITING_USER_MESSAGE)
        return ctx

    def admin_context(self, chat_id: int) -> Optional[RelayContext]:
        with self._lock:
            return self._admin.get(chat_id)

    def user_context(self, chat_id: int) -> Optional[RelayContext]:
        with self._lock:
            return self._user.get(chat_id)

    def _take(self, table: Dict[int, RelayContext], chat_id: int, tag: ConversationState) -> RelayContext:
        with self._lock:
            ctx = table.pop(chat_id, None)
        self.conversations.clear_if(chat_id, tag)
        if ctx is None:
            raise NotFound("Nothing to reply to. Pick a recipient first.")
        return ctx

    def _put_back(self, table: Dict[int, RelayContext], chat_id: int, ctx: RelayContext, tag: ConversationState) -> None:
        with self._lock:
            table.setdefault(chat_id, ctx)
        self.conversations.set_state(chat_id, tag)

    async def relay_admin_message(self, admin_chat_id: int, text: str) -> RelayContext:
        """Deliver *text* to the client this administrator is writing to."""
        tag = ConversationState.AWAITING_ADMIN_MESSAGE
        ctx = self._take(self._admin, admin_chat_id, tag)
        sent = await self.gateway.send_text(
            ctx.counterpart_id,
            f"📨 <b>Message from administrator:</b>\n\n{html.escape(text)}",
            views.contact_admin_keyboard(),
        )
        if sent is None:
            self._put_back(self._admin, admin_chat_id, ctx, tag)
            log.warning("relay to %s failed", ctx.counterpart_id)
            raise ExternalCallFailed(
                f"Could not deliver the message to {ctx.display_name or ctx.counterpart_id}. "
                "Send it again or use /cancel."
            )
        log.info("admin %s wrote to %s", admin_chat_id, ctx.counterpart_id)
        return ctx

    async def relay_user_message(self, chat_id: int, text: str, tg_username: str = "") -> int:
        """Fan *text* out to every administrator; return how many got it."""
        tag = ConversationState.AWAITING_USER_MESSAGE
        ctx = self._take(self._user, chat_id, tag)
        who = html.escape(ctx.display_name or str(ctx.counterpart_id))
        if tg_username:
            who += f" (@{html.escape(tg_username)})"
        body = "\n".join([
            "💬 <b>Message from user</b>",
            "",
            f"👤 {who}",
            f"🆔 <code>{ctx.counterpart_id}</code>",
            "",
            html.escape(text),
        ])
        results = await asyncio.gather(*(
            self.gateway.send_text(admin, body, views.reply_keyboard(ctx.counterpart_id))
            for admin in self.admin_ids
        ))
        delivered = sum(1 for r in results if r is not None)
        if not delivered:
            self._put_back(self._user, chat_id, ctx, tag)
            raise ExternalCallFailed("Could not reach an administrator. Try again later.")
        log.info("user %s wrote to %d admins", ctx.counterpart_id, delivered)
        return delivered

    def cancel(self, chat_id: int) -> bool:
        with self._lock:
            had = self._admin.pop(chat_id, None) is not None
            had = (self._user.pop(chat_id, None) is not None) or had
        self.conversations.clear_if(
            chat_id, ConversationState.AWAITING_ADMIN_MESSAGE, ConversationState.AWAITING_USER_MESSAGE
        )
        return had

    def expire(self, ttl: float) -> int:
        """Drop contexts older than *ttl* seconds along with their chat tags."""
        now = self.clock()
        stale = []
        with self._lock:
            for table, tag in (
                (self._admin, ConversationState.AWAITING_ADMIN_MESSAGE),
                (self._user, ConversationState.AWAITING_USER_MESSAGE),
            ):
                for chat_id, ctx in list(table.items()):
                    if now - ctx.created_at > ttl:
                        del table[chat_id]
                        self.conversations.clear_if(chat_id, tag)
                        stale.append(chat_id)
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._admin) + len(self._user)
