"""Administrator announcements to every client that has a Telegram ID.

Three steps per administrator chat: ``begin`` waits for the text, ``submit``
stores it as a draft for a preview, ``confirm`` sends it.  A draft is taken
out of the store before anything is sent, so a double press on "Send"
delivers once.
"""

from __future__ import annotations

import asyncio
import html
import logging
import time
from dataclasses import dataclass, replace
from threading import Lock
from typing import Callable, Dict, List, Optional

from core.conversation import ConversationState, ConversationStore
from core.errors import ExternalCallFailed, NotFound, ValidationFailed
from core.gateway import Gateway

log = logging.getLogger("xui_bot.broadcast")

# Telegram allows about 30 messages a second per bot.
SEND_PAUSE = 0.05


@dataclass
class BroadcastDraft:
    text: str = ""
    created_at: float = 0.0


@dataclass(frozen=True)
class BroadcastReport:
    recipients: int
    sent: int
    failed: int


def recipients_of(records) -> List[int]:
    """Distinct Telegram IDs in listing order, skipping clients without one."""
    seen: Dict[int, None] = {}
    for record in records:
        if record.tg_id > 0:
            seen.setdefault(record.tg_id, None)
    return list(seen)


class Broadcast:
    def __init__(
        self,
        conversations: ConversationStore,
        gateway: Gateway,
        panel,
        clock: Callable[[], float] = time.time,
        pause: float = SEND_PAUSE,
    ):
        self.conversations = conversations
        self.gateway = gateway
        self.panel = panel
        self.clock = clock
        self.pause = pause
        self._drafts: Dict[int, BroadcastDraft] = {}
        self._lock = Lock()

    def begin(self, admin_chat_id: int) -> None:
        with self._lock:
            self._drafts[admin_chat_id] = BroadcastDraft(created_at=self.clock())
        self.conversations.set_state(admin_chat_id, ConversationState.AWAITING_BROADCAST_MESSAGE)

    def draft(self, admin_chat_id: int) -> Optional[BroadcastDraft]:
        with self._lock:
            d = self._drafts.get(admin_chat_id)
            return replace(d) if d else None

    def submit(self, admin_chat_id: int, text: str) -> BroadcastDraft:
        text = (text or "").strip()
        if not text:
            raise ValidationFailed("The announcement cannot be empty.")
        with self._lock:
            d = self._drafts.get(admin_chat_id)
            if d is None:
                raise NotFound("No announcement in progress. Start it again from the menu.")
            d.text = text
            snapshot = replace(d)
        self.conversations.clear_if(admin_chat_id, ConversationState.AWAITING_BROADCAST_MESSAGE)
        return snapshot

    def _take(self, admin_chat_id: int) -> BroadcastDraft:
        with self._lock:
            d = self._drafts.get(admin_chat_id)
            if d is None or not d.text:
                raise NotFound("This announcement was already sent or cancelled.")
            del self._drafts[admin_chat_id]
            return d

    async def confirm(self, admin_chat_id: int) -> BroadcastReport:
        d = self._take(admin_chat_id)
        loop = asyncio.get_running_loop()
        records, err = await loop.run_in_executor(None, self.panel.list_clients)
        if err:
            with self._lock:
                self._drafts.setdefault(admin_chat_id, d)
            raise ExternalCallFailed(f"Could not load clients: {err}")

        body = f"📢 <b>Announcement</b>\n\n{html.escape(d.text)}"
        recipients = recipients_of(records)
        sent = 0
        for i, tg_id in enumerate(recipients):
            if i and self.pause:
                await asyncio.sleep(self.pause)
            if await self.gateway.send_text(tg_id, body) is not None:
                sent += 1
        report = BroadcastReport(len(recipients), sent, len(recipients) - sent)
        log.info(
            "broadcast by %s: %d sent, %d failed", admin_chat_id, report.sent, report.failed,
        )
        return report

    def cancel(self, admin_chat_id: int) -> bool:
        with self._lock:
            had = self._drafts.pop(admin_chat_id, None) is not None
        self.conversations.clear_if(admin_chat_id, ConversationState.AWAITING_BROADCAST_MESSAGE)
        return had

    def expire(self, ttl: float) -> int:
        now = self.clock()
        stale = []
        with self._lock:
            for chat_id, d in list(self._drafts.items()):
                if now - d.created_at > ttl:
                    del self._drafts[chat_id]
                    self.conversations.clear_if(chat_id, ConversationState.AWAITING_BROADCAST_MESSAGE)
                    stale.append(chat_id)
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._drafts)
