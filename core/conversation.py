"""Per-chat conversation tags.

A chat holds at most one tag; it tells the dispatcher how to read the next
plain-text message from that chat.  The store never interprets text itself.
"""

from __future__ import annotations

import logging
from enum import Enum
from threading import Lock
from typing import Dict, FrozenSet, Optional

from core.errors import InvalidTransition

log = logging.getLogger("xui_bot.conversation")


class ConversationState(str, Enum):
    NONE = "none"
    AWAITING_EMAIL = "awaiting_email"
    AWAITING_DURATION = "awaiting_duration"
    AWAITING_NEW_EMAIL = "awaiting_new_email"
    AWAITING_ADMIN_MESSAGE = "awaiting_admin_message"
    AWAITING_USER_MESSAGE = "awaiting_user_message"
    AWAITING_BROADCAST_MESSAGE = "awaiting_broadcast_message"


# Tags a chat can enter from anywhere: starting one of these flows replaces
# whatever the chat was doing (no stacking).
ENTRY_STATES: FrozenSet[ConversationState] = frozenset({
    ConversationState.AWAITING_EMAIL,
    ConversationState.AWAITING_NEW_EMAIL,
    ConversationState.AWAITING_ADMIN_MESSAGE,
    ConversationState.AWAITING_USER_MESSAGE,
    ConversationState.AWAITING_BROADCAST_MESSAGE,
})

TRANSITIONS: Dict[ConversationState, FrozenSet[ConversationState]] = {
    state: ENTRY_STATES for state in ConversationState
}
TRANSITIONS[ConversationState.AWAITING_EMAIL] = ENTRY_STATES | {ConversationState.AWAITING_DURATION}
TRANSITIONS[ConversationState.AWAITING_DURATION] = ENTRY_STATES | {ConversationState.AWAITING_DURATION}


class ConversationStore:
    def __init__(self):
        self._tags: Dict[int, ConversationState] = {}
        self._lock = Lock()

    def set_state(self, chat_id: int, tag: ConversationState) -> None:
        tag = ConversationState(tag)
        if tag is ConversationState.NONE:
            raise InvalidTransition("use clear() to leave a conversation")
        with self._lock:
            current = self._tags.get(chat_id, ConversationState.NONE)
            if tag not in TRANSITIONS[current]:
                raise InvalidTransition(f"{current.value} -> {tag.value} is not allowed")
            self._tags[chat_id] = tag
        log.debug("chat %s: %s -> %s", chat_id, current.value, tag.value)

    def get_state(self, chat_id: int) -> Optional[ConversationState]:
        with self._lock:
            return self._tags.get(chat_id)

    def clear(self, chat_id: int) -> None:
        with self._lock:
            self._tags.pop(chat_id, None)

    def clear_if(self, chat_id: int, *tags: ConversationState) -> bool:
        """Clear *chat_id* only while it still holds one of *tags*."""
        with self._lock:
            if self._tags.get(chat_id) in tags:
                del self._tags[chat_id]
                return True
            return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._tags)
