"""What the state core needs from the messaging side.

Implementations must swallow and log delivery failures: from the core's
point of view every call is fire-and-forget.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

Keyboard = List[List[Tuple[str, str]]]


class Gateway(Protocol):
    async def send_text(self, chat_id: int, text: str, keyboard: Optional[Keyboard] = None) -> Optional[int]:
        """Send *text*; return the new message id, or ``None`` on failure."""

    async def edit_text(self, chat_id: int, message_id: int, text: str, keyboard: Optional[Keyboard] = None) -> bool:
        ...

    async def answer_callback(self, callback_id: str, text: Optional[str] = None, alert: bool = False) -> bool:
        ...
