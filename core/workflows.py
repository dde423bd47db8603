"""Registration and extension approval workflows.

Both workflows fan a decision prompt out to every administrator and apply the
first decision against the panel.  The panel client is synchronous, so every
panel call goes through ``run_in_executor``; no lock in here is held across
a panel or gateway call.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, replace
from enum import Enum
from threading import Lock
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

import views
from core.conversation import ConversationState, ConversationStore
from core.errors import (
    DuplicateRequest,
    ExternalCallFailed,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from core.gateway import Gateway
from core.locks import KeyedLock

log = logging.getLogger("xui_bot.workflows")

EMAIL_MIN_LEN = 3
EMAIL_MAX_LEN = 32
PANEL_NOT_FOUND = "not found"
TICKET_NONCE_BYTES = 3


class RequestStatus(str, Enum):
    INPUT_EMAIL = "input_email"
    INPUT_DURATION = "input_duration"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


STATUS_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.INPUT_EMAIL: frozenset({RequestStatus.INPUT_DURATION}),
    RequestStatus.INPUT_DURATION: frozenset({RequestStatus.PENDING}),
    RequestStatus.PENDING: frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED}),
    RequestStatus.APPROVED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
}


@dataclass
class Profile:
    chat_id: int
    display_name: str = ""
    transport_username: str = ""


@dataclass
class RegistrationRequest:
    user_id: int
    chat_id: int
    display_name: str = ""
    transport_username: str = ""
    desired_email: str = ""
    duration_days: int = 0
    status: RequestStatus = RequestStatus.INPUT_EMAIL
    created_at: float = 0.0

    def advance(self, status: RequestStatus) -> None:
        if status not in STATUS_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Request cannot go from {self.status.value} to {status.value}."
            )
        self.status = status


@dataclass(frozen=True)
class ExtensionTicket:
    user_id: int
    days: int
    ticket: str
    email: str
    expiry_ms: int


@dataclass(frozen=True)
class ExtensionResult:
    user_id: int
    email: str
    days: int
    old_expiry_ms: int
    new_expiry_ms: int


def validate_email(raw_text: str) -> str:
    """Return the trimmed client name or raise :class:`ValidationFailed`."""
    email = (raw_text or "").strip()
    if not email:
        raise ValidationFailed("Username cannot be empty.")
    if views.is_menu_label(email):
        raise ValidationFailed("Please type a username instead of pressing a menu button.")
    if not EMAIL_MIN_LEN <= len(email) <= EMAIL_MAX_LEN:
        raise ValidationFailed(
            f"Username must be {EMAIL_MIN_LEN} to {EMAIL_MAX_LEN} characters long."
        )
    return email


def extended_expiry(current_ms: int, days: int, now_ms: int) -> int:
    # Extending a lapsed subscription starts from now, never from the past.
    return max(int(current_ms), int(now_ms)) + int(days) * views.DAY_MS


async def _run_panel(fn: Callable, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fn, *args)


async def _fan_out(gateway: Gateway, chat_ids: Iterable[int], text: str, keyboard=None) -> int:
    results = await asyncio.gather(*(gateway.send_text(cid, text, keyboard) for cid in chat_ids))
    return sum(1 for r in results if r is not None)


class RegistrationWorkflow:
    """``InputEmail -> InputDuration -> Pending -> Approved | Rejected``.

    One live request per user.  Deciding moves the request out of the map in
    a single step under that user's lock, so of two administrators pressing
    buttons at the same time only one ever reaches the panel; the other gets
    :class:`NotFound`.  A failed panel call puts the request back as Pending.
    """

    def __init__(
        self,
        conversations: ConversationStore,
        gateway: Gateway,
        panel,
        admin_ids: Iterable[int],
        clock: Callable[[], float] = time.time,
        instructions_url: str = "",
    ):
        self.conversations = conversations
        self.gateway = gateway
        self.panel = panel
        self.admin_ids: Tuple[int, ...] = tuple(admin_ids)
        self.clock = clock
        self.instructions_url = instructions_url
        self._requests: Dict[int, RegistrationRequest] = {}
        # Requests an administrator has claimed and whose panel call is running.
        self._in_flight: Dict[int, RegistrationRequest] = {}
        self._lock_for = KeyedLock()

    def get(self, user_id: int) -> Optional[RegistrationRequest]:
        with self._lock_for(user_id):
            req = self._requests.get(user_id) or self._in_flight.get(user_id)
            return replace(req) if req else None

    def begin(self, user_id: int, profile: Profile) -> RegistrationRequest:
        with self._lock_for(user_id):
            existing = self._requests.get(user_id)
            if user_id in self._in_flight or (existing and existing.status is RequestStatus.PENDING):
                raise DuplicateRequest(
                    "You already have a registration request waiting for an administrator."
                )
            req = RegistrationRequest(
                user_id=user_id,
                chat_id=profile.chat_id,
                display_name=profile.display_name,
                transport_username=profile.transport_username,
                created_at=self.clock(),
            )
            self._requests[user_id] = req
            snapshot = replace(req)
        self.conversations.set_state(profile.chat_id, ConversationState.AWAITING_EMAIL)
        log.info("registration started for user %s", user_id)
        return snapshot

    def submit_email(self, user_id: int, raw_text: str) -> RegistrationRequest:
        with self._lock_for(user_id):
            req = self._requests.get(user_id)
            if req is None or req.status is not RequestStatus.INPUT_EMAIL:
                raise NotFound("Registration not found. Press Register to start again.")
            email = validate_email(raw_text)
            req.advance(RequestStatus.INPUT_DURATION)
            req.desired_email = email
            snapshot = replace(req)
        self.conversations.set_state(snapshot.chat_id, ConversationState.AWAITING_DURATION)
        return snapshot

    async def submit_duration(self, user_id: int, days: int) -> RegistrationRequest:
        with self._lock_for(user_id):
            req = self._requests.get(user_id)
            if req is not None and req.status is RequestStatus.PENDING:
                raise DuplicateRequest("Your request has already been sent.")
            if req is None or req.status is not RequestStatus.INPUT_DURATION:
                raise NotFound("Registration not found. Press Register to start again.")
            if int(days) <= 0:
                raise ValidationFailed("Choose one of the offered durations.")
            req.duration_days = int(days)
            req.advance(RequestStatus.PENDING)
            snapshot = replace(req)
        self.conversations.clear(snapshot.chat_id)
        delivered = await _fan_out(
            self.gateway,
            self.admin_ids,
            views.registration_prompt(snapshot),
            views.registration_decision_keyboard(user_id),
        )
        log.info(
            "registration from user %s (%s, %s days) sent to %d/%d admins",
            user_id, snapshot.desired_email, snapshot.duration_days, delivered, len(self.admin_ids),
        )
        return snapshot

    def _claim(self, user_id: int) -> RegistrationRequest:
        with self._lock_for(user_id):
            req = self._requests.get(user_id)
            if req is None or req.status is not RequestStatus.PENDING:
                raise NotFound("This request was already handled or has expired.")
            del self._requests[user_id]
            self._in_flight[user_id] = req
            return req

    def _release(self, user_id: int, restore: bool) -> None:
        with self._lock_for(user_id):
            req = self._in_flight.pop(user_id, None)
            if restore and req is not None:
                self._requests[user_id] = req

    async def decide(self, user_id: int, admin_chat_id: int, approve: bool) -> RegistrationRequest:
        """Apply one administrator's decision.

        Raises :class:`NotFound` when another decision got there first and
        :class:`ExternalCallFailed` when the panel refused the new client; in
        the latter case the request stays Pending so the decision can be
        repeated.
        """
        req = self._claim(user_id)

        if not approve:
            req.advance(RequestStatus.REJECTED)
            log.info("registration of user %s rejected by %s", user_id, admin_chat_id)
            try:
                await self.gateway.send_text(
                    req.chat_id,
                    "❌ Your registration request was rejected.\n\nContact an administrator for details.",
                )
            finally:
                self._release(user_id, restore=False)
            return req

        try:
            ok, err = await _run_panel(
                self.panel.create_client_for, req.desired_email, req.duration_days, req.user_id
            )
        except Exception:
            self._release(user_id, restore=True)
            raise
        if not ok:
            self._release(user_id, restore=True)
            log.warning("creating client %s for user %s failed: %s", req.desired_email, user_id, err)
            raise ExternalCallFailed(f"Failed to create client: {err}")

        req.advance(RequestStatus.APPROVED)
        log.info("registration of user %s approved by %s", user_id, admin_chat_id)
        # The user cannot start over until they have heard the outcome.
        try:
            await self._deliver_approval(req)
        finally:
            self._release(user_id, restore=False)
        return req

    async def _deliver_approval(self, req: RegistrationRequest) -> None:
        expiry_ms = int(self.clock() * 1000) + req.duration_days * views.DAY_MS
        link, lerr = await _run_panel(self.panel.get_subscription_link, req.desired_email)
        if lerr:
            log.warning("no subscription link for %s: %s", req.desired_email, lerr)
            await self.gateway.send_text(
                req.chat_id,
                "✅ <b>Your registration was approved!</b>\n\n"
                "Open \"My subscription\" to get your connection link.",
            )
        else:
            await self.gateway.send_text(
                req.chat_id,
                views.subscription_delivery(
                    "✅ <b>Your registration was approved!</b>",
                    req.desired_email, link, expiry_ms, self.instructions_url,
                ),
            )

    def expire(self, ttl: float) -> int:
        """Drop requests older than *ttl* seconds whatever their status."""
        now = self.clock()
        removed = 0
        for user_id in list(self._requests):
            with self._lock_for(user_id):
                req = self._requests.get(user_id)
                if req is not None and now - req.created_at > ttl:
                    del self._requests[user_id]
                    removed += 1
                    self.conversations.clear_if(
                        req.chat_id,
                        ConversationState.AWAITING_EMAIL,
                        ConversationState.AWAITING_DURATION,
                    )
        return removed

    def __len__(self) -> int:
        return len(self._requests)


class ExtensionWorkflow:
    """Subscription extension: request, then one administrator decision.

    Nothing is stored per request.  The callback payload carries the user,
    the duration and a one-shot ticket; a ticket is claimed by the first
    decision and cannot be applied twice.  Distinct requests from the same
    user get distinct tickets and stay independent.

    A ticket starts with the hex second it was issued at and is refused once
    it is older than *ttl*.  Consumed tickets are remembered at least that
    long, so forgetting one never makes it usable again.
    """

    def __init__(
        self,
        gateway: Gateway,
        panel,
        admin_ids: Iterable[int],
        clock: Callable[[], float] = time.time,
        instructions_url: str = "",
        ttl: float = 24 * 3600,
    ):
        self.gateway = gateway
        self.panel = panel
        self.admin_ids: Tuple[int, ...] = tuple(admin_ids)
        self.clock = clock
        self.instructions_url = instructions_url
        self.ttl = ttl
        self._claimed: Dict[str, float] = {}
        self._done: Dict[str, float] = {}
        self._lock = Lock()

    async def _live_record(self, user_id: int):
        record, err = await _run_panel(self.panel.find_client_by_tg_id, user_id)
        if err == PANEL_NOT_FOUND:
            raise NotFound("You have no subscription yet. Register first.")
        if err:
            raise ExternalCallFailed(f"Could not load your subscription: {err}")
        if record.unlimited_expiry:
            raise ValidationFailed("Your subscription is unlimited, no extension is needed.")
        return record

    async def check_eligible(self, user_id: int):
        """Live client record for *user_id*, if it can be extended."""
        return await self._live_record(user_id)

    async def request(
        self,
        user_id: int,
        days: int,
        display_name: str = "",
        tg_username: str = "",
    ) -> ExtensionTicket:
        if int(days) <= 0:
            raise ValidationFailed("Choose one of the offered durations.")
        record = await self._live_record(user_id)
        ticket = self.new_ticket()
        delivered = await _fan_out(
            self.gateway,
            self.admin_ids,
            views.extension_prompt(user_id, display_name, tg_username, record.email, int(days), record.expiry_ms),
            views.extension_decision_keyboard(user_id, int(days), ticket),
        )
        log.info(
            "extension request %s from user %s (+%s days) sent to %d/%d admins",
            ticket, user_id, days, delivered, len(self.admin_ids),
        )
        return ExtensionTicket(user_id, int(days), ticket, record.email, record.expiry_ms)

    def new_ticket(self) -> str:
        return f"{int(self.clock()):x}{secrets.token_hex(TICKET_NONCE_BYTES)}"

    @staticmethod
    def issued_at(ticket: str) -> Optional[int]:
        stamp = (ticket or "")[:-2 * TICKET_NONCE_BYTES]
        try:
            return int(stamp, 16)
        except ValueError:
            return None

    def _claim(self, ticket: str) -> None:
        issued = self.issued_at(ticket)
        now = self.clock()
        if issued is None or not 0 <= now - issued <= self.ttl:
            raise NotFound("This request has expired. Ask the user to send it again.")
        with self._lock:
            if ticket in self._claimed or ticket in self._done:
                raise NotFound("This request was already handled.")
            self._claimed[ticket] = now

    def _finish(self, ticket: str, consumed: bool) -> None:
        with self._lock:
            self._claimed.pop(ticket, None)
            if consumed:
                self._done[ticket] = self.clock()

    async def approve(self, user_id: int, days: int, ticket: str, admin_chat_id: int) -> ExtensionResult:
        self._claim(ticket)
        try:
            record = await self._live_record(user_id)
            new_expiry = extended_expiry(record.expiry_ms, days, int(self.clock() * 1000))
            ok, err = await _run_panel(
                self.panel.update_client,
                record.listing_id,
                record.email,
                {"expiryTime": new_expiry},
            )
            if not ok:
                raise ExternalCallFailed(f"Failed to update client: {err}")
        except Exception:
            self._finish(ticket, consumed=False)
            raise
        self._finish(ticket, consumed=True)
        log.info(
            "extension %s of %s approved by %s: %s -> %s",
            ticket, record.email, admin_chat_id, record.expiry_ms, new_expiry,
        )

        link, lerr = await _run_panel(self.panel.get_subscription_link, record.email)
        header = f"✅ <b>Your subscription was extended by {views.days_label(int(days))}!</b>"
        if lerr:
            log.warning("no subscription link for %s: %s", record.email, lerr)
            text = f"{header}\n\n⏰ Expires: {views.fmt_ts(new_expiry)}"
        else:
            text = views.subscription_delivery(header, record.email, link, new_expiry, self.instructions_url)
        await self.gateway.send_text(user_id, text)
        return ExtensionResult(user_id, record.email, int(days), record.expiry_ms, new_expiry)

    async def reject(self, user_id: int, ticket: str, admin_chat_id: int) -> None:
        self._claim(ticket)
        self._finish(ticket, consumed=True)
        log.info("extension %s of user %s rejected by %s", ticket, user_id, admin_chat_id)
        await self.gateway.send_text(
            user_id,
            "❌ Your extension request was rejected.\n\nContact an administrator for details.",
        )

    def expire(self, ttl: float) -> int:
        now = self.clock()
        ttl = max(ttl, self.ttl)
        with self._lock:
            stale: List[str] = [t for t, at in self._done.items() if now - at > ttl]
            for t in stale:
                del self._done[t]
        return len(stale)
