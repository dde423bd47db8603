"""Error taxonomy shared by the state core and the handlers.

Every failure is contained to the chat that caused it: handlers catch
:class:`BotError` and show ``exc.message`` to the acting party.
Rate-limit denial is not an exception:
:meth:`RateLimiter.admit` returns ``False``.
"""

from __future__ import annotations


class BotError(Exception):
    code = "INTERNAL"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class NotFound(BotError):
    """No such pending request, relay context or cached record."""

    code = "NOT_FOUND"


class ValidationFailed(BotError):
    """User input rejected; conversation state is left as it was."""

    code = "INVALID_INPUT"


class ExternalCallFailed(BotError):
    """Panel or gateway call failed; workflow state is left unchanged."""

    code = "API_ERROR"


class DuplicateRequest(BotError):
    code = "DUPLICATE"


class InvalidTransition(BotError):
    code = "INVALID_TRANSITION"
