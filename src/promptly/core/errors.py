"""Domain exceptions raised by the core services.

Core modules never import FastAPI.  They raise these exceptions and the API
layer translates them to HTTP responses using each class's ``status_code``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class PromptlyError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(PromptlyError):
    status_code = 404


class ValidationError(PromptlyError):
    status_code = 400


class PermissionDeniedError(PromptlyError):
    status_code = 403


class ConflictError(PromptlyError):
    status_code = 409


class InsufficientCreditsError(PromptlyError):
    """Raised when a generation costs more than the user's balance."""

    status_code = 402

    def __init__(self, message: str, *, balance: float, required: float) -> None:
        super().__init__(message)
        self.balance = balance
        self.required = required


class ActionUnavailableError(ConflictError):
    """Raised when Prodigi reports an order action as unavailable.

    Attributes:
        action: Prodigi action name (``cancel``, ``changeRecipientDetails``...).
        reason: Human-readable reason, from Prodigi when it supplied one.
    """

    def __init__(self, action: str, reason: str) -> None:
        super().__init__(reason)
        self.action = action
        self.reason = reason


class OrderNotSubmittedError(ValidationError):
    """Raised when an order has not been sent to Prodigi yet.

    Carries a stub actions map so callers can still render every action as
    unavailable.
    """

    def __init__(self, message: str, actions: dict[str, Any]) -> None:
        super().__init__(message)
        self.actions = actions


class GuestLimitError(PromptlyError):
    """Raised when an anonymous session has used its rolling allowance.

    Attributes:
        resets_at: When the oldest generation in the window expires.
    """

    status_code = 429

    def __init__(self, message: str, *, resets_at: datetime | None) -> None:
        super().__init__(message)
        self.resets_at = resets_at
