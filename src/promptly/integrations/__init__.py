"""HTTP clients for third-party services (Prodigi fulfilment, Square payments)."""

from promptly.integrations.prodigi import ProdigiClient, ProdigiError
from promptly.integrations.square import (
    PaymentError,
    PaymentLink,
    RefundResult,
    SquareClient,
    verify_signature,
)

__all__ = [
    "PaymentError",
    "PaymentLink",
    "ProdigiClient",
    "ProdigiError",
    "RefundResult",
    "SquareClient",
    "verify_signature",
]
