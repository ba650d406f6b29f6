"""
Payment gateway boundary.

The marketplace never speaks a gateway protocol directly; it consumes these
three capabilities and the asynchronous ``captured``/``failed`` webhook events.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional


class GatewayEvent(Enum):
    CAPTURED = "captured"
    FAILED = "failed"


# Gateway payment states that count as money received
SUCCESSFUL_PAYMENT_STATES = frozenset({"captured", "authorized"})


class PaymentGateway(ABC):
    """Escrow-capable payment provider (Razorpay, Stripe, ...)"""

    name = "gateway"

    @abstractmethod
    def create_escrow_order(self, amount: int, currency: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Create a gateway order for ``amount`` minor units and return its id"""

    @abstractmethod
    def verify_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        """Check the checkout signature returned to the client"""

    @abstractmethod
    def fetch_payment_status(self, gateway_payment_id: str) -> str:
        """Return the provider's status string for a payment (e.g. ``captured``)"""

    def fetch_payment_order_id(self, gateway_payment_id: str) -> Optional[str]:
        """Gateway order id the payment belongs to, when the provider exposes it"""
        return None
