"""
Channel engine interface.

The channel engine owns peers, channels, HTLCs and path finding. The payment
orchestrator only hands it route parameters and interprets the outcome.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RouteParameters:
    """What to pay, to whom, and under which constraints."""

    destination: bytes  # 33 byte node id
    payment_hash: bytes
    amount_msat: int
    final_cltv_expiry_delta: int
    allow_mpp: bool
    payment_id: bytes
    payment_secret: bytes | None = None
    # Set for spontaneous payments so the recipient can claim without an invoice
    preimage: bytes | None = None

    @property
    def is_keysend(self) -> bool:
        return self.preimage is not None


@dataclass(frozen=True)
class PaymentOutcome:
    """Final result of one payment attempt as reported by the channel engine."""

    success: bool
    preimage: bytes | None = None
    fee_msat: int = 0
    reason: str | None = None
    retryable: bool = False


class ChannelEngine(ABC):
    @abstractmethod
    async def send_payment(self, route: RouteParameters) -> PaymentOutcome:
        """
        Route and settle one attempt.

        Returns when the attempt resolved. Routing failures are reported as
        an unsuccessful outcome, not raised.
        """

    @abstractmethod
    async def register_inbound_payment(
        self,
        payment_hash: bytes,
        preimage: bytes,
        amount_msat: int | None,
        expiry: int,
    ) -> bytes:
        """Make the receive path accept ``payment_hash``. Returns the payment secret."""
