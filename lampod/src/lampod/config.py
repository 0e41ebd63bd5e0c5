"""
Configuration for the Lampo payment orchestrator.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from lampocore.constants import DEFAULT_INVOICE_EXPIRY
from lampocore.models import NetworkType


class PaymentConfig(BaseModel):
    """Configuration for outbound payments and invoice issuance."""

    network: NetworkType = NetworkType.MAINNET

    # Outbound payments
    attempt_timeout: float = Field(
        default=10.0, gt=0, description="Local deadline in seconds covering all attempts"
    )
    max_attempts: int = Field(default=3, ge=1)
    keysend_final_cltv_expiry: int = Field(default=40, ge=1, description="In blocks")
    max_tracked_payments: int = Field(
        default=10_000, ge=1, description="Resolved payments kept for idempotent retries"
    )

    # Invoices
    min_final_cltv_expiry_delta: int = Field(default=24, ge=1, description="In blocks")
    default_invoice_expiry: int = Field(default=DEFAULT_INVOICE_EXPIRY, ge=1, description="Seconds")
