"""
Configuration for the Lampo on-chain wallet.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from lampocore.constants import STANDARD_DUST_LIMIT
from lampocore.errors import UnsupportedNetwork
from lampocore.models import NetworkType


def _default_esplora_urls() -> dict[NetworkType, str]:
    # No public endpoint for regtest: it must be configured explicitly
    return {
        NetworkType.MAINNET: "https://mempool.space/api",
        NetworkType.TESTNET: "https://mempool.space/testnet/api",
        NetworkType.SIGNET: "https://mempool.space/signet/api",
    }


class EsploraConfig(BaseModel):
    """Esplora endpoints keyed by network."""

    urls: dict[NetworkType, str] = Field(default_factory=_default_esplora_urls)
    timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    def url_for(self, network: NetworkType) -> str:
        url = self.urls.get(network)
        if not url:
            raise UnsupportedNetwork(network, what="chain sync")
        return url


class WalletConfig(BaseModel):
    """Configuration for the wallet service."""

    network: NetworkType = NetworkType.MAINNET
    data_dir: Path | None = None  # None keeps state in memory only

    # Sync settings
    gap_limit: int = Field(default=20, ge=1)
    scan_batch_size: int | None = Field(
        default=None, ge=1, description="Scripts per history request batch (default: gap limit)"
    )
    parallel_requests: int = Field(default=2, ge=1)
    checkpoint_retention: int = Field(default=100, ge=1)

    # Spend settings
    dust_threshold: int = Field(default=STANDARD_DUST_LIMIT, ge=0, description="In sats")
    min_confirmations: int = Field(default=1, ge=1)

    esplora: EsploraConfig = Field(default_factory=EsploraConfig)

    @model_validator(mode="after")
    def set_batch_size(self) -> WalletConfig:
        if self.scan_batch_size is None:
            self.scan_batch_size = self.gap_limit
        return self
