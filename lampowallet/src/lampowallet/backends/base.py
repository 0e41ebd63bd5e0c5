"""
Base chain data source interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from lampocore.errors import LampoError, TransientError
from lampocore.models import NetworkType


class SyncError(LampoError):
    """Base class for chain synchronization failures."""


class ChainUnavailable(SyncError, TransientError):
    """The chain data source could not be reached or answered garbage."""


@dataclass(frozen=True)
class ChainOutput:
    value: int
    scriptpubkey: str  # hex


@dataclass
class ChainTransaction:
    txid: str
    inputs: list[tuple[str, int]] = field(default_factory=list)  # spent outpoints
    outputs: list[ChainOutput] = field(default_factory=list)
    height: int | None = None  # None when unconfirmed
    block_hash: str | None = None

    @property
    def confirmed(self) -> bool:
        return self.height is not None and self.height > 0


class ChainSource(ABC):
    """
    Untrusted view of the blockchain.

    Answers may be stale or inconsistent between calls; callers handle
    reorganizations themselves.
    """

    network: NetworkType

    @abstractmethod
    async def get_tip_height(self) -> int:
        """Get current blockchain height"""

    @abstractmethod
    async def get_block_hash(self, height: int) -> str:
        """Get the hash of the block at ``height`` on the source's best chain"""

    @abstractmethod
    async def get_script_histories(
        self, scripts: list[bytes]
    ) -> dict[bytes, list[ChainTransaction]]:
        """Transactions paying to or spending from each script, keyed by script"""

    @abstractmethod
    async def get_raw_transaction(self, txid: str) -> str | None:
        """Raw transaction hex, or None if unknown"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    @abstractmethod
    async def estimate_fee(self, target_blocks: int) -> int:
        """Estimate fee in sat/kvB for target confirmation blocks"""

    async def close(self) -> None:
        """Close backend connection"""
        pass
