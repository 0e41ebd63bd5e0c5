"""
Wallet data models.

``WalletState`` is the persisted document: revealed script-pubkeys per
keychain, every UTXO ever seen (spent ones are flagged, never removed) and
the checkpoint ledger used for reorg detection.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from lampocore.constants import MSAT_PER_SAT
from lampocore.models import NetworkType
from pydantic import BaseModel, ConfigDict, Field


class Keychain(str, Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"

    @property
    def branch(self) -> int:
        """BIP32 change branch: 0 for receive, 1 for change."""
        return 0 if self is Keychain.EXTERNAL else 1


def format_outpoint(txid: str, vout: int) -> str:
    return f"{txid}:{vout}"


class Checkpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    height: int = Field(..., ge=0)
    block_hash: str


class UtxoRecord(BaseModel):
    txid: str
    vout: int = Field(..., ge=0)
    keychain: Keychain
    index: int = Field(..., ge=0)
    scriptpubkey: str
    value: int = Field(..., ge=0)
    height: int = Field(default=0, ge=0)  # 0 = unconfirmed
    spent: bool = False
    spent_by: str | None = None
    spent_height: int = Field(default=0, ge=0)  # of the spender, 0 = unconfirmed

    @property
    def outpoint(self) -> str:
        return format_outpoint(self.txid, self.vout)

    @property
    def confirmed(self) -> bool:
        return self.height > 0


class KeychainState(BaseModel):
    revealed: dict[int, str] = Field(default_factory=dict)  # index -> scriptpubkey hex
    last_used: int | None = None

    @property
    def next_index(self) -> int:
        return max(self.revealed) + 1 if self.revealed else 0


class WalletState(BaseModel):
    network: NetworkType
    keychains: dict[Keychain, KeychainState] = Field(
        default_factory=lambda: {k: KeychainState() for k in Keychain}
    )
    utxos: dict[str, UtxoRecord] = Field(default_factory=dict)
    checkpoints: list[Checkpoint] = Field(default_factory=list)

    @classmethod
    def empty(cls, network: NetworkType) -> WalletState:
        return cls(network=network)

    @property
    def tip(self) -> Checkpoint | None:
        return self.checkpoints[-1] if self.checkpoints else None

    def unspent(self) -> list[UtxoRecord]:
        return [u for u in self.utxos.values() if not u.spent]

    def confirmed_balance(self) -> int:
        return sum(u.value for u in self.unspent() if u.confirmed)

    def unconfirmed_balance(self) -> int:
        return sum(u.value for u in self.unspent() if not u.confirmed)

    def owner_of(self, scriptpubkey: str) -> tuple[Keychain, int] | None:
        for keychain, state in self.keychains.items():
            for index, spk in state.revealed.items():
                if spk == scriptpubkey:
                    return keychain, index
        return None


@dataclass
class WalletUtxo:
    """UTXO as reported to callers listing wallet coins."""

    txid: str
    vout: int
    amount_msat: int
    reserved: bool
    confirmed: int  # confirmation height, 0 when unconfirmed

    @classmethod
    def from_record(cls, record: UtxoRecord, reserved: bool = False) -> WalletUtxo:
        return cls(
            txid=record.txid,
            vout=record.vout,
            amount_msat=record.value * MSAT_PER_SAT,
            reserved=reserved,
            confirmed=record.height,
        )
