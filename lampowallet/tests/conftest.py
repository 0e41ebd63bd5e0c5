"""
Shared fixtures for wallet tests: an in-memory chain source and a wired up wallet.
"""

from __future__ import annotations

import hashlib
import itertools

import pytest

from lampocore.models import NetworkType
from lampowallet.backends.base import ChainOutput, ChainSource, ChainTransaction, ChainUnavailable
from lampowallet.config import WalletConfig
from lampowallet.wallet.builder import TransactionBuilder
from lampowallet.wallet.keys import KeyManager
from lampowallet.wallet.store import WalletStore
from lampowallet.wallet.sync import ChainSyncEngine
from lampowallet.wallet.transaction import txid_from_raw

TEST_SECRET = bytes(range(1, 33))


class FakeChainSource(ChainSource):
    """Chain view held in memory. Blocks are just hashes, transactions are mutable."""

    def __init__(self, network: NetworkType = NetworkType.REGTEST, tip: int = 100):
        self.network = network
        self.block_hashes = {h: self.hash_for(h) for h in range(tip + 1)}
        self.transactions: dict[str, ChainTransaction] = {}
        self.available = True
        self.history_requests = 0
        self.broadcasts: list[str] = []
        self._counter = itertools.count()

    @staticmethod
    def hash_for(height: int, fork: int = 0) -> str:
        return f"{fork:02x}{height:062x}"

    @property
    def tip(self) -> int:
        return max(self.block_hashes)

    def _check(self) -> None:
        if not self.available:
            raise ChainUnavailable("chain source offline")

    def mine(self, count: int = 1, fork: int = 0) -> int:
        for _ in range(count):
            height = self.tip + 1
            self.block_hashes[height] = self.hash_for(height, fork)
        return self.tip

    def reorg(self, from_height: int, fork: int = 1) -> None:
        """Replace every block from ``from_height`` and send their txs back to the mempool."""
        for height in list(self.block_hashes):
            if height >= from_height:
                self.block_hashes[height] = self.hash_for(height, fork)
        for tx in self.transactions.values():
            if tx.height is not None and tx.height >= from_height:
                tx.height = None
                tx.block_hash = None

    def confirm(self, txid: str, height: int) -> None:
        tx = self.transactions[txid]
        tx.height = height
        tx.block_hash = self.block_hashes[height]

    def _new_txid(self) -> str:
        return hashlib.sha256(f"tx-{next(self._counter)}".encode()).hexdigest()

    def fund(self, script: bytes, value: int, height: int | None = -1) -> ChainTransaction:
        """Pay ``value`` to ``script``. Height -1 means the current tip, None the mempool."""
        if height == -1:
            height = self.tip
        tx = ChainTransaction(
            txid=self._new_txid(),
            inputs=[(self._new_txid(), 0)],
            outputs=[ChainOutput(value=value, scriptpubkey=script.hex())],
            height=height,
            block_hash=self.block_hashes[height] if height is not None else None,
        )
        self.transactions[tx.txid] = tx
        return tx

    def spend(
        self, outpoint: tuple[str, int], to_script: bytes, value: int, height: int | None = -1
    ) -> ChainTransaction:
        if height == -1:
            height = self.tip
        tx = ChainTransaction(
            txid=self._new_txid(),
            inputs=[outpoint],
            outputs=[ChainOutput(value=value, scriptpubkey=to_script.hex())],
            height=height,
            block_hash=self.block_hashes[height] if height is not None else None,
        )
        self.transactions[tx.txid] = tx
        return tx

    def _touches(self, tx: ChainTransaction, script_hex: str) -> bool:
        if any(o.scriptpubkey == script_hex for o in tx.outputs):
            return True
        for txid, vout in tx.inputs:
            funding = self.transactions.get(txid)
            if funding is not None and funding.outputs[vout].scriptpubkey == script_hex:
                return True
        return False

    async def get_tip_height(self) -> int:
        self._check()
        return self.tip

    async def get_block_hash(self, height: int) -> str:
        self._check()
        if height not in self.block_hashes:
            raise ChainUnavailable(f"no block at {height}")
        return self.block_hashes[height]

    async def get_script_histories(
        self, scripts: list[bytes]
    ) -> dict[bytes, list[ChainTransaction]]:
        self._check()
        self.history_requests += len(scripts)
        return {
            script: [
                ChainTransaction(
                    txid=tx.txid,
                    inputs=list(tx.inputs),
                    outputs=list(tx.outputs),
                    height=tx.height,
                    block_hash=tx.block_hash,
                )
                for tx in self.transactions.values()
                if self._touches(tx, script.hex())
            ]
            for script in scripts
        }

    async def get_raw_transaction(self, txid: str) -> str | None:
        self._check()
        return None

    async def broadcast_transaction(self, tx_hex: str) -> str:
        self._check()
        self.broadcasts.append(tx_hex)
        return txid_from_raw(bytes.fromhex(tx_hex))

    async def estimate_fee(self, target_blocks: int) -> int:
        self._check()
        return 5_000


@pytest.fixture
def chain() -> FakeChainSource:
    return FakeChainSource()


@pytest.fixture
def keys() -> KeyManager:
    return KeyManager.from_private_key(TEST_SECRET, NetworkType.REGTEST)


@pytest.fixture
def config(tmp_path) -> WalletConfig:
    return WalletConfig(
        network=NetworkType.REGTEST,
        data_dir=tmp_path,
        gap_limit=5,
        checkpoint_retention=10,
    )


@pytest.fixture
def store(config: WalletConfig) -> WalletStore:
    return WalletStore(config.network, config.data_dir)


@pytest.fixture
def engine(config, keys, store, chain) -> ChainSyncEngine:
    return ChainSyncEngine(config, keys, store, chain)


@pytest.fixture
def builder(config, keys, store, chain) -> TransactionBuilder:
    return TransactionBuilder(
        keys,
        store,
        chain,
        dust_threshold=config.dust_threshold,
        min_confirmations=config.min_confirmations,
    )
