"""
Incremental reconciliation of wallet state against a chain data source.

A sync pass runs in two phases. The fetch phase talks to the network with no
lock held: tip, reorg detection against the checkpoint ledger and a
gap-limited history scan of both keychains. The apply phase takes the wallet
writer lock and merges the results into the state, committing atomically.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from lampocore.errors import ConsistencyError, UnsupportedNetwork
from lampowallet.backends.base import ChainSource, ChainTransaction, SyncError
from lampowallet.config import WalletConfig
from lampowallet.wallet.keys import KeyManager
from lampowallet.wallet.models import (
    Checkpoint,
    Keychain,
    UtxoRecord,
    WalletState,
    format_outpoint,
)
from lampowallet.wallet.store import WalletStore


class ReorgTooDeep(SyncError, ConsistencyError):
    """No retained checkpoint agrees with the chain source. A rescan is required."""


@dataclass
class KeychainScan:
    scripts: dict[int, bytes] = field(default_factory=dict)
    histories: dict[int, list[ChainTransaction]] = field(default_factory=dict)
    last_used: int | None = None


@dataclass
class ScanResult:
    tip: Checkpoint
    rollback_from: int | None
    keychains: dict[Keychain, KeychainScan]

    def transactions(self) -> list[ChainTransaction]:
        """Every observed transaction once, confirmed ones in block order first."""
        seen: dict[str, ChainTransaction] = {}
        for scan in self.keychains.values():
            for history in scan.histories.values():
                for tx in history:
                    seen.setdefault(tx.txid, tx)
        return sorted(
            seen.values(),
            key=lambda tx: (tx.height if tx.confirmed else float("inf"), tx.txid),
        )


class ChainSyncEngine:
    """
    Keeps the wallet UTXO set and checkpoint ledger in line with the chain.

    Re-running sync against an unchanged chain view leaves the state untouched.
    """

    def __init__(
        self,
        config: WalletConfig,
        keys: KeyManager,
        store: WalletStore,
        source: ChainSource,
    ):
        for component, network in (
            ("chain source", source.network),
            ("key manager", keys.network),
            ("wallet store", store.network),
        ):
            if network != config.network:
                logger.error(
                    f"Wallet configured for {config.network.value} "
                    f"but {component} is on {network.value}"
                )
                raise UnsupportedNetwork(network, what=component)
        self.config = config
        self.keys = keys
        self.store = store
        self.source = source
        self.gap_limit = config.gap_limit
        self.batch_size = config.scan_batch_size or config.gap_limit

    async def sync(self) -> WalletState:
        """
        Run one sync pass and return the committed state.

        Raises:
            ChainUnavailable: The chain source failed; nothing was changed
            ReorgTooDeep: Divergence beyond retained checkpoints; run rescan()
        """
        snapshot = self.store.snapshot()
        logger.info(f"Starting wallet sync (local tip: {self._describe_tip(snapshot)})")

        tip = await self._fetch_tip()
        rollback_from = await self._find_rollback(snapshot.checkpoints, tip)
        result = ScanResult(
            tip=tip, rollback_from=rollback_from, keychains=await self._scan(snapshot)
        )

        async with self.store.writer() as state:
            self.apply_scan(state, result)

        committed = self.store.snapshot()
        logger.info(
            f"Sync complete at height {tip.height}: {len(committed.unspent())} unspent UTXOs, "
            f"confirmed balance {committed.confirmed_balance():,} sats"
        )
        return committed

    async def rescan(self) -> WalletState:
        """
        Rebuild the UTXO view from scratch, discarding the checkpoint ledger.

        The recovery action for ReorgTooDeep. All coins are treated as
        unconfirmed until the chain source reports them again.
        """
        logger.warning("Rescanning wallet from genesis")
        snapshot = self.store.snapshot()
        tip = await self._fetch_tip()
        result = ScanResult(tip=tip, rollback_from=None, keychains=await self._scan(snapshot))

        async with self.store.writer() as state:
            state.checkpoints = []
            for utxo in state.utxos.values():
                utxo.height = 0
                utxo.spent = False
                utxo.spent_by = None
                utxo.spent_height = 0
            self.apply_scan(state, result)

        return self.store.snapshot()

    @staticmethod
    def _describe_tip(state: WalletState) -> str:
        return f"{state.tip.height}" if state.tip else "none"

    async def _fetch_tip(self) -> Checkpoint:
        height = await self.source.get_tip_height()
        block_hash = await self.source.get_block_hash(height)
        return Checkpoint(height=height, block_hash=block_hash)

    async def _find_rollback(self, checkpoints: list[Checkpoint], tip: Checkpoint) -> int | None:
        """
        First height that must be rolled back, or None if the newest
        checkpoint is still on the source's chain.
        """
        for position, checkpoint in enumerate(reversed(checkpoints)):
            if checkpoint.height > tip.height:
                remote_hash = None
            elif checkpoint.height == tip.height:
                remote_hash = tip.block_hash
            else:
                remote_hash = await self.source.get_block_hash(checkpoint.height)

            if remote_hash == checkpoint.block_hash:
                if position == 0:
                    return None
                logger.warning(
                    f"Reorg detected: chain diverges above height {checkpoint.height}, "
                    f"rolling back {position} checkpoint(s)"
                )
                return checkpoint.height + 1

        if checkpoints:
            raise ReorgTooDeep(
                f"None of {len(checkpoints)} retained checkpoints "
                f"(oldest {checkpoints[0].height}) match the chain source"
            )
        return None

    async def _scan(self, state: WalletState) -> dict[Keychain, KeychainScan]:
        return {k: await self._scan_keychain(k, state) for k in Keychain}

    async def _scan_keychain(self, keychain: Keychain, state: WalletState) -> KeychainScan:
        """
        Fetch histories for a keychain, at least through every revealed index
        and on until ``gap_limit`` consecutive scripts show no activity.
        """
        revealed = state.keychains[keychain].revealed
        highest_revealed = max(revealed) if revealed else -1
        scan = KeychainScan()
        index = 0

        while True:
            consecutive_empty = index - (scan.last_used + 1 if scan.last_used is not None else 0)
            if index > highest_revealed and consecutive_empty >= self.gap_limit:
                break

            batch = {i: self.keys.derive(keychain, i) for i in range(index, index + self.batch_size)}
            histories = await self.source.get_script_histories(list(batch.values()))

            for i, script in batch.items():
                history = histories.get(script, [])
                scan.scripts[i] = script
                if history:
                    scan.histories[i] = history
                    scan.last_used = i

            logger.debug(
                f"Scanned {keychain.value} {index}..{index + self.batch_size - 1}, "
                f"last used {scan.last_used}"
            )
            index += self.batch_size

        return scan

    def apply_scan(self, state: WalletState, result: ScanResult) -> None:
        """Merge a scan into ``state``. Must be called with the writer lock held."""
        if result.rollback_from is not None:
            self._rollback(state, result.rollback_from)

        owned: dict[str, tuple[Keychain, int]] = {}
        for keychain, scan in result.keychains.items():
            keychain_state = state.keychains[keychain]
            if scan.last_used is not None:
                for i in range(scan.last_used + 1):
                    keychain_state.revealed.setdefault(i, scan.scripts[i].hex())
                if keychain_state.last_used is None or keychain_state.last_used < scan.last_used:
                    keychain_state.last_used = scan.last_used
            for i, script in scan.scripts.items():
                owned[script.hex()] = (keychain, i)

        transactions = result.transactions()
        for tx in transactions:
            self._apply_outputs(state, tx, owned)
        for tx in transactions:
            self._apply_spends(state, tx)

        self._update_checkpoints(state, result.tip, transactions)

    @staticmethod
    def _rollback(state: WalletState, boundary: int) -> None:
        reverted = 0
        unspent = 0
        for utxo in state.utxos.values():
            if utxo.height >= boundary:
                utxo.height = 0
                reverted += 1
            # Spends confirmed in orphaned blocks are re-marked by the fresh scan if they survived
            if utxo.spent and utxo.spent_height >= boundary:
                utxo.spent = False
                utxo.spent_by = None
                utxo.spent_height = 0
                unspent += 1
        state.checkpoints = [c for c in state.checkpoints if c.height < boundary]
        logger.warning(
            f"Rolled back {reverted} UTXO(s) confirmed at or above height {boundary}, "
            f"reopened {unspent} orphaned spend(s)"
        )

    @staticmethod
    def _apply_outputs(
        state: WalletState, tx: ChainTransaction, owned: dict[str, tuple[Keychain, int]]
    ) -> None:
        height = tx.height if tx.confirmed else 0
        for vout, output in enumerate(tx.outputs):
            owner = owned.get(output.scriptpubkey)
            if owner is None:
                continue
            outpoint = format_outpoint(tx.txid, vout)
            existing = state.utxos.get(outpoint)
            if existing is None:
                keychain, index = owner
                state.utxos[outpoint] = UtxoRecord(
                    txid=tx.txid,
                    vout=vout,
                    keychain=keychain,
                    index=index,
                    scriptpubkey=output.scriptpubkey,
                    value=output.value,
                    height=height,
                )
                logger.debug(f"New UTXO {outpoint}: {output.value:,} sats at height {height}")
            elif existing.height != height:
                existing.height = height

    @staticmethod
    def _apply_spends(state: WalletState, tx: ChainTransaction) -> None:
        height = tx.height if tx.confirmed else 0
        for txid, vout in tx.inputs:
            utxo = state.utxos.get(format_outpoint(txid, vout))
            if utxo is None:
                continue
            if utxo.spent and utxo.spent_by != tx.txid and not tx.confirmed:
                # An unconfirmed conflict never replaces the recorded spender
                continue
            if not utxo.spent or utxo.spent_by != tx.txid or utxo.spent_height != height:
                utxo.spent = True
                utxo.spent_by = tx.txid
                utxo.spent_height = height

    def _update_checkpoints(
        self, state: WalletState, tip: Checkpoint, transactions: list[ChainTransaction]
    ) -> None:
        by_height = {c.height: c for c in state.checkpoints}
        for tx in transactions:
            if tx.confirmed and tx.block_hash and tx.height <= tip.height:
                by_height[tx.height] = Checkpoint(height=tx.height, block_hash=tx.block_hash)
        by_height[tip.height] = tip
        # Nothing above the tip survives; a shorter chain replaced it
        ordered = sorted(
            (c for c in by_height.values() if c.height <= tip.height), key=lambda c: c.height
        )
        state.checkpoints = ordered[-self.config.checkpoint_retention :]
