"""
Coin selection, signing and finalization of outgoing on-chain spends.
"""

from __future__ import annotations

from loguru import logger

from lampocore.constants import MIN_RELAY_FEE_RATE_KVB, STANDARD_DUST_LIMIT
from lampocore.errors import ConsistencyError, LampoError, PermanentError
from lampowallet.backends.base import ChainSource
from lampowallet.wallet.keys import KeyManager, SigningError
from lampowallet.wallet.models import Keychain, UtxoRecord, WalletState, format_outpoint
from lampowallet.wallet.store import WalletStore
from lampowallet.wallet.transaction import (
    FinalizedTransaction,
    SignedTransaction,
    TxIn,
    TxOut,
    UnsignedTransaction,
    compute_txid,
    estimate_vsize,
    fee_for_vsize,
    serialize_transaction,
    transaction_vsize,
)


class BuildError(LampoError):
    """Base class for spend construction failures."""


class WalletNotSynced(BuildError, PermanentError):
    pass


class InvalidFeeRate(BuildError, PermanentError):
    pass


class InsufficientFunds(BuildError, PermanentError):
    def __init__(self, needed: int, available: int):
        self.needed = needed
        self.available = available
        super().__init__(f"Insufficient funds: need {needed:,} sats, have {available:,} spendable")


class SigningFailed(BuildError, PermanentError):
    """KeyManager refused to sign. The original error is ``cause``."""

    def __init__(self, message: str, cause: SigningError):
        self.cause = cause
        super().__init__(message)


class FinalizationFailed(BuildError, PermanentError):
    pass


class DoubleSpendDetected(BuildError, ConsistencyError):
    """A selected coin is already spent by another transaction."""


class TransactionBuilder:
    """
    Builds RBF-signalling P2WPKH spends from the synced UTXO view.

    The builder never syncs: callers sync first. Building holds the wallet
    writer lock for its whole duration, which involves no network I/O.
    """

    def __init__(
        self,
        keys: KeyManager,
        store: WalletStore,
        source: ChainSource,
        dust_threshold: int = STANDARD_DUST_LIMIT,
        min_confirmations: int = 1,
    ):
        self.keys = keys
        self.store = store
        self.source = source
        self.dust_threshold = dust_threshold
        self.min_confirmations = max(1, min_confirmations)

    def _spendable(self, state: WalletState, tip_height: int) -> list[UtxoRecord]:
        reserved = self.store.reserved()
        coins = [
            u
            for u in state.unspent()
            if u.confirmed
            and tip_height - u.height + 1 >= self.min_confirmations
            and u.outpoint not in reserved
        ]
        # Largest first, outpoint as tie breaker for a deterministic selection
        return sorted(coins, key=lambda u: (-u.value, u.outpoint))

    def _validate_request(self, recipient_script: bytes, amount: int, fee_rate_per_kvb: int) -> None:
        if not recipient_script:
            raise ValueError("Recipient script is empty")
        if amount <= 0:
            raise ValueError(f"Amount must be positive, got {amount}")
        if amount <= self.dust_threshold:
            raise ValueError(f"Amount {amount} sats is below the dust threshold")
        if fee_rate_per_kvb < MIN_RELAY_FEE_RATE_KVB:
            raise InvalidFeeRate(
                f"Fee rate {fee_rate_per_kvb} sat/kvB is below the relay minimum "
                f"of {MIN_RELAY_FEE_RATE_KVB} sat/kvB"
            )

    async def build_spend(
        self, recipient_script: bytes, amount: int, fee_rate_per_kvb: int
    ) -> FinalizedTransaction:
        """
        Select coins, sign and finalize a spend of ``amount`` sats.

        Selected coins stay reserved until the transaction is broadcast or
        released, so a concurrent build cannot pick them again. On any
        failure nothing is committed and the reservations are dropped.

        Raises:
            WalletNotSynced: No sync has completed yet
            InvalidFeeRate: Fee rate below 1000 sat/kvB
            InsufficientFunds: Spendable coins cannot cover amount plus fee
            SigningFailed: KeyManager refused an input
            FinalizationFailed: The signed transaction is incomplete
        """
        self._validate_request(recipient_script, amount, fee_rate_per_kvb)

        async with self.store.writer() as state:
            if state.tip is None:
                raise WalletNotSynced("Wallet has never been synced")

            coins = self._spendable(state, state.tip.height)
            change_index = state.keychains[Keychain.INTERNAL].next_index
            change_script = self.keys.derive(Keychain.INTERNAL, change_index)

            selected: list[UtxoRecord] = []
            total = 0
            fee = 0
            for coin in coins:
                selected.append(coin)
                total += coin.value
                fee = fee_for_vsize(estimate_vsize(len(selected), [recipient_script]), fee_rate_per_kvb)
                if total >= amount + fee:
                    break
            if not selected or total < amount + fee:
                available = sum(c.value for c in coins)
                needed = amount + fee_for_vsize(
                    estimate_vsize(max(1, len(coins)), [recipient_script]), fee_rate_per_kvb
                )
                logger.warning(f"Cannot fund {amount:,} sats: {available:,} spendable")
                raise InsufficientFunds(needed, available)

            outputs = [TxOut(value=amount, scriptpubkey=recipient_script)]
            fee_with_change = fee_for_vsize(
                estimate_vsize(len(selected), [recipient_script, change_script]), fee_rate_per_kvb
            )
            change = total - amount - fee_with_change
            change_position = None
            if change > self.dust_threshold:
                outputs.append(TxOut(value=change, scriptpubkey=change_script))
                change_position = 1
            else:
                logger.debug(f"Change of {max(change, 0)} sats is dust, adding it to the fee")

            unsigned = UnsignedTransaction(
                inputs=tuple(
                    TxIn(
                        txid=c.txid,
                        vout=c.vout,
                        value=c.value,
                        scriptpubkey=bytes.fromhex(c.scriptpubkey),
                        keychain=c.keychain,
                        index=c.index,
                    )
                    for c in selected
                ),
                outputs=tuple(outputs),
                fee_rate_per_kvb=fee_rate_per_kvb,
                locktime=state.tip.height,
                change_position=change_position,
            )

            outpoints = [c.outpoint for c in selected]
            self.store.reserve(outpoints)
            try:
                try:
                    signed = self.keys.sign(unsigned)
                except SigningError as e:
                    raise SigningFailed(
                        f"Signing spend of {amount:,} sats to {recipient_script.hex()} failed: {e}",
                        cause=e,
                    ) from e
                finalized = self.finalize(signed)
            except BaseException:
                self.store.release(outpoints)
                raise

            if change_position is not None:
                state.keychains[Keychain.INTERNAL].revealed[change_index] = change_script.hex()

        logger.info(
            f"Built transaction {finalized.txid}: {amount:,} sats, fee {finalized.fee:,} sats, "
            f"{len(selected)} input(s), change {'none' if change_position is None else change}"
        )
        return finalized

    @staticmethod
    def finalize(signed: SignedTransaction) -> FinalizedTransaction:
        unsigned = signed.unsigned
        if len(signed.witnesses) != len(unsigned.inputs):
            raise FinalizationFailed(
                f"{len(signed.witnesses)} witnesses for {len(unsigned.inputs)} inputs"
            )
        for position, witness in enumerate(signed.witnesses):
            if len(witness) != 2 or not all(witness):
                raise FinalizationFailed(f"Input {position} has incomplete signature data")
        if unsigned.fee < 0:
            raise FinalizationFailed("Outputs exceed inputs")

        raw = serialize_transaction(unsigned, signed.witnesses)
        return FinalizedTransaction(
            txid=compute_txid(unsigned),
            raw=raw,
            fee=unsigned.fee,
            inputs=unsigned.inputs,
            outputs=unsigned.outputs,
            change_position=unsigned.change_position,
            vsize=transaction_vsize(raw),
        )

    def release(self, tx: FinalizedTransaction) -> None:
        """Abandon a built transaction, making its coins selectable again."""
        self.store.release([format_outpoint(i.txid, i.vout) for i in tx.inputs])

    @staticmethod
    def _check_unspent(state: WalletState, tx: FinalizedTransaction) -> None:
        for inp in tx.inputs:
            outpoint = format_outpoint(inp.txid, inp.vout)
            record = state.utxos.get(outpoint)
            if record is None:
                raise DoubleSpendDetected(f"Input {outpoint} is no longer in the wallet")
            if record.spent and record.spent_by != tx.txid:
                raise DoubleSpendDetected(f"Input {outpoint} already spent by {record.spent_by}")

    async def broadcast(self, tx: FinalizedTransaction) -> str:
        """
        Push ``tx`` to the network, then mark its inputs spent.

        Raises:
            DoubleSpendDetected: An input was spent by another transaction
            ChainUnavailable: The chain source rejected or did not answer
        """
        self._check_unspent(self.store.snapshot(), tx)

        txid = await self.source.broadcast_transaction(tx.hex)
        if txid != tx.txid:
            logger.warning(f"Chain source returned txid {txid}, expected {tx.txid}")

        async with self.store.writer() as state:
            self._check_unspent(state, tx)
            for inp in tx.inputs:
                record = state.utxos[format_outpoint(inp.txid, inp.vout)]
                record.spent = True
                record.spent_by = tx.txid

            change = tx.change_output
            owner = state.owner_of(change.scriptpubkey.hex()) if change is not None else None
            if change is not None and owner is not None:
                keychain, index = owner
                state.utxos.setdefault(
                    format_outpoint(tx.txid, tx.change_position),
                    UtxoRecord(
                        txid=tx.txid,
                        vout=tx.change_position,
                        keychain=keychain,
                        index=index,
                        scriptpubkey=change.scriptpubkey.hex(),
                        value=change.value,
                    ),
                )

        self.release(tx)
        logger.info(f"Broadcast {tx.txid}, {len(tx.inputs)} input(s) marked spent")
        return tx.txid
