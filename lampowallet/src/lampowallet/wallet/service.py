"""
Lampo on-chain wallet service.
"""

from __future__ import annotations

from loguru import logger

from lampowallet.backends.base import ChainSource
from lampowallet.backends.esplora import EsploraBackend
from lampowallet.config import WalletConfig
from lampowallet.wallet.address import address_to_script, script_to_address
from lampowallet.wallet.builder import TransactionBuilder
from lampowallet.wallet.keys import KeyManager
from lampowallet.wallet.models import Keychain, WalletState, WalletUtxo
from lampowallet.wallet.store import WalletStore
from lampowallet.wallet.sync import ChainSyncEngine
from lampowallet.wallet.transaction import FinalizedTransaction


class WalletService:
    """
    On-chain wallet of a Lampo node.
    Manages a BIP84 wallet with one receive and one change keychain.

    Derivation path: m/84'/{coin}'/0'/{change}/{index}
    - change: 0 (external/receive), 1 (internal/change)
    - index: address index
    """

    def __init__(
        self,
        config: WalletConfig,
        keys: KeyManager,
        source: ChainSource | None = None,
    ):
        self.config = config
        self.network = config.network
        self.keys = keys
        self.source = source or EsploraBackend(
            config.esplora.url_for(config.network),
            config.network,
            parallel_requests=config.parallel_requests,
            timeout=config.esplora.timeout,
        )
        self.store = WalletStore(config.network, config.data_dir)
        self.sync_engine = ChainSyncEngine(config, keys, self.store, self.source)
        self.builder = TransactionBuilder(
            keys,
            self.store,
            self.source,
            dust_threshold=config.dust_threshold,
            min_confirmations=config.min_confirmations,
        )

        logger.info(f"Initialized wallet on {self.network.value}")

    async def sync(self) -> WalletState:
        return await self.sync_engine.sync()

    async def rescan(self) -> WalletState:
        return await self.sync_engine.rescan()

    async def new_address(self) -> str:
        """Reveal the next receive address. Indices are never handed out twice."""
        async with self.store.writer() as state:
            keychain_state = state.keychains[Keychain.EXTERNAL]
            index = keychain_state.next_index
            script = self.keys.derive(Keychain.EXTERNAL, index)
            keychain_state.revealed[index] = script.hex()

        address = script_to_address(script, self.network)
        logger.info(f"Revealed receive address at index {index}")
        return address

    async def balance(self) -> int:
        """Confirmed balance in sats, after syncing"""
        state = await self.sync()
        return state.confirmed_balance()

    async def list_utxos(self) -> list[WalletUtxo]:
        state = await self.sync()
        reserved = self.store.reserved()
        return [
            WalletUtxo.from_record(u, reserved=u.outpoint in reserved)
            for u in sorted(state.unspent(), key=lambda u: (u.height, u.outpoint))
        ]

    async def create_transaction(
        self, address: str, amount: int, fee_rate_per_kvb: int
    ) -> FinalizedTransaction:
        """Sync, then build and sign a spend of ``amount`` sats to ``address``."""
        script = address_to_script(address, self.network)
        await self.sync()
        return await self.builder.build_spend(script, amount, fee_rate_per_kvb)

    async def broadcast(self, tx: FinalizedTransaction) -> str:
        return await self.builder.broadcast(tx)

    async def estimate_fee(self, target_blocks: int = 3) -> int:
        return await self.source.estimate_fee(target_blocks)

    async def close(self) -> None:
        await self.source.close()
