from lampowallet.wallet.builder import TransactionBuilder
from lampowallet.wallet.keys import KeyManager
from lampowallet.wallet.service import WalletService
from lampowallet.wallet.store import WalletStore
from lampowallet.wallet.sync import ChainSyncEngine

__all__ = [
    "ChainSyncEngine",
    "KeyManager",
    "TransactionBuilder",
    "WalletService",
    "WalletStore",
]
