"""
Chain data source implementations.

Available backends:
- EsploraBackend: Esplora REST API (mempool.space, blockstream.info or self hosted)
"""

from lampowallet.backends.base import (
    ChainOutput,
    ChainSource,
    ChainTransaction,
    ChainUnavailable,
    SyncError,
)
from lampowallet.backends.esplora import EsploraBackend

__all__ = [
    "ChainOutput",
    "ChainSource",
    "ChainTransaction",
    "ChainUnavailable",
    "EsploraBackend",
    "SyncError",
]
