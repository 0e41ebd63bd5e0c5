"""
Shared enums and network parameters.
"""

from __future__ import annotations

from enum import Enum


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


# Human readable parts for segwit addresses
ADDRESS_HRP: dict[NetworkType, str] = {
    NetworkType.MAINNET: "bc",
    NetworkType.TESTNET: "tb",
    NetworkType.SIGNET: "tb",
    NetworkType.REGTEST: "bcrt",
}

# BOLT11 currency prefixes
INVOICE_CURRENCY: dict[NetworkType, str] = {
    NetworkType.MAINNET: "bc",
    NetworkType.TESTNET: "tb",
    NetworkType.SIGNET: "tbs",
    NetworkType.REGTEST: "bcrt",
}


def coin_type(network: NetworkType) -> int:
    """BIP44 coin type: 0 on mainnet, 1 on every test network."""
    return 0 if network == NetworkType.MAINNET else 1
