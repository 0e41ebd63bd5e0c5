"""
Bitcoin and Lightning constants shared by the wallet and payment components.
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

SATS_PER_BTC = 100_000_000
MSAT_PER_SAT = 1_000
MSAT_PER_BTC = SATS_PER_BTC * MSAT_PER_SAT

# 1 sat/vB, the default minimum relay fee of Bitcoin Core
MIN_RELAY_FEE_RATE_KVB = 1_000

# nSequence signalling BIP125 replaceability
RBF_SEQUENCE = 0xFFFFFFFD
FINAL_SEQUENCE = 0xFFFFFFFF

# Virtual size estimates for P2WPKH spends
TX_OVERHEAD_VBYTES = 11
P2WPKH_INPUT_VBYTES = 68
OUTPUT_BASE_VBYTES = 9  # value (8) + script length (1)

# BOLT11 defaults
DEFAULT_INVOICE_EXPIRY = 3600
DEFAULT_MIN_FINAL_CLTV_EXPIRY = 18
