"""
lampocore - Core library shared by the Lampo wallet and node components.

Provides network parameters, constants, the error taxonomy and the BOLT11
invoice codec.
"""

__version__ = "0.1.0"

from lampocore.bolt11 import (
    DecodeError,
    Invoice,
    InvoiceError,
    MalformedInvoice,
    decode_invoice,
    encode_invoice,
)
from lampocore.constants import (
    MIN_RELAY_FEE_RATE_KVB,
    MSAT_PER_SAT,
    RBF_SEQUENCE,
    STANDARD_DUST_LIMIT,
)
from lampocore.errors import (
    ConsistencyError,
    LampoError,
    PermanentError,
    TransientError,
    UnsupportedNetwork,
)
from lampocore.models import NetworkType

__all__ = [
    "ConsistencyError",
    "DecodeError",
    "Invoice",
    "InvoiceError",
    "LampoError",
    "MIN_RELAY_FEE_RATE_KVB",
    "MSAT_PER_SAT",
    "MalformedInvoice",
    "NetworkType",
    "PermanentError",
    "RBF_SEQUENCE",
    "STANDARD_DUST_LIMIT",
    "TransientError",
    "UnsupportedNetwork",
    "decode_invoice",
    "encode_invoice",
]
