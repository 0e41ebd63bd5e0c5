"""
BOLT11 invoice encoding and decoding.

Invoices are bech32 strings without the 90 character limit of segwit
addresses, so the checksum helpers live here instead of coming from the
``bech32`` package:

    ln<currency>[amount]1<timestamp><tagged fields><signature><checksum>

The signature is a 65 byte recoverable secp256k1 signature (r || s || recid)
over SHA256(hrp || data), where data is the 5-bit payload padded to bytes.
"""

from __future__ import annotations

import hashlib
import re
import time
from collections.abc import Callable

from coincurve import PublicKey
from pydantic import BaseModel, ConfigDict, Field

from lampocore.constants import (
    DEFAULT_INVOICE_EXPIRY,
    DEFAULT_MIN_FINAL_CLTV_EXPIRY,
    MSAT_PER_BTC,
)
from lampocore.errors import PermanentError, UnsupportedNetwork
from lampocore.models import INVOICE_CURRENCY, NetworkType

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

SIGNATURE_WORDS = 104  # 65 bytes
TIMESTAMP_WORDS = 7
MAX_FIELD_WORDS = 1023  # 10-bit data_length

# Feature bits set on issued invoices: var_onion_optin (8), payment_secret (14)
# both required, basic_mpp (17) optional
FEATURE_VAR_ONION_REQUIRED = 1 << 8
FEATURE_PAYMENT_SECRET_REQUIRED = 1 << 14
FEATURE_BASIC_MPP_REQUIRED = 1 << 16
FEATURE_BASIC_MPP_OPTIONAL = 1 << 17
DEFAULT_INVOICE_FEATURES = (
    FEATURE_VAR_ONION_REQUIRED | FEATURE_PAYMENT_SECRET_REQUIRED | FEATURE_BASIC_MPP_OPTIONAL
)

# pico-BTC per unit for each amount multiplier
_MULTIPLIERS: dict[str, int] = {
    "m": 10**9,
    "u": 10**6,
    "n": 10**3,
    "p": 1,
}
_PICO_PER_BTC = 10**12
_PICO_PER_MSAT = _PICO_PER_BTC // MSAT_PER_BTC

_HRP_RE = re.compile(r"^ln(bcrt|tbs|bc|tb)(\d+)?([munp])?$")


class InvoiceError(PermanentError):
    pass


class DecodeError(InvoiceError):
    pass


class MalformedInvoice(DecodeError):
    """Structural or checksum violation in invoice text."""


class Invoice(BaseModel):
    """A decoded or freshly issued BOLT11 invoice. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    network: NetworkType
    payment_hash: bytes = Field(..., min_length=32, max_length=32)
    payee: bytes = Field(..., min_length=33, max_length=33)
    timestamp: int = Field(..., ge=0)
    amount_msat: int | None = Field(default=None, gt=0)
    payment_secret: bytes | None = Field(default=None, min_length=32, max_length=32)
    description: str | None = None
    description_hash: bytes | None = Field(default=None, min_length=32, max_length=32)
    expiry: int = Field(default=DEFAULT_INVOICE_EXPIRY, ge=0)
    min_final_cltv_expiry: int = Field(default=DEFAULT_MIN_FINAL_CLTV_EXPIRY, ge=0)
    features: int = Field(default=0, ge=0)
    encoded: str = ""

    @property
    def expires_at(self) -> int:
        return self.timestamp + self.expiry

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now > self.expires_at

    @property
    def supports_mpp(self) -> bool:
        return bool(self.features & (FEATURE_BASIC_MPP_REQUIRED | FEATURE_BASIC_MPP_OPTIONAL))


def currency_for(network: NetworkType | str) -> str:
    """BOLT11 currency prefix of a network."""
    try:
        return INVOICE_CURRENCY[NetworkType(network)]
    except (ValueError, KeyError) as e:
        raise UnsupportedNetwork(network, "invoice currency") from e


def bech32_polymod(values: list[int]) -> int:
    """Bech32 checksum polymod"""
    gen = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ v
        for i in range(5):
            chk ^= gen[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def bech32_create_checksum(hrp: str, data: list[int]) -> list[int]:
    polymod = bech32_polymod(bech32_hrp_expand(hrp) + data + [0, 0, 0, 0, 0, 0]) ^ 1
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def bech32_encode(hrp: str, data: list[int]) -> str:
    combined = data + bech32_create_checksum(hrp, data)
    return hrp + "1" + "".join(CHARSET[d] for d in combined)


def bech32_decode(text: str) -> tuple[str, list[int]]:
    """Split a bech32 string into (hrp, data words), verifying the checksum.

    Unlike segwit addresses there is no length limit.
    """
    if any(ord(c) < 33 or ord(c) > 126 for c in text):
        raise ValueError("Invalid character in bech32 string")
    if text.lower() != text and text.upper() != text:
        raise ValueError("Mixed case bech32 string")

    text = text.lower()
    pos = text.rfind("1")
    if pos < 1 or pos + 7 > len(text):
        raise ValueError("Missing or misplaced bech32 separator")

    data_part = text[pos + 1 :]
    if any(c not in CHARSET for c in data_part):
        raise ValueError("Invalid bech32 data character")

    hrp = text[:pos]
    data = [CHARSET.find(c) for c in data_part]
    if bech32_polymod(bech32_hrp_expand(hrp) + data) != 1:
        raise ValueError("Invalid bech32 checksum")
    return hrp, data[:-6]


def convertbits(data: bytes | list[int], frombits: int, tobits: int, pad: bool = True) -> list[int]:
    """Convert between bit groups"""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or (value >> frombits):
            raise ValueError("Invalid value for bit conversion")
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise ValueError("Invalid bits")

    return ret


def encode_amount(amount_msat: int | None) -> str:
    """Shortest exact human readable amount, e.g. 250000000 msat -> '2500u'."""
    if amount_msat is None:
        return ""
    if amount_msat <= 0:
        raise ValueError("Invoice amount must be positive")

    pico = amount_msat * _PICO_PER_MSAT
    if pico % _PICO_PER_BTC == 0:
        return str(pico // _PICO_PER_BTC)
    for unit, divisor in _MULTIPLIERS.items():
        if pico % divisor == 0:
            return f"{pico // divisor}{unit}"
    raise AssertionError("unreachable: 'p' divides every amount")


def decode_amount(digits: str, multiplier: str | None) -> int:
    """Human readable amount to msat, using integer arithmetic only."""
    value = int(digits)
    if value == 0:
        raise MalformedInvoice("Zero invoice amount")
    pico = value * (_MULTIPLIERS[multiplier] if multiplier else _PICO_PER_BTC)
    if pico % _PICO_PER_MSAT:
        raise MalformedInvoice("Invoice amount has sub-millisatoshi precision")
    return pico // _PICO_PER_MSAT


def _int_to_words(value: int, length: int | None = None) -> list[int]:
    words: list[int] = []
    while value > 0:
        words.append(value & 31)
        value >>= 5
    words.reverse()
    if length is not None:
        if len(words) > length:
            raise ValueError(f"Value does not fit in {length} words")
        words = [0] * (length - len(words)) + words
    return words or [0]


def _words_to_int(words: list[int]) -> int:
    value = 0
    for w in words:
        value = (value << 5) | w
    return value


def _tagged(tag: str, words: list[int]) -> list[int]:
    if len(words) > MAX_FIELD_WORDS:
        raise InvoiceError(f"Invoice field '{tag}' too long ({len(words)} words)")
    return [CHARSET.index(tag)] + _int_to_words(len(words), 2) + words


def _tagged_bytes(tag: str, payload: bytes) -> list[int]:
    return _tagged(tag, convertbits(payload, 8, 5))


def _words_to_bytes(words: list[int]) -> bytes:
    return bytes(convertbits(words, 5, 8, pad=False))


def _signing_message(hrp: str, words: list[int]) -> bytes:
    return hrp.encode("ascii") + bytes(convertbits(words, 5, 8, pad=True))


def encode_invoice(
    invoice: Invoice,
    sign: Callable[[bytes], bytes],
    include_payee: bool = False,
) -> str:
    """
    Serialize and sign an invoice.

    Args:
        invoice: Invoice fields (``encoded`` is ignored)
        sign: Callable producing a 65 byte recoverable signature of a
            32 byte digest with the payee's node key
        include_payee: Add the explicit ``n`` field

    Returns:
        The bech32 invoice string
    """
    currency = currency_for(invoice.network)
    if invoice.description is None and invoice.description_hash is None:
        raise InvoiceError("Invoice needs a description or a description hash")

    hrp = f"ln{currency}{encode_amount(invoice.amount_msat)}"

    data = _int_to_words(invoice.timestamp, TIMESTAMP_WORDS)
    data += _tagged_bytes("p", invoice.payment_hash)
    if invoice.payment_secret is not None:
        data += _tagged_bytes("s", invoice.payment_secret)
    if invoice.description is not None:
        data += _tagged_bytes("d", invoice.description.encode("utf-8"))
    else:
        assert invoice.description_hash is not None
        data += _tagged_bytes("h", invoice.description_hash)
    if invoice.expiry != DEFAULT_INVOICE_EXPIRY:
        data += _tagged("x", _int_to_words(invoice.expiry))
    if invoice.min_final_cltv_expiry != DEFAULT_MIN_FINAL_CLTV_EXPIRY:
        data += _tagged("c", _int_to_words(invoice.min_final_cltv_expiry))
    if include_payee:
        data += _tagged_bytes("n", invoice.payee)
    if invoice.features:
        data += _tagged("9", _int_to_words(invoice.features))

    digest = hashlib.sha256(_signing_message(hrp, data)).digest()
    signature = sign(digest)
    if len(signature) != 65:
        raise InvoiceError(f"Expected 65 byte recoverable signature, got {len(signature)}")

    return bech32_encode(hrp, data + convertbits(signature, 8, 5))


def _parse_hrp(hrp: str) -> tuple[NetworkType, int | None]:
    match = _HRP_RE.match(hrp)
    if match is None:
        raise MalformedInvoice(f"Invalid invoice prefix '{hrp}'")
    currency, digits, multiplier = match.groups()
    if multiplier and not digits:
        raise MalformedInvoice("Amount multiplier without amount")

    network = next(net for net, cur in INVOICE_CURRENCY.items() if cur == currency)
    amount = decode_amount(digits, multiplier) if digits else None
    return network, amount


def decode_invoice(text: str) -> Invoice:
    """
    Parse and verify a BOLT11 invoice string.

    Raises:
        MalformedInvoice: On any checksum, structural or signature violation
    """
    text = text.strip()
    if text.lower().startswith("lightning:"):
        text = text[len("lightning:") :]

    try:
        hrp, data = bech32_decode(text)
    except ValueError as e:
        raise MalformedInvoice(str(e)) from e

    network, amount_msat = _parse_hrp(hrp)

    if len(data) < TIMESTAMP_WORDS + SIGNATURE_WORDS:
        raise MalformedInvoice("Invoice too short")

    body = data[:-SIGNATURE_WORDS]
    signature = _words_to_bytes(data[-SIGNATURE_WORDS:])

    fields: dict[str, object] = {}
    idx = TIMESTAMP_WORDS
    try:
        while idx < len(body):
            if idx + 3 > len(body):
                raise MalformedInvoice("Truncated tagged field")
            tag = CHARSET[body[idx]]
            length = body[idx + 1] * 32 + body[idx + 2]
            payload = body[idx + 3 : idx + 3 + length]
            if len(payload) < length:
                raise MalformedInvoice(f"Truncated '{tag}' field")
            idx += 3 + length

            # Fields with an unexpected length are skipped, as BOLT11 requires
            if tag in ("p", "s", "h"):
                if length == 52:
                    fields.setdefault(tag, _words_to_bytes(payload))
            elif tag == "n":
                if length == 53:
                    fields.setdefault(tag, _words_to_bytes(payload))
            elif tag == "d":
                fields.setdefault(tag, _words_to_bytes(payload).decode("utf-8"))
            elif tag in ("x", "c", "9"):
                fields.setdefault(tag, _words_to_int(payload))
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedInvoice(f"Invalid tagged field: {e}") from e

    if "p" not in fields:
        raise MalformedInvoice("Invoice has no payment hash")
    if "d" not in fields and "h" not in fields:
        raise MalformedInvoice("Invoice has neither description nor description hash")

    digest = hashlib.sha256(_signing_message(hrp, body)).digest()
    if signature[64] > 3:
        raise MalformedInvoice("Invalid signature recovery id")
    try:
        recovered = PublicKey.from_signature_and_message(signature, digest, hasher=None)
    except Exception as e:
        raise MalformedInvoice(f"Invalid invoice signature: {e}") from e

    payee = recovered.format(compressed=True)
    if "n" in fields and fields["n"] != payee:
        raise MalformedInvoice("Invoice signature does not match payee node id")

    return Invoice(
        network=network,
        amount_msat=amount_msat,
        payment_hash=fields["p"],
        payment_secret=fields.get("s"),
        description=fields.get("d"),
        description_hash=fields.get("h"),
        expiry=fields.get("x", DEFAULT_INVOICE_EXPIRY),
        min_final_cltv_expiry=fields.get("c", DEFAULT_MIN_FINAL_CLTV_EXPIRY),
        features=fields.get("9", 0),
        timestamp=_words_to_int(body[:TIMESTAMP_WORDS]),
        payee=payee,
        encoded=text.lower(),
    )
