"""
Transaction drafts, BIP143 sighash and serialization for P2WPKH spends.

A spend progresses UnsignedTransaction -> SignedTransaction ->
FinalizedTransaction. All three are frozen; changing a spend means building
a new draft.
"""

from __future__ import annotations

import hashlib
import math
import struct
from dataclasses import dataclass, field

from lampocore.constants import (
    OUTPUT_BASE_VBYTES,
    P2WPKH_INPUT_VBYTES,
    RBF_SEQUENCE,
    TX_OVERHEAD_VBYTES,
)

from lampowallet.wallet.models import Keychain

SIGHASH_ALL = 1


@dataclass(frozen=True)
class TxIn:
    """Wallet-owned input, carrying what is needed to sign it."""

    txid: str
    vout: int
    value: int
    scriptpubkey: bytes
    keychain: Keychain | None = None
    index: int | None = None
    sequence: int = RBF_SEQUENCE


@dataclass(frozen=True)
class TxOut:
    value: int
    scriptpubkey: bytes


@dataclass(frozen=True)
class UnsignedTransaction:
    inputs: tuple[TxIn, ...]
    outputs: tuple[TxOut, ...]
    fee_rate_per_kvb: int
    locktime: int = 0
    version: int = 2
    change_position: int | None = None

    @property
    def input_value(self) -> int:
        return sum(i.value for i in self.inputs)

    @property
    def output_value(self) -> int:
        return sum(o.value for o in self.outputs)

    @property
    def fee(self) -> int:
        return self.input_value - self.output_value

    @property
    def signals_rbf(self) -> bool:
        return any(i.sequence < 0xFFFFFFFE for i in self.inputs)


@dataclass(frozen=True)
class SignedTransaction:
    unsigned: UnsignedTransaction
    witnesses: tuple[tuple[bytes, ...], ...]


@dataclass(frozen=True)
class FinalizedTransaction:
    """Broadcastable transaction."""

    txid: str
    raw: bytes
    fee: int
    inputs: tuple[TxIn, ...]
    outputs: tuple[TxOut, ...]
    change_position: int | None = None
    vsize: int = field(default=0)

    @property
    def hex(self) -> str:
        return self.raw.hex()

    @property
    def change_output(self) -> TxOut | None:
        if self.change_position is None:
            return None
        return self.outputs[self.change_position]


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        return int.from_bytes(data[offset : offset + 2], "little"), offset + 2
    if first == 0xFE:
        return int.from_bytes(data[offset : offset + 4], "little"), offset + 4
    return int.from_bytes(data[offset : offset + 8], "little"), offset + 8


def serialize_outpoint(txid: str, vout: int) -> bytes:
    # txid is in RPC format (big-endian), need to reverse for raw tx
    return bytes.fromhex(txid)[::-1] + struct.pack("<I", vout)


def serialize_output(out: TxOut) -> bytes:
    return struct.pack("<Q", out.value) + encode_varint(len(out.scriptpubkey)) + out.scriptpubkey


def serialize_transaction(
    tx: UnsignedTransaction, witnesses: tuple[tuple[bytes, ...], ...] | None = None
) -> bytes:
    """Serialize, with segwit marker and witnesses when ``witnesses`` is given."""
    result = struct.pack("<I", tx.version)
    if witnesses is not None:
        result += bytes([0x00, 0x01])

    result += encode_varint(len(tx.inputs))
    for inp in tx.inputs:
        # Empty scriptSig for native segwit
        result += serialize_outpoint(inp.txid, inp.vout) + b"\x00" + struct.pack("<I", inp.sequence)

    result += encode_varint(len(tx.outputs))
    for out in tx.outputs:
        result += serialize_output(out)

    if witnesses is not None:
        for stack in witnesses:
            result += encode_varint(len(stack))
            for item in stack:
                result += encode_varint(len(item)) + item

    result += struct.pack("<I", tx.locktime)
    return result


def compute_txid(tx: UnsignedTransaction) -> str:
    """Double SHA256 of the non-witness serialization, in RPC byte order."""
    return hash256(serialize_transaction(tx))[::-1].hex()


def txid_from_raw(raw: bytes) -> str:
    """Txid of a serialized transaction, with or without witness data."""
    if len(raw) > 6 and raw[4] == 0x00 and raw[5] == 0x01:
        raw = _strip_witness(raw)
    return hash256(raw)[::-1].hex()


def compute_sighash_segwit(
    tx: UnsignedTransaction,
    input_index: int,
    script_code: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash for input ``input_index``."""
    if input_index >= len(tx.inputs):
        raise IndexError("Input index out of range")

    hash_prevouts = hash256(b"".join(serialize_outpoint(i.txid, i.vout) for i in tx.inputs))
    hash_sequence = hash256(b"".join(struct.pack("<I", i.sequence) for i in tx.inputs))
    hash_outputs = hash256(b"".join(serialize_output(o) for o in tx.outputs))

    target = tx.inputs[input_index]
    preimage = (
        struct.pack("<I", tx.version)
        + hash_prevouts
        + hash_sequence
        + serialize_outpoint(target.txid, target.vout)
        + encode_varint(len(script_code))
        + script_code
        + struct.pack("<Q", target.value)
        + struct.pack("<I", target.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash_type)
    )
    return hash256(preimage)


def estimate_vsize(num_inputs: int, output_scripts: list[bytes]) -> int:
    """
    Estimate virtual size of a P2WPKH spend.

    SegWit P2WPKH inputs: ~68 vbytes each
    Outputs: 9 vbytes + script length
    Overhead: ~11 vbytes
    """
    outputs = sum(OUTPUT_BASE_VBYTES + len(script) for script in output_scripts)
    return TX_OVERHEAD_VBYTES + num_inputs * P2WPKH_INPUT_VBYTES + outputs


def fee_for_vsize(vsize: int, fee_rate_per_kvb: int) -> int:
    return math.ceil(vsize * fee_rate_per_kvb / 1000)


def transaction_vsize(raw: bytes) -> int:
    """Exact virtual size of a serialized transaction."""
    if len(raw) > 6 and raw[4] == 0x00 and raw[5] == 0x01:
        stripped = len(_strip_witness(raw))
        weight = stripped * 3 + len(raw)
    else:
        weight = len(raw) * 4
    return (weight + 3) // 4


def _strip_witness(raw: bytes) -> bytes:
    offset = 6
    input_count, offset = read_varint(raw, offset)
    for _ in range(input_count):
        offset += 36
        script_len, offset = read_varint(raw, offset)
        offset += script_len + 4
    output_count, offset = read_varint(raw, offset)
    for _ in range(output_count):
        offset += 8
        script_len, offset = read_varint(raw, offset)
        offset += script_len
    return raw[:4] + raw[6:offset] + raw[-4:]
