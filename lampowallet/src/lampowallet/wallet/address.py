"""
Bitcoin address and script utilities.
"""

from __future__ import annotations

import hashlib

import base58
import bech32
from lampocore.models import ADDRESS_HRP, NetworkType


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def p2wpkh_script(pubkey: bytes) -> bytes:
    """Create P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")
    return bytes([0x00, 0x14]) + hash160(pubkey)


def p2wpkh_script_code(pubkey: bytes) -> bytes:
    """BIP143 scriptCode for a P2WPKH input.

    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    """
    return b"\x76\xa9\x14" + hash160(pubkey) + b"\x88\xac"


def script_to_address(scriptpubkey: bytes, network: NetworkType) -> str:
    """Convert a segwit scriptPubKey to its bech32/bech32m address."""
    hrp = ADDRESS_HRP[network]

    if len(scriptpubkey) in (22, 34) and scriptpubkey[0] == 0x00:
        witver = 0
    elif len(scriptpubkey) == 34 and scriptpubkey[0] == 0x51:
        witver = 1
    else:
        raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")

    if scriptpubkey[1] != len(scriptpubkey) - 2:
        raise ValueError(f"Malformed witness program: {scriptpubkey.hex()}")

    result = bech32.encode(hrp, witver, scriptpubkey[2:])
    if result is None:
        raise ValueError(f"Failed to encode address for {scriptpubkey.hex()}")
    return result


def address_to_script(address: str, network: NetworkType) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey, checking it belongs to ``network``.

    Supports P2WPKH, P2WSH, P2TR, P2PKH and P2SH.
    """
    hrp = ADDRESS_HRP[network]

    if address.lower().startswith(hrp + "1"):
        witver, witprog = bech32.decode(hrp, address)
        if witver is None or witprog is None:
            raise ValueError(f"Invalid bech32 address: {address}")
        program = bytes(witprog)
        if witver == 0 and len(program) in (20, 32):
            return bytes([0x00, len(program)]) + program
        if witver == 1 and len(program) == 32:
            return bytes([0x51, 0x20]) + program
        raise ValueError(f"Unsupported witness version {witver} in {address}")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid address for {network.value}: {address}") from e

    version, payload = decoded[0], decoded[1:]
    mainnet = network == NetworkType.MAINNET
    if len(payload) == 20 and version == (0x00 if mainnet else 0x6F):
        # OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    if len(payload) == 20 and version == (0x05 if mainnet else 0xC4):
        # OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise ValueError(f"Address {address} is not valid on {network.value}")
