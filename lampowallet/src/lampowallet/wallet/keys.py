"""
Key management: BIP32/BIP84 derivation, transaction signing and preimages.

The seed never leaves this module. Callers get script-pubkeys, signatures,
the node identity public key and fresh payment preimages.

Derivation paths:
- wallet coins: m/84'/{coin}'/0'/{branch}/{index}
  - branch 0: external (receive), 1: internal (change)
- node identity: m/0'
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import threading

import base58
from coincurve import PrivateKey, PublicKey
from loguru import logger
from mnemonic import Mnemonic

from lampocore.errors import PermanentError
from lampocore.models import NetworkType, coin_type
from lampowallet.wallet.address import hash160, p2wpkh_script, p2wpkh_script_code
from lampowallet.wallet.models import Keychain
from lampowallet.wallet.transaction import (
    SIGHASH_ALL,
    SignedTransaction,
    UnsignedTransaction,
    compute_sighash_segwit,
)

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)
HARDENED = 0x80000000

XPUB_VERSION = bytes.fromhex("0488b21e")
TPUB_VERSION = bytes.fromhex("043587cf")


class SigningError(PermanentError):
    pass


class UnknownInput(SigningError):
    """An input's owning key cannot be derived by this wallet."""


class InvalidSighash(SigningError):
    """The transaction is malformed and cannot be signed."""


class ExtendedKey:
    """
    BIP32 extended private key.
    """

    def __init__(
        self,
        private_key: PrivateKey,
        chain_code: bytes,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
    ):
        self._private_key = private_key
        self._public_key = private_key.public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    @classmethod
    def from_seed(cls, seed: bytes) -> ExtendedKey:
        """Create master key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(PrivateKey(hmac_result[:32]), hmac_result[32:])

    @property
    def public_key_bytes(self) -> bytes:
        return self._public_key.format(compressed=True)

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.public_key_bytes)[:4]

    def derive(self, path: str) -> ExtendedKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0")
        ' or h indicates hardened derivation
        """
        if not path.startswith("m"):
            raise ValueError("Path must start with 'm'")

        key = self
        for part in path.split("/")[1:]:
            if not part:
                continue
            hardened = part.endswith(("'", "h"))
            index = int(part.rstrip("'h"))
            key = key.child(index + HARDENED if hardened else index)
        return key

    def child(self, index: int) -> ExtendedKey:
        """CKDpriv for a single index"""
        if index >= HARDENED:
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.public_key_bytes + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        offset = int.from_bytes(hmac_result[:32], "big")
        if offset >= SECP256K1_N:
            raise ValueError("Invalid child key")

        child_int = (int.from_bytes(self._private_key.secret, "big") + offset) % SECP256K1_N
        if child_int == 0:
            raise ValueError("Invalid child key")

        return ExtendedKey(
            PrivateKey(child_int.to_bytes(32, "big")),
            hmac_result[32:],
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
        )

    def sign_digest(self, digest: bytes) -> bytes:
        """DER signature of a 32 byte digest."""
        return self._private_key.sign(digest, hasher=None)

    def sign_recoverable(self, digest: bytes) -> bytes:
        """65 byte compact recoverable signature (r || s || recid)."""
        return self._private_key.sign_recoverable(digest, hasher=None)

    def serialize_public(self, network: NetworkType) -> str:
        version = XPUB_VERSION if network == NetworkType.MAINNET else TPUB_VERSION
        payload = (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + self.public_key_bytes
        )
        return base58.b58encode_check(payload).decode("ascii")


class KeyManager:
    """
    Holds the wallet seed and exposes derivation and signing.

    Construct with one of ``generate``, ``from_mnemonic`` or
    ``from_private_key``; all of them end up in the same derivation code.
    """

    def __init__(self, seed: bytes, network: NetworkType):
        self.network = network
        self._master = ExtendedKey.from_seed(seed)
        self._account_path = f"m/84'/{coin_type(network)}'/0'"
        account = self._master.derive(self._account_path)
        self._account = account
        self._branches = {k: account.child(k.branch) for k in Keychain}
        self._node_key = self._master.derive("m/0'")

        self._derive_lock = threading.Lock()
        self._script_cache: dict[tuple[Keychain, int], bytes] = {}
        self._preimage_lock = threading.Lock()

        logger.info(f"Key manager ready on {network.value}, node id {self.node_id.hex()}")
        logger.debug(f"External descriptor: {self.descriptor(Keychain.EXTERNAL)}")

    @classmethod
    def generate(cls, network: NetworkType, words: int = 12) -> tuple[KeyManager, str]:
        """Create a key manager from a fresh BIP39 mnemonic.

        Returns the manager and the mnemonic words, which the caller must back up.
        """
        strength = {12: 128, 24: 256}.get(words)
        if strength is None:
            raise ValueError("words must be 12 or 24")
        mnemonic = Mnemonic("english").generate(strength=strength)
        return cls.from_mnemonic(mnemonic, network), mnemonic

    @classmethod
    def from_mnemonic(
        cls, mnemonic: str, network: NetworkType, passphrase: str = ""
    ) -> KeyManager:
        wordlist = Mnemonic("english")
        if not wordlist.check(mnemonic):
            raise ValueError("Invalid BIP39 mnemonic")
        return cls(Mnemonic.to_seed(mnemonic, passphrase), network)

    @classmethod
    def from_private_key(cls, secret: bytes, network: NetworkType) -> KeyManager:
        """Bootstrap strategy for tests: use a raw 32 byte secret as BIP32 seed."""
        if len(secret) != 32:
            raise ValueError("Private key must be 32 bytes")
        PrivateKey(secret)  # validates range
        return cls(secret, network)

    @property
    def node_id(self) -> bytes:
        """Compressed public key identifying this node."""
        return self._node_key.public_key_bytes

    def descriptor(self, keychain: Keychain) -> str:
        origin = f"{self._master.fingerprint.hex()}/84h/{coin_type(self.network)}h/0h"
        xpub = self._account.serialize_public(self.network)
        return f"wpkh([{origin}]{xpub}/{keychain.branch}/*)"

    def derive(self, keychain: Keychain, index: int) -> bytes:
        """P2WPKH scriptPubKey at (keychain, index). Deterministic for a given seed."""
        if index < 0 or index >= HARDENED:
            raise ValueError(f"Invalid derivation index {index}")
        with self._derive_lock:
            script = self._script_cache.get((keychain, index))
            if script is None:
                script = p2wpkh_script(self._branches[keychain].child(index).public_key_bytes)
                self._script_cache[(keychain, index)] = script
            return script

    def derivation_path(self, keychain: Keychain, index: int) -> str:
        return f"{self._account_path}/{keychain.branch}/{index}"

    def _key_for_input(self, position: int, keychain: Keychain | None, index: int | None,
                       scriptpubkey: bytes) -> ExtendedKey:
        if keychain is None or index is None:
            raise UnknownInput(f"Input {position} has no derivation information")
        if self.derive(keychain, index) != scriptpubkey:
            raise UnknownInput(
                f"Input {position} script does not match {self.derivation_path(keychain, index)}"
            )
        return self._branches[keychain].child(index)

    def sign(self, tx: UnsignedTransaction) -> SignedTransaction:
        """
        Sign every input of a P2WPKH spend with SIGHASH_ALL.

        Raises:
            UnknownInput: An input is not owned by this wallet
            InvalidSighash: The transaction is malformed
        """
        if not tx.inputs:
            raise InvalidSighash("Transaction has no inputs")
        if not tx.outputs:
            raise InvalidSighash("Transaction has no outputs")
        if any(out.value < 0 for out in tx.outputs) or any(inp.value < 0 for inp in tx.inputs):
            raise InvalidSighash("Negative amount in transaction")
        outpoints = {(inp.txid, inp.vout) for inp in tx.inputs}
        if len(outpoints) != len(tx.inputs):
            raise InvalidSighash("Transaction spends the same outpoint twice")

        witnesses: list[tuple[bytes, ...]] = []
        for position, inp in enumerate(tx.inputs):
            key = self._key_for_input(position, inp.keychain, inp.index, inp.scriptpubkey)
            pubkey = key.public_key_bytes
            try:
                sighash = compute_sighash_segwit(tx, position, p2wpkh_script_code(pubkey))
            except (ValueError, IndexError, OverflowError) as e:
                raise InvalidSighash(f"Cannot compute sighash for input {position}: {e}") from e
            signature = key.sign_digest(sighash) + bytes([SIGHASH_ALL])
            witnesses.append((signature, pubkey))

        return SignedTransaction(unsigned=tx, witnesses=tuple(witnesses))

    def sign_invoice(self, digest: bytes) -> bytes:
        """Recoverable signature of an invoice digest with the node key."""
        return self._node_key.sign_recoverable(digest)

    def verify_node_signature(self, digest: bytes, signature: bytes) -> bool:
        recovered = PublicKey.from_signature_and_message(signature, digest, hasher=None)
        return recovered.format(compressed=True) == self.node_id

    def new_preimage(self) -> tuple[bytes, bytes]:
        """Fresh random preimage and its SHA256 payment hash."""
        with self._preimage_lock:
            preimage = secrets.token_bytes(32)
        return preimage, hashlib.sha256(preimage).digest()
