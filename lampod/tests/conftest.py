"""
Shared fixtures for payment tests: a scripted channel engine and node keys.
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets

import pytest

from lampocore.models import NetworkType
from lampod.channel import ChannelEngine, PaymentOutcome, RouteParameters
from lampod.config import PaymentConfig
from lampod.payments import PaymentOrchestrator
from lampowallet.wallet.keys import KeyManager

NODE_SECRET = bytes(range(1, 33))
PEER_SECRET = bytes(range(33, 65))


class FakeChannelEngine(ChannelEngine):
    """
    Channel engine replaying scripted outcomes.

    Each send pops the next entry of ``outcomes``: a PaymentOutcome, an
    exception to raise, or None to hang until ``release()`` is called.
    Once the script is exhausted every send succeeds.
    """

    def __init__(self):
        self.outcomes: list[PaymentOutcome | BaseException | None] = []
        self.sent: list[RouteParameters] = []
        self.registered: dict[bytes, dict] = {}
        # Engines of nodes reachable from this one, used to look up preimages
        self.peers: list[FakeChannelEngine] = []
        self._release = asyncio.Event()
        self._hung_outcome: PaymentOutcome | None = None

    def release(self, outcome: PaymentOutcome) -> None:
        self._hung_outcome = outcome
        self._release.set()

    async def send_payment(self, route: RouteParameters) -> PaymentOutcome:
        self.sent.append(route)
        step = self.outcomes.pop(0) if self.outcomes else "succeed"
        if step is None:
            await self._release.wait()
            assert self._hung_outcome is not None
            return self._hung_outcome
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, PaymentOutcome):
            return step
        return self.success_for(route)

    def success_for(self, route: RouteParameters, fee_msat: int = 1_000) -> PaymentOutcome:
        preimage = route.preimage
        for node in [self, *self.peers]:
            if preimage is None and route.payment_hash in node.registered:
                preimage = node.registered[route.payment_hash]["preimage"]
        return PaymentOutcome(success=True, preimage=preimage, fee_msat=fee_msat)

    async def register_inbound_payment(
        self,
        payment_hash: bytes,
        preimage: bytes,
        amount_msat: int | None,
        expiry: int,
    ) -> bytes:
        assert hashlib.sha256(preimage).digest() == payment_hash
        secret = secrets.token_bytes(32)
        self.registered[payment_hash] = {
            "preimage": preimage,
            "amount_msat": amount_msat,
            "expiry": expiry,
            "secret": secret,
        }
        return secret


@pytest.fixture
def engine() -> FakeChannelEngine:
    return FakeChannelEngine()


@pytest.fixture
def keys() -> KeyManager:
    return KeyManager.from_private_key(NODE_SECRET, NetworkType.REGTEST)


@pytest.fixture
def peer_keys() -> KeyManager:
    return KeyManager.from_private_key(PEER_SECRET, NetworkType.REGTEST)


@pytest.fixture
def config() -> PaymentConfig:
    return PaymentConfig(network=NetworkType.REGTEST, attempt_timeout=0.5, max_attempts=3)


@pytest.fixture
def orchestrator(config, keys, engine) -> PaymentOrchestrator:
    return PaymentOrchestrator(config, keys, engine)


@pytest.fixture
def peer(config, peer_keys, engine) -> PaymentOrchestrator:
    """A second node, reachable from the engine under test."""
    peer_engine = FakeChannelEngine()
    engine.peers.append(peer_engine)
    return PaymentOrchestrator(config, peer_keys, peer_engine)
