"""
Tests for the WalletService facade and wallet configuration.
"""

from __future__ import annotations

import pytest

from lampocore.errors import UnsupportedNetwork
from lampocore.models import NetworkType
from lampowallet.backends.esplora import EsploraBackend
from lampowallet.config import EsploraConfig, WalletConfig
from lampowallet.wallet.address import address_to_script, script_to_address
from lampowallet.wallet.keys import KeyManager
from lampowallet.wallet.models import Keychain
from lampowallet.wallet.service import WalletService


@pytest.fixture
def wallet(config, keys, chain) -> WalletService:
    return WalletService(config, keys, source=chain)


@pytest.mark.asyncio
async def test_new_address_never_repeats(wallet, keys):
    first = await wallet.new_address()
    second = await wallet.new_address()

    assert first.startswith("bcrt1q")
    assert first != second
    assert address_to_script(first, NetworkType.REGTEST) == keys.derive(Keychain.EXTERNAL, 0)
    assert address_to_script(second, NetworkType.REGTEST) == keys.derive(Keychain.EXTERNAL, 1)


@pytest.mark.asyncio
async def test_new_address_survives_restart(config, keys, chain, wallet):
    await wallet.new_address()
    restarted = WalletService(config, keys, source=chain)
    assert address_to_script(await restarted.new_address(), NetworkType.REGTEST) == keys.derive(
        Keychain.EXTERNAL, 1
    )


@pytest.mark.asyncio
async def test_balance_and_utxos(wallet, keys, chain):
    funding = chain.fund(keys.derive(Keychain.EXTERNAL, 0), 123_456)
    chain.fund(keys.derive(Keychain.EXTERNAL, 1), 1_000, height=None)

    assert await wallet.balance() == 123_456

    utxos = await wallet.list_utxos()
    assert len(utxos) == 2
    unconfirmed, confirmed = utxos
    assert confirmed.txid == funding.txid
    assert confirmed.amount_msat == 123_456_000
    assert confirmed.confirmed == chain.tip
    assert confirmed.reserved is False
    assert unconfirmed.confirmed == 0


@pytest.mark.asyncio
async def test_amount_msat_is_exact(wallet, keys, chain):
    # Values that do not survive a float BTC round trip
    chain.fund(keys.derive(Keychain.EXTERNAL, 0), 2_099_999_997_690_000)
    utxos = await wallet.list_utxos()
    assert utxos[0].amount_msat == 2_099_999_997_690_000_000


@pytest.mark.asyncio
async def test_create_and_broadcast(wallet, keys, chain):
    chain.fund(keys.derive(Keychain.EXTERNAL, 0), 100_000)
    destination = script_to_address(b"\x00\x14" + b"\x33" * 20, NetworkType.REGTEST)

    tx = await wallet.create_transaction(destination, 50_000, 10_000)
    assert tx.outputs[0].value == 50_000

    utxos = await wallet.list_utxos()
    assert [u.reserved for u in utxos] == [True]

    await wallet.broadcast(tx)
    assert chain.broadcasts == [tx.hex]
    assert await wallet.balance() == 0


@pytest.mark.asyncio
async def test_create_transaction_rejects_foreign_network_address(wallet):
    with pytest.raises(ValueError):
        await wallet.create_transaction("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", 10_000, 1_000)


@pytest.mark.asyncio
async def test_estimate_fee_and_close(wallet):
    assert await wallet.estimate_fee() == 5_000
    await wallet.close()


def test_default_backend_is_esplora():
    keys_signet = KeyManager.from_private_key(bytes(range(1, 33)), NetworkType.SIGNET)
    wallet = WalletService(WalletConfig(network=NetworkType.SIGNET), keys_signet)
    assert isinstance(wallet.source, EsploraBackend)
    assert wallet.source.base_url == "https://mempool.space/signet/api"


def test_regtest_needs_explicit_endpoint(keys):
    with pytest.raises(UnsupportedNetwork):
        WalletService(WalletConfig(network=NetworkType.REGTEST), keys)

    config = WalletConfig(
        network=NetworkType.REGTEST,
        esplora=EsploraConfig(urls={NetworkType.REGTEST: "http://127.0.0.1:3002"}),
    )
    wallet = WalletService(config, keys)
    assert wallet.source.base_url == "http://127.0.0.1:3002"


def test_scan_batch_defaults_to_gap_limit():
    assert WalletConfig(gap_limit=7).scan_batch_size == 7
    assert WalletConfig(gap_limit=7, scan_batch_size=3).scan_batch_size == 3
