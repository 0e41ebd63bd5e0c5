"""
Tests for ChainSyncEngine: discovery, idempotence, gap limit and reorgs.
"""

from __future__ import annotations

import pytest

from lampocore.errors import ConsistencyError, TransientError, UnsupportedNetwork
from lampocore.models import NetworkType
from lampowallet.backends.base import ChainSource, ChainUnavailable
from lampowallet.wallet.models import Keychain, format_outpoint
from lampowallet.wallet.store import WalletStore
from lampowallet.wallet.sync import ChainSyncEngine, ReorgTooDeep


@pytest.mark.asyncio
async def test_discovers_funded_script(engine, keys, chain):
    funding = chain.fund(keys.derive(Keychain.EXTERNAL, 0), 100_000)

    state = await engine.sync()

    record = state.utxos[format_outpoint(funding.txid, 0)]
    assert record.value == 100_000
    assert record.height == chain.tip
    assert record.keychain == Keychain.EXTERNAL
    assert record.index == 0
    assert not record.spent
    assert state.keychains[Keychain.EXTERNAL].revealed == {
        0: keys.derive(Keychain.EXTERNAL, 0).hex()
    }
    assert state.tip is not None
    assert state.tip.height == chain.tip
    assert state.tip.block_hash == chain.block_hashes[chain.tip]


@pytest.mark.asyncio
async def test_unconfirmed_output(engine, keys, chain):
    chain.fund(keys.derive(Keychain.INTERNAL, 0), 20_000, height=None)
    state = await engine.sync()
    assert state.confirmed_balance() == 0
    assert state.unconfirmed_balance() == 20_000


@pytest.mark.asyncio
async def test_resync_is_noop(engine, keys, chain, store):
    chain.fund(keys.derive(Keychain.EXTERNAL, 0), 100_000)
    chain.mine(3)
    chain.fund(keys.derive(Keychain.EXTERNAL, 2), 5_000)

    first = await engine.sync()
    mtime = store.path.stat().st_mtime_ns
    second = await engine.sync()

    assert second.model_dump() == first.model_dump()
    assert store.path.stat().st_mtime_ns == mtime


@pytest.mark.asyncio
async def test_detects_spend(engine, keys, chain):
    funding = chain.fund(keys.derive(Keychain.EXTERNAL, 0), 100_000)
    await engine.sync()

    chain.mine()
    spend = chain.spend((funding.txid, 0), b"\x00\x14" + b"\x99" * 20, 99_000)
    state = await engine.sync()

    record = state.utxos[format_outpoint(funding.txid, 0)]
    assert record.spent
    assert record.spent_by == spend.txid
    assert state.confirmed_balance() == 0


@pytest.mark.asyncio
async def test_gap_limit_follows_activity(engine, keys, chain):
    chain.fund(keys.derive(Keychain.EXTERNAL, 4), 1_000)
    chain.fund(keys.derive(Keychain.EXTERNAL, 8), 2_000)

    state = await engine.sync()

    assert state.confirmed_balance() == 3_000
    assert state.keychains[Keychain.EXTERNAL].last_used == 8
    # Every index up to the last used one is revealed, none beyond it
    assert sorted(state.keychains[Keychain.EXTERNAL].revealed) == list(range(9))


@pytest.mark.asyncio
async def test_gap_limit_stops_scanning(engine, keys, chain):
    # Gap limit is 5: index 5 sits right after five unused scripts
    chain.fund(keys.derive(Keychain.EXTERNAL, 5), 1_000)

    state = await engine.sync()

    assert state.utxos == {}
    assert state.keychains[Keychain.EXTERNAL].revealed == {}


@pytest.mark.asyncio
async def test_revealed_scripts_are_always_scanned(engine, keys, chain, store):
    async with store.writer() as state:
        for i in range(12):
            state.keychains[Keychain.EXTERNAL].revealed[i] = keys.derive(Keychain.EXTERNAL, i).hex()

    chain.fund(keys.derive(Keychain.EXTERNAL, 11), 7_000)
    state = await engine.sync()
    assert state.confirmed_balance() == 7_000


@pytest.mark.asyncio
async def test_reorg_rolls_back_confirmations(engine, keys, chain):
    old = chain.fund(keys.derive(Keychain.EXTERNAL, 0), 100_000)  # height 100
    chain.mine(5)
    recent = chain.fund(keys.derive(Keychain.EXTERNAL, 1), 50_000)  # height 105
    state = await engine.sync()
    assert [c.height for c in state.checkpoints] == [100, 105]

    # Blocks from 103 are replaced and the recent tx falls back to the mempool
    chain.reorg(from_height=103)
    state = await engine.sync()

    assert state.utxos[format_outpoint(old.txid, 0)].height == 100
    assert state.utxos[format_outpoint(recent.txid, 0)].height == 0
    assert state.confirmed_balance() == 100_000
    assert [c.height for c in state.checkpoints] == [100, 105]
    assert state.checkpoints[-1].block_hash == chain.hash_for(105, fork=1)


@pytest.mark.asyncio
async def test_reorg_reconfirms_in_new_block(engine, keys, chain):
    chain.fund(keys.derive(Keychain.EXTERNAL, 0), 100_000)
    chain.mine(5)
    recent = chain.fund(keys.derive(Keychain.EXTERNAL, 1), 50_000)
    await engine.sync()

    chain.reorg(from_height=104)
    chain.mine(2, fork=1)
    chain.confirm(recent.txid, 106)
    state = await engine.sync()

    assert state.utxos[format_outpoint(recent.txid, 0)].height == 106
    assert state.tip.height == 107


@pytest.mark.asyncio
async def test_reorg_reopens_orphaned_spend(engine, keys, chain):
    funding = chain.fund(keys.derive(Keychain.EXTERNAL, 0), 100_000)  # height 100
    chain.mine(5)
    spend = chain.spend((funding.txid, 0), b"\x00\x14" + b"\x99" * 20, 99_000)  # height 105
    state = await engine.sync()
    assert state.utxos[format_outpoint(funding.txid, 0)].spent_height == 105
    assert state.confirmed_balance() == 0

    # The new chain never includes the spend
    chain.reorg(from_height=103)
    del chain.transactions[spend.txid]
    state = await engine.sync()

    record = state.utxos[format_outpoint(funding.txid, 0)]
    assert not record.spent
    assert record.spent_by is None
    assert record.height == 100
    assert state.confirmed_balance() == 100_000


@pytest.mark.asyncio
async def test_reorg_keeps_spend_that_returns_to_mempool(engine, keys, chain, store):
    funding = chain.fund(keys.derive(Keychain.EXTERNAL, 0), 100_000)
    chain.mine(5)
    spend = chain.spend((funding.txid, 0), b"\x00\x14" + b"\x99" * 20, 99_000)
    await engine.sync()

    chain.reorg(from_height=103)
    state = await engine.sync()
    record = state.utxos[format_outpoint(funding.txid, 0)]
    assert record.spent
    assert record.spent_by == spend.txid
    assert record.spent_height == 0

    chain.mine(2, fork=1)
    chain.confirm(spend.txid, 107)
    state = await engine.sync()
    assert state.utxos[format_outpoint(funding.txid, 0)].spent_height == 107

    mtime = store.path.stat().st_mtime_ns
    await engine.sync()
    assert store.path.stat().st_mtime_ns == mtime


@pytest.mark.asyncio
async def test_reorg_beyond_checkpoints(engine, keys, chain, store):
    funding = chain.fund(keys.derive(Keychain.EXTERNAL, 0), 100_000)
    await engine.sync()
    before = store.snapshot()

    chain.reorg(from_height=50)
    with pytest.raises(ReorgTooDeep) as exc_info:
        await engine.sync()

    assert isinstance(exc_info.value, ConsistencyError)
    assert exc_info.value.recovery == "rescan"
    assert store.snapshot() == before

    state = await engine.rescan()
    assert state.utxos[format_outpoint(funding.txid, 0)].height == 0
    assert [c.height for c in state.checkpoints] == [100]
    assert state.checkpoints[0].block_hash == chain.hash_for(100, fork=1)

    # Ledger agrees with the source again
    assert (await engine.sync()).model_dump() == state.model_dump()


@pytest.mark.asyncio
async def test_chain_unavailable_changes_nothing(engine, keys, chain, store):
    chain.fund(keys.derive(Keychain.EXTERNAL, 0), 100_000)
    await engine.sync()
    before = store.snapshot()

    chain.mine()
    chain.fund(keys.derive(Keychain.EXTERNAL, 1), 1_000)
    chain.available = False

    with pytest.raises(ChainUnavailable) as exc_info:
        await engine.sync()
    assert isinstance(exc_info.value, TransientError)
    assert exc_info.value.retryable
    assert store.snapshot() == before


@pytest.mark.asyncio
async def test_checkpoint_retention(engine, keys, chain):
    for i in range(15):
        chain.mine()
        chain.fund(keys.derive(Keychain.EXTERNAL, i % 3), 1_000 + i)

    state = await engine.sync()

    assert len(state.checkpoints) == 10
    assert state.checkpoints[-1].height == chain.tip
    heights = [c.height for c in state.checkpoints]
    assert heights == sorted(heights)


def test_network_mismatch_fails_fast(config, keys, store):
    class MainnetSource(ChainSource):
        network = NetworkType.MAINNET

        async def get_tip_height(self):
            raise AssertionError

        async def get_block_hash(self, height):
            raise AssertionError

        async def get_script_histories(self, scripts):
            raise AssertionError

        async def get_raw_transaction(self, txid):
            raise AssertionError

        async def broadcast_transaction(self, tx_hex):
            raise AssertionError

        async def estimate_fee(self, target_blocks):
            raise AssertionError

    with pytest.raises(UnsupportedNetwork):
        ChainSyncEngine(config, keys, store, MainnetSource())


def test_store_network_mismatch(config, keys, chain):
    with pytest.raises(UnsupportedNetwork):
        ChainSyncEngine(config, keys, WalletStore(NetworkType.SIGNET), chain)
