"""
Durable wallet state with a single-writer / multi-reader contract.

Readers get a deep copy of the last committed state and never block on a
writer. Writers are serialized by an asyncio lock, mutate a private copy and
commit it atomically on success; an exception inside the writer block
discards every change.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from loguru import logger

from lampocore.models import NetworkType
from lampowallet.wallet.models import WalletState

STATE_FILENAME = "wallet_state.json"


class WalletStore:
    def __init__(self, network: NetworkType, data_dir: Path | None = None):
        self.network = network
        self.path = data_dir / STATE_FILENAME if data_dir is not None else None
        self._write_lock = asyncio.Lock()
        self._snapshot_lock = threading.Lock()
        self._reserved: set[str] = set()
        self._state = self._load()

    def _load(self) -> WalletState:
        if self.path is None or not self.path.exists():
            return WalletState.empty(self.network)

        state = WalletState.model_validate_json(self.path.read_text())
        if state.network != self.network:
            raise ValueError(
                f"Wallet state at {self.path} is for {state.network.value}, "
                f"not {self.network.value}"
            )
        logger.info(
            f"Loaded wallet state: {len(state.utxos)} UTXO records, "
            f"tip {state.tip.height if state.tip else 'none'}"
        )
        return state

    def _persist(self, state: WalletState) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        payload = json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True)
        with open(tmp_path, "w") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    def snapshot(self) -> WalletState:
        """Last committed state. Never reflects a partially applied write."""
        with self._snapshot_lock:
            return self._state.model_copy(deep=True)

    @property
    def locked(self) -> bool:
        return self._write_lock.locked()

    @asynccontextmanager
    async def writer(self) -> AsyncIterator[WalletState]:
        """
        Exclusive write access.

        Yields a working copy; it replaces the committed state only if the
        block exits without raising.
        """
        async with self._write_lock:
            working = self.snapshot()
            before = working.model_dump(mode="json")
            yield working
            if working.model_dump(mode="json") == before:
                return
            self._persist(working)
            with self._snapshot_lock:
                self._state = working

    def reserve(self, outpoints: list[str]) -> None:
        with self._snapshot_lock:
            already = self._reserved.intersection(outpoints)
            if already:
                raise ValueError(f"Outpoints already reserved: {sorted(already)}")
            self._reserved.update(outpoints)

    def release(self, outpoints: list[str]) -> None:
        with self._snapshot_lock:
            self._reserved.difference_update(outpoints)

    def reserved(self) -> frozenset[str]:
        with self._snapshot_lock:
            return frozenset(self._reserved)
