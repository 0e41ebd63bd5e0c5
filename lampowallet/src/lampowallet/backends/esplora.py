"""
Esplora REST chain data source (mempool.space, blockstream.info, self hosted).
"""

from __future__ import annotations

import asyncio
import hashlib
import os
from typing import Any

import httpx
from loguru import logger

from lampocore.constants import MIN_RELAY_FEE_RATE_KVB
from lampocore.models import NetworkType
from lampowallet.backends.base import ChainOutput, ChainSource, ChainTransaction, ChainUnavailable

# Esplora returns at most this many confirmed transactions per history page
HISTORY_PAGE_SIZE = 25

DEFAULT_TIMEOUT = 30.0

SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


def script_hash(scriptpubkey: bytes) -> str:
    """Electrum style script hash: SHA256 of the script, hex of the reversed digest."""
    return hashlib.sha256(scriptpubkey).digest()[::-1].hex()


def parse_transaction(data: dict[str, Any]) -> ChainTransaction:
    status = data.get("status") or {}
    confirmed = bool(status.get("confirmed"))
    return ChainTransaction(
        txid=data["txid"],
        inputs=[
            (vin["txid"], int(vin["vout"]))
            for vin in data.get("vin", [])
            if not vin.get("is_coinbase")
        ],
        outputs=[
            ChainOutput(value=int(vout["value"]), scriptpubkey=vout["scriptpubkey"])
            for vout in data.get("vout", [])
        ],
        height=status.get("block_height") if confirmed else None,
        block_hash=status.get("block_hash") if confirmed else None,
    )


class EsploraBackend(ChainSource):
    """
    Chain data source over the Esplora HTTP API.

    Requests are issued concurrently but never more than ``parallel_requests``
    at a time. Every transport or decoding failure surfaces as
    ChainUnavailable.
    """

    def __init__(
        self,
        base_url: str,
        network: NetworkType,
        parallel_requests: int = 2,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.network = network
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._semaphore = asyncio.Semaphore(max(1, parallel_requests))

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        async with self._semaphore:
            try:
                response = await self.client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
            except httpx.TimeoutException as e:
                logger.error(f"Esplora request timed out: {method} {path} - {e}")
                raise ChainUnavailable(f"Timeout calling {path}") from e
            except httpx.HTTPError as e:
                logger.error(f"Esplora request failed: {method} {path} - {e}")
                raise ChainUnavailable(f"Request to {path} failed: {e}") from e

    async def _get_json(self, path: str) -> Any:
        response = await self._request("GET", path)
        try:
            return response.json()
        except ValueError as e:
            raise ChainUnavailable(f"Invalid JSON from {path}") from e

    async def _get_text(self, path: str) -> str:
        response = await self._request("GET", path)
        return response.text.strip()

    async def get_tip_height(self) -> int:
        text = await self._get_text("/blocks/tip/height")
        try:
            height = int(text)
        except ValueError as e:
            raise ChainUnavailable(f"Invalid tip height: {text!r}") from e
        logger.debug(f"Current block height: {height}")
        return height

    async def get_block_hash(self, height: int) -> str:
        block_hash = await self._get_text(f"/block-height/{height}")
        if len(block_hash) != 64:
            raise ChainUnavailable(f"Invalid block hash for height {height}: {block_hash!r}")
        return block_hash

    async def _script_history(self, scriptpubkey: bytes) -> list[ChainTransaction]:
        path = f"/scripthash/{script_hash(scriptpubkey)}/txs"
        page = await self._get_json(path)
        txs = [parse_transaction(item) for item in page]

        # First page holds mempool txs plus up to 25 confirmed ones; page on by last txid
        confirmed = [tx for tx in txs if tx.confirmed]
        while len(confirmed) >= HISTORY_PAGE_SIZE:
            page = await self._get_json(f"{path}/chain/{confirmed[-1].txid}")
            confirmed = [parse_transaction(item) for item in page]
            txs.extend(confirmed)
            if len(page) < HISTORY_PAGE_SIZE:
                break

        if SENSITIVE_LOGGING:
            logger.debug(f"History for {scriptpubkey.hex()}: {len(txs)} txs")
        return txs

    async def get_script_histories(
        self, scripts: list[bytes]
    ) -> dict[bytes, list[ChainTransaction]]:
        histories = await asyncio.gather(*(self._script_history(s) for s in scripts))
        return dict(zip(scripts, histories, strict=True))

    async def get_raw_transaction(self, txid: str) -> str | None:
        try:
            return await self._get_text(f"/tx/{txid}/hex")
        except ChainUnavailable as e:
            cause = e.__cause__
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code == 404:
                return None
            raise

    async def broadcast_transaction(self, tx_hex: str) -> str:
        response = await self._request("POST", "/tx", content=tx_hex)
        txid = response.text.strip()
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def estimate_fee(self, target_blocks: int) -> int:
        estimates = await self._get_json("/fee-estimates")
        # Keys are confirmation targets as strings, values in sat/vB
        targets = sorted(int(k) for k in estimates)
        usable = [t for t in targets if t <= target_blocks] or targets[:1]
        if not usable:
            logger.warning("Fee estimation unavailable, using relay minimum")
            return MIN_RELAY_FEE_RATE_KVB
        sat_per_vbyte = float(estimates[str(usable[-1])])
        fee_rate = max(MIN_RELAY_FEE_RATE_KVB, int(round(sat_per_vbyte * 1000)))
        logger.debug(f"Estimated fee for {target_blocks} blocks: {fee_rate} sat/kvB")
        return fee_rate

    async def close(self) -> None:
        await self.client.aclose()
