"""
Lampo Wallet CLI - Generate seeds, receive addresses, inspect coins and send.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer
from loguru import logger

from lampocore.errors import LampoError
from lampocore.models import NetworkType
from lampowallet.config import EsploraConfig, WalletConfig
from lampowallet.wallet.keys import KeyManager
from lampowallet.wallet.service import WalletService

app = typer.Typer(
    name="lampo-wallet",
    help="Lampo on-chain wallet",
    add_completion=False,
)

T = TypeVar("T")


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _load_mnemonic(mnemonic: str | None, mnemonic_file: Path | None) -> str:
    if mnemonic_file:
        if not mnemonic_file.exists():
            logger.error(f"Mnemonic file not found: {mnemonic_file}")
            raise typer.Exit(1)
        mnemonic = mnemonic_file.read_text().strip()

    if not mnemonic:
        logger.error("Mnemonic required. Use --mnemonic, --mnemonic-file, or MNEMONIC env var")
        raise typer.Exit(1)
    return mnemonic


def _build_config(network: NetworkType, esplora_url: str | None, data_dir: Path | None) -> WalletConfig:
    esplora = EsploraConfig()
    if esplora_url:
        esplora.urls[network] = esplora_url
    return WalletConfig(network=network, data_dir=data_dir, esplora=esplora)


def _run_with_wallet(
    mnemonic: str,
    config: WalletConfig,
    action: Callable[[WalletService], Awaitable[T]],
) -> T:
    async def _run() -> T:
        keys = KeyManager.from_mnemonic(mnemonic, config.network)
        wallet = WalletService(config, keys)
        try:
            return await action(wallet)
        finally:
            await wallet.close()

    try:
        return asyncio.run(_run())
    except (LampoError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        raise typer.Exit(1) from e


MnemonicOption = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic")
MnemonicFileOption = typer.Option(None, "--mnemonic-file", "-f", help="Path to mnemonic file")
NetworkOption = typer.Option(
    NetworkType.MAINNET, "--network", "-n", envvar="LAMPO_NETWORK", help="Bitcoin network"
)
EsploraOption = typer.Option(None, "--esplora-url", envvar="ESPLORA_URL", help="Esplora API URL")
DataDirOption = typer.Option(None, "--data-dir", "-d", envvar="LAMPO_DATA_DIR")
LogLevelOption = typer.Option("INFO", "--log-level", "-l")


@app.command()
def generate(
    word_count: int = typer.Option(12, "--words", "-w", help="Number of words (12 or 24)"),
    network: NetworkType = NetworkOption,
    log_level: str = LogLevelOption,
) -> None:
    """Generate a new BIP39 mnemonic and show the node id it controls."""
    setup_logging(log_level)

    try:
        keys, mnemonic = KeyManager.generate(network, words=word_count)
    except ValueError as e:
        logger.error(f"Failed to generate mnemonic: {e}")
        raise typer.Exit(1) from e

    typer.echo("\n" + "=" * 80)
    typer.echo("GENERATED MNEMONIC - WRITE THIS DOWN AND KEEP IT SAFE!")
    typer.echo("=" * 80)
    typer.echo(f"\n{mnemonic}\n")
    typer.echo("=" * 80)
    typer.echo(f"Node id: {keys.node_id.hex()}")
    typer.echo("Anyone with this phrase can spend your coins.")
    typer.echo("=" * 80 + "\n")


@app.command()
def address(
    mnemonic: str = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    network: NetworkType = NetworkOption,
    esplora_url: str | None = EsploraOption,
    data_dir: Path | None = DataDirOption,
    log_level: str = LogLevelOption,
) -> None:
    """Reveal a fresh receive address."""
    setup_logging(log_level)
    config = _build_config(network, esplora_url, data_dir)
    new_address = _run_with_wallet(
        _load_mnemonic(mnemonic, mnemonic_file), config, lambda w: w.new_address()
    )
    print(new_address)


@app.command()
def balance(
    mnemonic: str = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    network: NetworkType = NetworkOption,
    esplora_url: str | None = EsploraOption,
    data_dir: Path | None = DataDirOption,
    log_level: str = LogLevelOption,
) -> None:
    """Sync and show the confirmed balance."""
    setup_logging(log_level)
    config = _build_config(network, esplora_url, data_dir)
    total = _run_with_wallet(
        _load_mnemonic(mnemonic, mnemonic_file), config, lambda w: w.balance()
    )
    print(f"\nConfirmed Balance: {total:,} sats ({total / 1e8:.8f} BTC)")


@app.command()
def utxos(
    mnemonic: str = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    network: NetworkType = NetworkOption,
    esplora_url: str | None = EsploraOption,
    data_dir: Path | None = DataDirOption,
    log_level: str = LogLevelOption,
) -> None:
    """Sync and list unspent coins."""
    setup_logging(log_level)
    config = _build_config(network, esplora_url, data_dir)
    coins = _run_with_wallet(
        _load_mnemonic(mnemonic, mnemonic_file), config, lambda w: w.list_utxos()
    )

    if not coins:
        print("\nNo UTXOs found")
        return

    print(f"\n{'Outpoint':<70} {'Amount (msat)':>16} {'Height':>8} Reserved")
    print("-" * 110)
    for coin in coins:
        outpoint = f"{coin.txid}:{coin.vout}"
        print(f"{outpoint:<70} {coin.amount_msat:>16,} {coin.confirmed:>8} {coin.reserved}")


@app.command()
def send(
    destination: str = typer.Argument(..., help="Destination address"),
    amount: int = typer.Argument(..., help="Amount in sats"),
    fee_rate: int | None = typer.Option(
        None, "--fee-rate", help="Fee rate in sat/kvB (default: estimate)"
    ),
    target_blocks: int = typer.Option(3, "--target", help="Confirmation target for fee estimate"),
    broadcast: bool = typer.Option(True, "--broadcast/--no-broadcast"),
    mnemonic: str = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    network: NetworkType = NetworkOption,
    esplora_url: str | None = EsploraOption,
    data_dir: Path | None = DataDirOption,
    log_level: str = LogLevelOption,
) -> None:
    """Build, sign and (by default) broadcast a spend."""
    setup_logging(log_level)
    config = _build_config(network, esplora_url, data_dir)

    async def _send(wallet: WalletService) -> tuple[str, int, str]:
        rate = fee_rate if fee_rate is not None else await wallet.estimate_fee(target_blocks)
        tx = await wallet.create_transaction(destination, amount, rate)
        if broadcast:
            await wallet.broadcast(tx)
        return tx.txid, tx.fee, tx.hex

    txid, fee, tx_hex = _run_with_wallet(_load_mnemonic(mnemonic, mnemonic_file), config, _send)

    print(f"\nTxid: {txid}")
    print(f"Fee:  {fee:,} sats")
    if not broadcast:
        print(f"\n{tx_hex}")


@app.command()
def rescan(
    mnemonic: str = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    network: NetworkType = NetworkOption,
    esplora_url: str | None = EsploraOption,
    data_dir: Path | None = DataDirOption,
    log_level: str = LogLevelOption,
) -> None:
    """Discard the checkpoint ledger and rebuild the wallet view from genesis."""
    setup_logging(log_level)
    config = _build_config(network, esplora_url, data_dir)
    state = _run_with_wallet(
        _load_mnemonic(mnemonic, mnemonic_file), config, lambda w: w.rescan()
    )
    print(f"\nRescan complete: {len(state.unspent())} unspent UTXOs")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
