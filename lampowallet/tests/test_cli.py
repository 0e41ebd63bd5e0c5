"""
Tests for the lampo-wallet command line.
"""

from __future__ import annotations

from typer.testing import CliRunner

from lampowallet.cli import app

runner = CliRunner()


def test_generate_prints_mnemonic():
    result = runner.invoke(app, ["generate", "--network", "signet"])
    assert result.exit_code == 0
    assert "GENERATED MNEMONIC" in result.output
    assert "Node id: 0" in result.output


def test_generate_rejects_word_count():
    result = runner.invoke(app, ["generate", "--words", "15"])
    assert result.exit_code == 1


def test_address_requires_mnemonic(monkeypatch):
    monkeypatch.delenv("MNEMONIC", raising=False)
    result = runner.invoke(app, ["address", "--network", "signet"])
    assert result.exit_code == 1


def test_regtest_without_endpoint_fails_fast(monkeypatch):
    monkeypatch.delenv("ESPLORA_URL", raising=False)
    mnemonic = "abandon " * 11 + "about"
    result = runner.invoke(app, ["balance", "--network", "regtest", "--mnemonic", mnemonic])
    assert result.exit_code == 1
