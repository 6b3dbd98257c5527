"""
Tests for the command line entry points.
"""

import pytest

import cli


VAULT = "0xBbBbBBbbbbBBbbBbbbbBbbbbBbBbbbBbBBBbBbbb"
OTHER_VAULT = "0xDdDdDDdddDdDDdddDDDdddDDddDdDDdDdDDDdDDd"
USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
OWNER = "0x1111111111111111111111111111111111111111"


class NotAVaultReader:
    """Reader whose vault lookup fails the way a plain ERC-20 address does."""

    closed = False

    def __init__(self, rpc_url=None):
        pass

    async def fetch_vault_ref(self, address):
        raise ValueError("Invalid address length: 0x")

    async def aclose(self):
        NotAVaultReader.closed = True


@pytest.mark.asyncio
async def test_vault_command_reports_decode_errors(monkeypatch, capsys):
    monkeypatch.setattr(cli, "ChainReader", NotAVaultReader)

    await cli.cli_vault(VAULT, None)

    out = capsys.readouterr().out
    assert "❌ Error: Invalid address length" in out
    assert NotAVaultReader.closed


def test_plan_command_prints_transfer_steps(capsys):
    cli.cli_plan("transfer", VAULT, "5", 6, USDC, 0, OWNER, destination=OTHER_VAULT)

    out = capsys.readouterr().out
    assert "withdraw" in out
    assert "deposit" in out
    assert OTHER_VAULT in out


def test_plan_command_reports_missing_destination(capsys):
    cli.cli_plan("transfer", VAULT, "5", 6, USDC, 0, OWNER)

    assert "❌ Transfer requires a destination vault" in capsys.readouterr().out


def test_plan_command_uses_wrapped_balance(capsys):
    weth = cli.settings.wrapped_native_address

    cli.cli_plan("deposit", VAULT, "0.5", 18, weth, 0, OWNER, wrapped_balance=10**18)

    out = capsys.readouterr().out
    assert "wrap" not in out
    assert "deposit" in out
