"""
Tests for the display balance cache.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from vaultflow.core.execution.errors import RpcError
from vaultflow.services import BalanceCache


USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
OWNER = "0x1111111111111111111111111111111111111111"


@pytest.fixture
def reader():
    reader = MagicMock()
    reader.get_native_balance = AsyncMock(return_value=10**18)
    reader.get_erc20_balance = AsyncMock(return_value=50_000000)
    return reader


@pytest.mark.asyncio
async def test_reads_native_and_token_balances(reader):
    cache = BalanceCache(reader)

    assert await cache.native_balance(OWNER) == 10**18
    assert await cache.token_balance(USDC, OWNER) == 50_000000
    reader.get_erc20_balance.assert_awaited_once_with(USDC, OWNER)
    assert not cache.is_stale(USDC, OWNER)


@pytest.mark.asyncio
async def test_failed_read_falls_back_to_last_known(reader):
    cache = BalanceCache(reader)
    await cache.token_balance(USDC, OWNER)

    reader.get_erc20_balance.side_effect = RpcError("RPC request failed (eth_call): timeout")

    assert await cache.token_balance(USDC, OWNER) == 50_000000
    assert cache.is_stale(USDC, OWNER)
    assert cache.last_known(USDC.lower(), OWNER) == 50_000000


@pytest.mark.asyncio
async def test_failed_first_read_is_zero(reader):
    reader.get_native_balance.side_effect = RpcError("RPC error: header not found")
    cache = BalanceCache(reader)

    assert await cache.native_balance(OWNER) == 0
    assert cache.is_stale(None, OWNER)


@pytest.mark.asyncio
async def test_next_read_recovers(reader):
    reader.get_native_balance.side_effect = [RpcError("RPC error: busy"), 5]
    cache = BalanceCache(reader)

    assert await cache.native_balance(OWNER) == 0
    assert await cache.native_balance(OWNER) == 5
    assert not cache.is_stale(None, OWNER)


@pytest.mark.asyncio
async def test_unexpected_errors_propagate(reader):
    reader.get_erc20_balance.side_effect = RuntimeError("bug")
    cache = BalanceCache(reader)

    with pytest.raises(RuntimeError):
        await cache.token_balance(USDC, OWNER)
