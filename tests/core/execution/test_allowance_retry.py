"""
Tests for the allowance retry policy.
"""

import pytest

from vaultflow.core.execution.errors import GasEstimationError, RpcError
from vaultflow.core.execution.retry import (
    AllowanceRetryPolicy,
    is_allowance_error,
    new_allowance_policy,
)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.mark.parametrize(
    "error",
    [
        Exception("execution reverted: ERC20: insufficient allowance"),
        GasEstimationError("Gas estimation failed: transfer amount exceeds allowance"),
        RpcError("RPC error: ERC20: transfer amount exceeds balance", code=3),
    ],
)
def test_allowance_errors_are_recognised(error):
    assert is_allowance_error(error)


@pytest.mark.parametrize(
    "error",
    [
        Exception("execution reverted: vault paused"),
        Exception("fetch failed"),
        Exception(""),
    ],
)
def test_other_errors_are_not_allowance_errors(error):
    assert not is_allowance_error(error)


def test_retry_requires_a_sent_prerequisite():
    policy = AllowanceRetryPolicy(max_retries=1, delay_seconds=2.0)
    error = Exception("insufficient allowance")

    assert not policy.should_retry(error, prerequisites_sent=False)
    assert policy.should_retry(error, prerequisites_sent=True)


@pytest.mark.asyncio
async def test_single_retry_budget():
    sleep = SleepRecorder()
    policy = AllowanceRetryPolicy(max_retries=1, delay_seconds=2.0, sleep=sleep)
    error = Exception("insufficient allowance")

    assert policy.should_retry(error, prerequisites_sent=True)
    await policy.wait()

    assert sleep.delays == [2.0]
    assert policy.exhausted
    assert not policy.should_retry(error, prerequisites_sent=True)

    policy.reset()
    assert policy.should_retry(error, prerequisites_sent=True)


def test_zero_retries_never_retries():
    policy = AllowanceRetryPolicy(max_retries=0)
    assert not policy.should_retry(Exception("insufficient allowance"), prerequisites_sent=True)


def test_defaults_come_from_settings():
    policy = new_allowance_policy()

    assert policy.max_retries == 1
    assert policy.delay_seconds == 2.0
    assert policy.attempts == 0


def test_each_policy_starts_fresh():
    first = new_allowance_policy()
    first.attempts = 1

    assert new_allowance_policy().attempts == 0
