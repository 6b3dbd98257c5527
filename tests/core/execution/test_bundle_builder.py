"""
Tests for bundle building: prerequisites, permits and encoded calls.
"""

import pytest

from vaultflow.core.constants import (
    ADAPTER_DEPOSIT,
    ADAPTER_REDEEM,
    ADAPTER_TRANSFER_FROM,
    ADAPTER_WITHDRAW,
    ADAPTER_WRAP_NATIVE,
    ERC20_PERMIT,
    MAX_UINT256,
)
from vaultflow.core.execution.abi import encode_address, encode_uint, selector
from vaultflow.core.execution.bundle import BundleBuilder, approve_transaction, to_shares_up
from vaultflow.core.execution.errors import (
    InsufficientFundsError,
    PlanningError,
    StaleSimulationError,
)
from vaultflow.core.execution.models import OperationKind, PlannedOperation
from vaultflow.core.execution.simulation import PermitInfo, SimulationState, VaultSnapshot


OWNER = "0x1111111111111111111111111111111111111111"
BUNDLER = "0x6BFd8137e702540E7A42B74178A4a49Ba43920C4"
ADAPTER = "0xb98c948CFA24072e58935BC004a8A7b376AE746A"
WETH = "0x4200000000000000000000000000000000000006"
USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
WETH_VAULT = "0xAaAaAaAaaAaAaaaaAaAaaAaAAAaaAAaAaaaaaaAA"
USDC_VAULT = "0xBbBbBBbbbbBBbbBbbbbBbbbbBbBbbbBbBBBbBbbb"
OTHER_USDC_VAULT = "0xDdDdDDdddDdDDdddDDDdddDDddDdDDdDdDDDdDDd"

USDC_SNAPSHOT = VaultSnapshot(
    address=USDC_VAULT,
    asset=USDC,
    total_assets=1_000_000000,
    total_supply=1_000 * 10**18,
    decimals=18,
)
WETH_SNAPSHOT = VaultSnapshot(
    address=WETH_VAULT,
    asset=WETH,
    total_assets=10**20,
    total_supply=10**20,
    decimals=18,
)
OTHER_USDC_SNAPSHOT = VaultSnapshot(
    address=OTHER_USDC_VAULT,
    asset=USDC,
    total_assets=500_000000,
    total_supply=500 * 10**18,
    decimals=18,
)


def make_state(holdings=None, allowances=None, permits=None, native_balance=10**18, extra_vaults=None):
    base_holdings = {USDC: 50_000000, USDC_VAULT: 3 * 10**18, WETH: 0, WETH_VAULT: 0}
    base_allowances = {
        (USDC, ADAPTER): 0,
        (USDC_VAULT, ADAPTER): 0,
        (WETH, ADAPTER): 0,
        (WETH_VAULT, ADAPTER): 0,
    }
    base_holdings.update(holdings or {})
    base_allowances.update(allowances or {})
    return SimulationState.create(
        chain_id=8453,
        block_number=100,
        block_timestamp=1_700_000_000,
        owner=OWNER,
        bundler_address=BUNDLER,
        adapter_address=ADAPTER,
        native_balance=native_balance,
        vaults={USDC_VAULT: USDC_SNAPSHOT, WETH_VAULT: WETH_SNAPSHOT, **(extra_vaults or {})},
        holdings=base_holdings,
        allowances=base_allowances,
        permits=permits,
    )


def deposit(vault, amount):
    return PlannedOperation(
        kind=OperationKind.DEPOSIT, target=vault, sender=OWNER, amount=amount, owner=OWNER, receiver=OWNER
    )


def withdraw(vault, amount):
    return PlannedOperation(
        kind=OperationKind.WITHDRAW, target=vault, sender=OWNER, amount=amount, owner=OWNER, receiver=OWNER
    )


def wrap(amount):
    return PlannedOperation(kind=OperationKind.WRAP, target=WETH, sender=OWNER, amount=amount, owner=OWNER)


def call_selectors(bundle):
    return [call.data[2:10] for call in bundle.calls]


@pytest.fixture
def builder():
    return BundleBuilder(slippage_tolerance_wad=3 * 10**14, supports_signature=False, approval_reset_tokens=[])


# ============================================================================
# Deposits
# ============================================================================

class TestDeposit:
    def test_missing_allowance_adds_exact_approval(self, builder):
        bundle = builder.build((deposit(USDC_VAULT, 10_000000),), make_state(), OWNER)

        assert bundle.prerequisite_transactions == (approve_transaction(USDC, ADAPTER, 10_000000),)
        approval = bundle.prerequisite_transactions[0]
        assert approval.kind == OperationKind.APPROVE
        assert approval.to == USDC
        assert approval.data.endswith(encode_address(ADAPTER) + encode_uint(10_000000))
        assert call_selectors(bundle) == [selector(ADAPTER_TRANSFER_FROM), selector(ADAPTER_DEPOSIT)]
        assert bundle.required_signatures == ()

    def test_sufficient_allowance_needs_no_prerequisite(self, builder):
        state = make_state(allowances={(USDC, ADAPTER): 10_000000})
        bundle = builder.build((deposit(USDC_VAULT, 10_000000),), state, OWNER)

        assert bundle.prerequisite_transactions == ()

    def test_main_transaction_targets_bundler(self, builder):
        bundle = builder.build((deposit(USDC_VAULT, 10_000000),), make_state(), OWNER)
        tx = bundle.main_transaction

        assert tx["to"] == BUNDLER
        assert tx["value"] == 0
        assert tx["data"].startswith("0x")
        assert bundle.total_steps == 2

    def test_build_is_deterministic(self, builder):
        ops = (deposit(USDC_VAULT, 10_000000),)
        first = builder.build(ops, make_state(), OWNER)
        second = builder.build(ops, make_state(), OWNER)

        assert first == second
        assert first.main_transaction == second.main_transaction

    def test_insufficient_balance_reports_breakdown(self, builder):
        state = make_state(holdings={USDC: 5_000000})

        with pytest.raises(InsufficientFundsError) as exc_info:
            builder.build((deposit(USDC_VAULT, 10_000000),), state, OWNER)

        assert "Requested: 10000000" in exc_info.value.message
        assert "Available: 5000000" in exc_info.value.message

    def test_wrapped_deposit_uses_adapter_balance(self, builder):
        amount = 5 * 10**17
        bundle = builder.build((wrap(amount), deposit(WETH_VAULT, amount)), make_state(), OWNER)

        assert bundle.prerequisite_transactions == ()
        assert call_selectors(bundle) == [selector(ADAPTER_WRAP_NATIVE), selector(ADAPTER_DEPOSIT)]
        assert bundle.calls[0].value == amount
        assert bundle.main_transaction["value"] == amount

    def test_wrap_beyond_native_balance_fails(self, builder):
        with pytest.raises(InsufficientFundsError):
            builder.build((wrap(2 * 10**18), deposit(WETH_VAULT, 2 * 10**18)), make_state(), OWNER)

    def test_deposit_encodes_receiver_and_amount(self, builder):
        bundle = builder.build((deposit(USDC_VAULT, 10_000000),), make_state(), OWNER)
        deposit_call = bundle.calls[-1]

        assert deposit_call.to == ADAPTER
        assert encode_address(USDC_VAULT) in deposit_call.data
        assert encode_uint(10_000000) in deposit_call.data
        assert deposit_call.data.endswith(encode_address(OWNER))


class TestApprovalReset:
    def test_reset_token_gets_zero_approval_first(self):
        builder = BundleBuilder(approval_reset_tokens=[USDC.upper()])
        state = make_state(allowances={(USDC, ADAPTER): 5})
        bundle = builder.build((deposit(USDC_VAULT, 10_000000),), state, OWNER)

        assert bundle.prerequisite_transactions == (
            approve_transaction(USDC, ADAPTER, 0),
            approve_transaction(USDC, ADAPTER, 10_000000),
        )

    def test_reset_not_needed_from_zero(self):
        builder = BundleBuilder(approval_reset_tokens=[USDC])
        bundle = builder.build((deposit(USDC_VAULT, 10_000000),), make_state(), OWNER)

        assert len(bundle.prerequisite_transactions) == 1

    def test_other_tokens_are_not_reset(self, builder):
        state = make_state(allowances={(USDC, ADAPTER): 5})
        bundle = builder.build((deposit(USDC_VAULT, 10_000000),), state, OWNER)

        assert bundle.prerequisite_transactions == (approve_transaction(USDC, ADAPTER, 10_000000),)


# ============================================================================
# Withdrawals
# ============================================================================

class TestWithdraw:
    def test_withdraw_approves_rounded_up_shares(self, builder):
        bundle = builder.build((withdraw(USDC_VAULT, 2_500000),), make_state(), OWNER)
        shares = to_shares_up(2_500000, USDC_SNAPSHOT)

        assert 24 * 10**17 < shares <= 25 * 10**17
        assert bundle.prerequisite_transactions == (approve_transaction(USDC_VAULT, ADAPTER, shares),)
        assert call_selectors(bundle) == [selector(ADAPTER_WITHDRAW)]
        assert bundle.calls[0].data.endswith(encode_address(OWNER) + encode_address(OWNER))

    def test_withdraw_more_than_position_fails(self, builder):
        with pytest.raises(InsufficientFundsError):
            builder.build((withdraw(USDC_VAULT, 5_000_000000),), make_state(), OWNER)

    def test_withdraw_all_redeems_full_share_balance(self, builder):
        bundle = builder.build((withdraw(USDC_VAULT, MAX_UINT256),), make_state(), OWNER)

        assert call_selectors(bundle) == [selector(ADAPTER_REDEEM)]
        assert encode_uint(3 * 10**18) in bundle.calls[0].data
        assert bundle.prerequisite_transactions == (approve_transaction(USDC_VAULT, ADAPTER, 3 * 10**18),)

    def test_withdraw_all_without_shares(self, builder):
        state = make_state(holdings={USDC_VAULT: 0})

        with pytest.raises(PlanningError, match="No shares to withdraw"):
            builder.build((withdraw(USDC_VAULT, MAX_UINT256),), state, OWNER)


# ============================================================================
# Transfers
# ============================================================================

class TestTransfer:
    def test_withdrawn_assets_stay_with_adapter_for_the_deposit(self, builder):
        state = make_state(holdings={USDC: 0}, extra_vaults={OTHER_USDC_VAULT: OTHER_USDC_SNAPSHOT})
        ops = (withdraw(USDC_VAULT, 2_500000), deposit(OTHER_USDC_VAULT, 2_500000))

        bundle = builder.build(ops, state, OWNER)

        assert call_selectors(bundle) == [selector(ADAPTER_WITHDRAW), selector(ADAPTER_DEPOSIT)]
        assert bundle.calls[0].data.endswith(encode_address(ADAPTER) + encode_address(OWNER))
        assert bundle.calls[1].data.endswith(encode_address(OWNER))
        shares = to_shares_up(2_500000, USDC_SNAPSHOT)
        assert bundle.prerequisite_transactions == (approve_transaction(USDC_VAULT, ADAPTER, shares),)

    def test_deposit_beyond_withdrawn_amount_pulls_the_rest(self, builder):
        state = make_state(extra_vaults={OTHER_USDC_VAULT: OTHER_USDC_SNAPSHOT})
        ops = (withdraw(USDC_VAULT, 1_000000), deposit(OTHER_USDC_VAULT, 1_500000))

        bundle = builder.build(ops, state, OWNER)

        assert call_selectors(bundle) == [
            selector(ADAPTER_WITHDRAW),
            selector(ADAPTER_TRANSFER_FROM),
            selector(ADAPTER_DEPOSIT),
        ]
        assert encode_uint(500000) in bundle.calls[1].data

    def test_unrelated_deposit_does_not_reroute_withdraw(self, builder):
        ops = (withdraw(USDC_VAULT, 1_000000), deposit(WETH_VAULT, 1))
        state = make_state(holdings={WETH: 1}, allowances={(WETH, ADAPTER): 1})

        bundle = builder.build(ops, state, OWNER)

        assert bundle.calls[0].data.endswith(encode_address(OWNER) + encode_address(OWNER))


# ============================================================================
# Snapshot coverage and permits
# ============================================================================

class TestSnapshotCoverage:
    def test_unknown_vault_is_stale(self, builder):
        unknown = "0xCcCCccccCCCCcCCCCCCcCcCccCcCCCcCcccccccC"

        with pytest.raises(StaleSimulationError):
            builder.build((deposit(unknown, 1),), make_state(), OWNER)

    def test_stale_is_a_planning_error(self):
        assert issubclass(StaleSimulationError, PlanningError)

    def test_lookups_ignore_address_case(self, builder):
        bundle = builder.build((deposit(USDC_VAULT.lower(), 10_000000),), make_state(), OWNER)
        assert len(bundle.calls) == 2

    def test_empty_operations(self, builder):
        with pytest.raises(PlanningError):
            builder.build((), make_state(), OWNER)


class TestPermits:
    @pytest.fixture
    def permit_state(self):
        return make_state(permits={USDC: PermitInfo(name="USD Coin", version="2", nonce=7)})

    def test_permit_replaces_approval(self, permit_state):
        builder = BundleBuilder(supports_signature=True)
        bundle = builder.build((deposit(USDC_VAULT, 10_000000),), permit_state, OWNER)

        assert bundle.prerequisite_transactions == ()
        assert len(bundle.required_signatures) == 1
        requirement = bundle.required_signatures[0]
        assert requirement.spender == ADAPTER
        assert requirement.value == 10_000000
        assert requirement.nonce == 7
        assert requirement.deadline == 1_700_000_000 + 3600
        assert bundle.calls[0].signature_index == 0
        assert bundle.total_steps == 2

    def test_typed_data_domain(self, permit_state):
        builder = BundleBuilder(supports_signature=True)
        bundle = builder.build((deposit(USDC_VAULT, 10_000000),), permit_state, OWNER)
        typed = bundle.required_signatures[0].typed_data()

        assert typed["primaryType"] == "Permit"
        assert typed["domain"] == {
            "name": "USD Coin",
            "version": "2",
            "chainId": 8453,
            "verifyingContract": USDC,
        }
        assert typed["message"]["value"] == "10000000"

    def test_main_transaction_needs_signatures(self, permit_state):
        builder = BundleBuilder(supports_signature=True)
        bundle = builder.build((deposit(USDC_VAULT, 10_000000),), permit_state, OWNER)

        with pytest.raises(ValueError):
            bundle.main_transaction

        signature = "0x" + "11" * 32 + "22" * 32 + "1b"
        tx = bundle.tx([signature])
        assert selector(ERC20_PERMIT) in tx["data"]
        assert "11" * 32 in tx["data"]

    def test_signatures_disabled_falls_back_to_approval(self, permit_state, builder):
        bundle = builder.build((deposit(USDC_VAULT, 10_000000),), permit_state, OWNER)

        assert bundle.required_signatures == ()
        assert len(bundle.prerequisite_transactions) == 1
