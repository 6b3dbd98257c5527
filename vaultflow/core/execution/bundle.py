"""
Bundle Builder

Encodes planned operations as one bundler multicall routed through the
general adapter, plus the approvals (or permits) that must exist first.
``build`` depends only on its arguments and the builder's configuration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ...config import settings
from ..constants import (
    ADAPTER_DEPOSIT,
    ADAPTER_REDEEM,
    ADAPTER_TRANSFER_FROM,
    ADAPTER_WITHDRAW,
    ADAPTER_WRAP_NATIVE,
    ERC20_APPROVE,
    MAX_UINT256,
    PERMIT_VALIDITY_SECONDS,
    SHARE_PRICE_SCALE,
    WAD,
)
from .abi import encode_address, encode_call, encode_uint
from .errors import InsufficientFundsError, PlanningError
from .models import (
    Bundle,
    BundleCall,
    OperationKind,
    PlannedOperation,
    PreparedTransaction,
    SignatureRequirement,
)
from .simulation import SimulationState, VaultSnapshot

logger = logging.getLogger(__name__)


def mul_div_down(x: int, y: int, d: int) -> int:
    return x * y // d


def mul_div_up(x: int, y: int, d: int) -> int:
    return (x * y + d - 1) // d


def to_shares_up(assets: int, vault: VaultSnapshot) -> int:
    return mul_div_up(assets, vault.total_supply + 1, vault.total_assets + 1)


def share_price_e27(vault: VaultSnapshot, round_up: bool) -> int:
    mul_div = mul_div_up if round_up else mul_div_down
    return mul_div(vault.total_assets + 1, SHARE_PRICE_SCALE, vault.total_supply + 1)


def approve_transaction(token: str, spender: str, amount: int) -> PreparedTransaction:
    return PreparedTransaction(
        to=token,
        data=encode_call(ERC20_APPROVE, encode_address(spender), encode_uint(amount)),
        kind=OperationKind.APPROVE,
        description=f"Approve {amount} of {token} for {spender}",
    )


def _feeds_later_deposit(
    state: SimulationState, op: PlannedOperation, later: Sequence[PlannedOperation]
) -> bool:
    """True when a later deposit consumes the asset this withdraw releases."""
    asset = state.get_vault(op.target).asset.lower()
    return any(
        other.kind == OperationKind.DEPOSIT and state.get_vault(other.target).asset.lower() == asset
        for other in later
    )


@dataclass
class _Draft:
    """Mutable scratch space for a single ``build`` call."""
    state: SimulationState
    calls: List[BundleCall] = field(default_factory=list)
    prerequisites: List[PreparedTransaction] = field(default_factory=list)
    adapter_held: Dict[str, int] = field(default_factory=dict)
    pulls: Dict[str, int] = field(default_factory=dict)
    token_names: Dict[str, str] = field(default_factory=dict)

    def pull(self, token: str, amount: int) -> None:
        key = token.lower()
        self.token_names.setdefault(key, token)
        self.pulls[key] = self.pulls.get(key, 0) + amount


class BundleBuilder:
    """Builds a ``Bundle`` from planned operations and a simulation snapshot."""

    def __init__(
        self,
        *,
        slippage_tolerance_wad: Optional[int] = None,
        supports_signature: Optional[bool] = None,
        approval_reset_tokens: Optional[Sequence[str]] = None,
    ) -> None:
        self.slippage_tolerance_wad = (
            settings.slippage_tolerance_wad if slippage_tolerance_wad is None else slippage_tolerance_wad
        )
        self.supports_signature = (
            settings.supports_signature if supports_signature is None else supports_signature
        )
        reset_tokens = settings.approval_reset_tokens if approval_reset_tokens is None else approval_reset_tokens
        self.approval_reset_tokens = frozenset(token.lower() for token in reset_tokens)

    def build(
        self,
        operations: Sequence[PlannedOperation],
        state: SimulationState,
        receiver: str,
    ) -> Bundle:
        if not operations:
            raise PlanningError("Nothing to bundle")

        draft = _Draft(state=state)
        for index, op in enumerate(operations):
            if op.kind == OperationKind.WRAP:
                self._wrap(draft, op)
            elif op.kind == OperationKind.DEPOSIT:
                self._deposit(draft, op, receiver)
            elif op.kind == OperationKind.WITHDRAW:
                routed = _feeds_later_deposit(state, op, operations[index + 1:])
                self._withdraw(draft, op, state.adapter_address if routed else receiver)
            elif op.kind == OperationKind.APPROVE:
                draft.prerequisites.append(
                    approve_transaction(op.target, op.spender or state.adapter_address, op.amount)
                )
            else:
                raise PlanningError(f"Unsupported operation: {op.kind}")

        permit_calls, signatures = self._authorize(draft)

        bundle = Bundle(
            bundler_address=state.bundler_address,
            calls=tuple(permit_calls + draft.calls),
            prerequisite_transactions=tuple(draft.prerequisites),
            required_signatures=tuple(signatures),
        )
        logger.debug(
            f"Built bundle: {len(bundle.calls)} calls, "
            f"{len(bundle.prerequisite_transactions)} prerequisites, "
            f"{len(bundle.required_signatures)} signatures"
        )
        return bundle

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _wrap(self, draft: _Draft, op: PlannedOperation) -> None:
        state = draft.state
        adapter = state.adapter_address
        if op.amount > state.native_balance:
            raise InsufficientFundsError(
                f"Insufficient ETH to wrap. Requested: {op.amount}, Available: {state.native_balance}",
                required=op.amount,
                available=state.native_balance,
            )
        draft.calls.append(
            BundleCall(
                to=adapter,
                data=encode_call(ADAPTER_WRAP_NATIVE, encode_uint(op.amount), encode_address(adapter)),
                value=op.amount,
            )
        )
        key = op.target.lower()
        draft.adapter_held[key] = draft.adapter_held.get(key, 0) + op.amount

    def _deposit(self, draft: _Draft, op: PlannedOperation, receiver: str) -> None:
        state = draft.state
        adapter = state.adapter_address
        vault = state.get_vault(op.target)
        asset_key = vault.asset.lower()

        held = draft.adapter_held.get(asset_key, 0)
        from_adapter = min(held, op.amount)
        draft.adapter_held[asset_key] = held - from_adapter
        to_pull = op.amount - from_adapter

        if to_pull > 0:
            available = state.get_holding(vault.asset) - draft.pulls.get(asset_key, 0)
            if to_pull > available:
                raise InsufficientFundsError(
                    f"Insufficient balance. Requested: {to_pull}, Available: {max(available, 0)}",
                    required=to_pull,
                    available=max(available, 0),
                    token=vault.asset,
                )
            draft.pull(vault.asset, to_pull)
            draft.calls.append(
                BundleCall(
                    to=adapter,
                    data=encode_call(
                        ADAPTER_TRANSFER_FROM,
                        encode_address(vault.asset),
                        encode_address(adapter),
                        encode_uint(to_pull),
                    ),
                )
            )

        max_share_price = mul_div_up(
            share_price_e27(vault, round_up=True), WAD + self.slippage_tolerance_wad, WAD
        )
        draft.calls.append(
            BundleCall(
                to=adapter,
                data=encode_call(
                    ADAPTER_DEPOSIT,
                    encode_address(vault.address),
                    encode_uint(op.amount),
                    encode_uint(max_share_price),
                    encode_address(receiver),
                ),
            )
        )

    def _withdraw(self, draft: _Draft, op: PlannedOperation, receiver: str) -> None:
        state = draft.state
        adapter = state.adapter_address
        vault = state.get_vault(op.target)
        owner = op.owner or state.owner
        shares_held = state.get_holding(vault.address) - draft.pulls.get(vault.address.lower(), 0)

        min_share_price = mul_div_down(
            share_price_e27(vault, round_up=False), WAD - self.slippage_tolerance_wad, WAD
        )

        if op.amount == MAX_UINT256:
            if shares_held <= 0:
                raise PlanningError("No shares to withdraw")
            draft.pull(vault.address, shares_held)
            draft.calls.append(
                BundleCall(
                    to=adapter,
                    data=encode_call(
                        ADAPTER_REDEEM,
                        encode_address(vault.address),
                        encode_uint(shares_held),
                        encode_uint(min_share_price),
                        encode_address(receiver),
                        encode_address(owner),
                    ),
                )
            )
            return

        shares = to_shares_up(op.amount, vault)
        if shares > shares_held:
            raise InsufficientFundsError(
                f"Insufficient vault balance. Requested: {shares} shares, Available: {max(shares_held, 0)} shares",
                required=shares,
                available=max(shares_held, 0),
                token=vault.address,
            )
        draft.pull(vault.address, shares)
        draft.calls.append(
            BundleCall(
                to=adapter,
                data=encode_call(
                    ADAPTER_WITHDRAW,
                    encode_address(vault.address),
                    encode_uint(op.amount),
                    encode_uint(min_share_price),
                    encode_address(receiver),
                    encode_address(owner),
                ),
            )
        )
        if receiver.lower() == adapter.lower():
            key = vault.asset.lower()
            draft.adapter_held[key] = draft.adapter_held.get(key, 0) + op.amount

    # ------------------------------------------------------------------
    # Allowances
    # ------------------------------------------------------------------

    def _authorize(self, draft: _Draft):
        """Cover every pulled token with an allowance, permit or approval."""
        state = draft.state
        adapter = state.adapter_address
        permit_calls: List[BundleCall] = []
        signatures: List[SignatureRequirement] = []

        for key, needed in draft.pulls.items():
            token = draft.token_names[key]
            current = state.get_allowance(token, adapter)
            if current >= needed:
                continue

            permit = state.get_permit(token) if self.supports_signature else None
            if permit is not None:
                signatures.append(
                    SignatureRequirement(
                        token=token,
                        token_name=permit.name,
                        version=permit.version,
                        chain_id=state.chain_id,
                        owner=state.owner,
                        spender=adapter,
                        value=needed,
                        nonce=permit.nonce,
                        deadline=state.block_timestamp + PERMIT_VALIDITY_SECONDS,
                    )
                )
                permit_calls.append(BundleCall(to=token, data="0x", signature_index=len(signatures) - 1))
                continue

            if current > 0 and key in self.approval_reset_tokens:
                draft.prerequisites.append(approve_transaction(token, adapter, 0))
            draft.prerequisites.append(approve_transaction(token, adapter, needed))

        return permit_calls, signatures
