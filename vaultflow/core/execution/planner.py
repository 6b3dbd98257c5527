"""
Operation Planner

Turns a deposit, withdraw or transfer intent into the ordered protocol operations.
Pure: the same intent and context always give the same tuple.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Optional, Sequence, Tuple

from ...config import settings
from ..constants import MAX_UINT256, NATIVE_DECIMALS
from .errors import InsufficientFundsError, InvalidAmountError, PlanningError
from .models import (
    IntentKind,
    OperationKind,
    PlannedOperation,
    PlanningContext,
    TransactionIntent,
)

_AMOUNT_PATTERN = re.compile(r"^\d+\.?\d*$")


def sanitize_amount(raw: str) -> str:
    return re.sub(r"\s+", "", raw or "")


def parse_amount(raw: Optional[str], decimals: int) -> int:
    """Decimal string to smallest units, truncating extra fractional digits."""
    if raw is None:
        raise InvalidAmountError("Amount is required")
    text = sanitize_amount(raw)
    if not text:
        raise InvalidAmountError("Amount is required")
    if not _AMOUNT_PATTERN.match(text):
        raise InvalidAmountError(f"Invalid amount: {raw!r}")

    whole, _, fraction = text.partition(".")
    fraction = fraction[:decimals].ljust(decimals, "0")
    value = int(whole + fraction) if decimals else int(whole)
    if value <= 0:
        raise InvalidAmountError("Amount must be greater than zero")
    return value


def format_amount(value: int, decimals: int) -> str:
    """Smallest units back to a trimmed decimal string."""
    if decimals == 0:
        return str(value)
    whole, fraction = divmod(value, 10**decimals)
    fraction_text = str(fraction).rjust(decimals, "0").rstrip("0")
    return f"{whole}.{fraction_text}" if fraction_text else str(whole)


def max_wrappable(native_balance: int, gas_reserve: int) -> int:
    return native_balance - gas_reserve if native_balance > gas_reserve else 0


def plan(
    intent: TransactionIntent,
    context: PlanningContext,
    gas_reserve_wei: Optional[int] = None,
) -> Tuple[PlannedOperation, ...]:
    """Plan the operations for ``intent``.

    Raises:
        InvalidAmountError: amount missing or not positive
        InsufficientFundsError: wrapped-native deposit with no wrapped balance and
            nothing left after the gas reserve
        PlanningError: transfer between incompatible vaults
    """
    sender = context.sender
    vault = intent.vault.address

    if intent.kind == IntentKind.WITHDRAW_ALL:
        return (
            PlannedOperation(
                kind=OperationKind.WITHDRAW,
                target=vault,
                sender=sender,
                amount=MAX_UINT256,
                owner=sender,
                receiver=sender,
            ),
        )

    requested = parse_amount(intent.amount, context.asset_decimals)

    if intent.kind == IntentKind.WITHDRAW:
        return (
            PlannedOperation(
                kind=OperationKind.WITHDRAW,
                target=vault,
                sender=sender,
                amount=requested,
                owner=sender,
                receiver=sender,
            ),
        )

    if intent.kind == IntentKind.TRANSFER:
        return _plan_transfer(intent, sender, requested)

    if intent.kind != IntentKind.DEPOSIT:
        raise PlanningError(f"Unsupported intent: {intent.kind}")

    deposit = PlannedOperation(
        kind=OperationKind.DEPOSIT,
        target=vault,
        sender=sender,
        amount=requested,
        owner=sender,
        receiver=sender,
    )
    if not context.is_native_wrapped_asset:
        return (deposit,)

    # Wrapped native already held is spent before wrapping more
    reserve = settings.gas_reserve_wei if gas_reserve_wei is None else gas_reserve_wei
    held = max(context.wrapped_balance, 0)
    if held >= requested:
        return (deposit,)

    wrap_amount = min(requested - held, max_wrappable(context.native_balance, reserve))
    if wrap_amount <= 0:
        if held > 0:
            return (replace(deposit, amount=held),)
        raise InsufficientFundsError(
            f"Insufficient ETH. Need at least {format_amount(reserve, NATIVE_DECIMALS)} ETH "
            f"reserved for gas. Available: {format_amount(context.native_balance, NATIVE_DECIMALS)} ETH",
            required=requested,
            available=context.native_balance,
            token=context.asset_address,
        )

    return (
        PlannedOperation(
            kind=OperationKind.WRAP,
            target=context.asset_address,
            sender=sender,
            amount=wrap_amount,
            owner=sender,
        ),
        replace(deposit, amount=held + wrap_amount),
    )


def _plan_transfer(intent: TransactionIntent, sender: str, requested: int) -> Tuple[PlannedOperation, ...]:
    """Withdraw from the source vault and deposit into the destination in one bundle."""
    source, destination = intent.vault, intent.destination
    if destination is None:
        raise PlanningError("Transfer requires a destination vault")
    if destination.address.lower() == source.address.lower():
        raise PlanningError("Source and destination vault are the same")
    if destination.asset_address.lower() != source.asset_address.lower():
        raise PlanningError("Transfer requires vaults with the same asset")

    return (
        PlannedOperation(
            kind=OperationKind.WITHDRAW,
            target=source.address,
            sender=sender,
            amount=requested,
            owner=sender,
            receiver=sender,
        ),
        PlannedOperation(
            kind=OperationKind.DEPOSIT,
            target=destination.address,
            sender=sender,
            amount=requested,
            owner=sender,
            receiver=sender,
        ),
    )


def validate_operations(operations: Sequence[PlannedOperation]) -> None:
    """Approvals and wraps must come before the deposit that depends on them."""
    for index, op in enumerate(operations):
        if op.kind not in (OperationKind.WRAP, OperationKind.APPROVE):
            continue
        if not any(later.kind == OperationKind.DEPOSIT for later in operations[index + 1:]):
            raise PlanningError(f"{op.kind.value} at position {index} is not followed by a deposit")
