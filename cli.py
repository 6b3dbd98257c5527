#!/usr/bin/env python3
"""Simple CLI for trying the vault pipeline locally"""

import argparse
import asyncio
from typing import Optional

from vaultflow.config import settings
from vaultflow.core.execution.errors import (
    InsufficientFundsError,
    InvalidAmountError,
    PlanningError,
    RpcError,
)
from vaultflow.core.execution.models import IntentKind, PlanningContext, TransactionIntent, VaultRef
from vaultflow.core.execution.planner import format_amount, plan
from vaultflow.core.constants import CHAIN_NAMES, MAX_UINT256, ZERO_ADDRESS
from vaultflow.logging_config import setup_logging
from vaultflow.providers.rpc import ChainReader


def print_operations(operations, decimals: int):
    """Pretty print planned operations"""
    print("\n🧭 Planned Operations")
    print("=" * 50)
    for i, op in enumerate(operations, 1):
        amount = "MAX" if op.amount == MAX_UINT256 else format_amount(op.amount, decimals)
        print(f"{i:2d}. {op.kind.value:<9} {amount:>24}  → {op.target}")


def cli_plan(
    kind: str,
    vault: str,
    amount: Optional[str],
    decimals: int,
    asset: str,
    native_balance: int,
    sender: str,
    wrapped_balance: int = 0,
    destination: Optional[str] = None,
):
    """CLI command to dry-run planning"""
    wrapped = asset.lower() == settings.wrapped_native_address.lower()
    intent = TransactionIntent(
        kind=IntentKind(kind),
        vault=VaultRef(address=vault, chain_id=settings.chain_id, asset_address=asset, asset_decimals=decimals),
        amount=amount,
        destination=(
            VaultRef(address=destination, chain_id=settings.chain_id, asset_address=asset, asset_decimals=decimals)
            if destination
            else None
        ),
    )
    context = PlanningContext(
        asset_address=asset,
        asset_decimals=decimals,
        native_balance=native_balance,
        is_native_wrapped_asset=wrapped,
        sender=sender,
        wrapped_balance=wrapped_balance,
    )

    try:
        operations = plan(intent, context)
    except (InvalidAmountError, InsufficientFundsError, PlanningError) as e:
        print(f"❌ {e.message}")
        return

    print_operations(operations, decimals)


async def cli_vault(address: str, rpc_url: Optional[str]):
    """CLI command to introspect a vault"""
    print(f"🔍 Reading vault {address}...")
    reader = ChainReader(rpc_url)
    try:
        ref = await reader.fetch_vault_ref(address)
        total_assets = await reader.get_total_assets(address)
        total_supply = await reader.get_total_supply(address)
    except (RpcError, ValueError) as e:
        print(f"❌ Error: {e}")
        return
    finally:
        await reader.aclose()

    print("=" * 50)
    print(f"Vault:        {ref.address}")
    print(f"Chain:        {CHAIN_NAMES.get(ref.chain_id, 'unknown')} ({ref.chain_id})")
    print(f"Asset:        {ref.asset_symbol} ({ref.asset_address})")
    print(f"Decimals:     {ref.asset_decimals}")
    print(f"Total Assets: {format_amount(total_assets, ref.asset_decimals)} {ref.asset_symbol}")
    print(f"Total Supply: {total_supply}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Vaultflow CLI")
    subparsers = parser.add_subparsers(dest="command")

    plan_parser = subparsers.add_parser("plan", help="Dry-run planning for a vault intent")
    plan_parser.add_argument("kind", choices=[k.value for k in IntentKind], help="Intent kind")
    plan_parser.add_argument("vault", help="Vault address")
    plan_parser.add_argument("amount", nargs="?", help="Decimal amount (omit for withdraw_all)")
    plan_parser.add_argument("--decimals", type=int, default=18, help="Asset decimals (default: 18)")
    plan_parser.add_argument(
        "--asset",
        default=settings.wrapped_native_address,
        help="Underlying asset address (default: wrapped native)",
    )
    plan_parser.add_argument("--native-balance", type=int, default=0, help="Native balance in wei")
    plan_parser.add_argument("--sender", default=ZERO_ADDRESS, help="Sender address")
    plan_parser.add_argument(
        "--wrapped-balance", type=int, default=0, help="Wrapped native already held, in wei"
    )
    plan_parser.add_argument("--destination", help="Destination vault address (transfer only)")

    vault_parser = subparsers.add_parser("vault", help="Introspect a vault on-chain")
    vault_parser.add_argument("address", help="Vault address")
    vault_parser.add_argument("--rpc-url", help="Override the configured RPC URL")

    return parser


async def main():
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    setup_logging()
    command = args.command.lower()

    if command == "plan":
        cli_plan(
            args.kind,
            args.vault,
            args.amount,
            args.decimals,
            args.asset,
            args.native_balance,
            args.sender,
            args.wrapped_balance,
            args.destination,
        )

    elif command == "vault":
        await cli_vault(args.address, args.rpc_url)

    else:
        print(f"❌ Unknown command: {command}")
        parser.print_help()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
