"""Chain and protocol constants for vault transactions."""

from __future__ import annotations

from typing import Dict, Tuple

# Sentinel understood by ERC-4626 bundling as "the whole position".
MAX_UINT256 = 2**256 - 1

NATIVE_DECIMALS = 18

# Share prices handed to the adapter are scaled by 1e27.
SHARE_PRICE_SCALE = 10**27
WAD = 10**18

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

BASE_CHAIN_ID = 8453

CHAIN_NAMES: Dict[int, str] = {
    1: "ethereum",
    10: "optimism",
    8453: "base",
    42161: "arbitrum",
}

# Function signatures used by the chain reader and the bundle encoder.
ERC20_BALANCE_OF = "balanceOf(address)"
ERC20_ALLOWANCE = "allowance(address,address)"
ERC20_APPROVE = "approve(address,uint256)"
ERC20_DECIMALS = "decimals()"
ERC20_SYMBOL = "symbol()"
ERC20_NAME = "name()"
ERC20_PERMIT_NONCES = "nonces(address)"
ERC20_PERMIT = "permit(address,address,uint256,uint256,uint8,bytes32,bytes32)"

ERC4626_ASSET = "asset()"
ERC4626_TOTAL_ASSETS = "totalAssets()"
ERC4626_TOTAL_SUPPLY = "totalSupply()"

BUNDLER_MULTICALL = "multicall((address,bytes,uint256,bool,bytes32)[])"

ADAPTER_WRAP_NATIVE = "wrapNative(uint256,address)"
ADAPTER_TRANSFER_FROM = "erc20TransferFrom(address,address,uint256)"
ADAPTER_DEPOSIT = "erc4626Deposit(address,uint256,uint256,address)"
ADAPTER_WITHDRAW = "erc4626Withdraw(address,uint256,uint256,address,address)"
ADAPTER_REDEEM = "erc4626Redeem(address,uint256,uint256,address,address)"

# EIP-2612 typed data layout
PERMIT_TYPES: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "EIP712Domain": (
        ("name", "string"),
        ("version", "string"),
        ("chainId", "uint256"),
        ("verifyingContract", "address"),
    ),
    "Permit": (
        ("owner", "address"),
        ("spender", "address"),
        ("value", "uint256"),
        ("nonce", "uint256"),
        ("deadline", "uint256"),
    ),
}

# Permits stay valid for one hour past the snapshot block
PERMIT_VALIDITY_SECONDS = 3600
