"""
Vault transaction models and types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from ..constants import PERMIT_TYPES, BUNDLER_MULTICALL, ERC20_PERMIT
from .abi import (
    BundlerCall,
    encode_address,
    encode_bundler_multicall,
    encode_call,
    encode_uint,
    split_signature,
)


class IntentKind(str, Enum):
    """What the user asked the vault to do."""
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    WITHDRAW_ALL = "withdraw_all"
    TRANSFER = "transfer"


class OperationKind(str, Enum):
    """Protocol-level steps produced by planning."""
    WRAP = "wrap"
    APPROVE = "approve"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


@dataclass(frozen=True)
class VaultRef:
    """A vault as supplied by the metadata layer."""
    address: str
    chain_id: int
    asset_address: str
    asset_decimals: int
    asset_symbol: str = ""


@dataclass(frozen=True)
class TransactionIntent:
    kind: IntentKind
    vault: VaultRef
    amount: Optional[str] = None          # Decimal string typed by the user
    destination: Optional[VaultRef] = None  # Transfer target vault

    @property
    def vaults(self) -> Tuple[VaultRef, ...]:
        if self.destination is None:
            return (self.vault,)
        return (self.vault, self.destination)


@dataclass(frozen=True)
class PlanningContext:
    """Everything the planner needs besides the intent."""
    asset_address: str
    asset_decimals: int
    native_balance: int                   # Smallest native units
    is_native_wrapped_asset: bool
    sender: str
    wrapped_balance: int = 0              # Wrapped native already held


@dataclass(frozen=True)
class PlannedOperation:
    """One protocol-level step. Amounts are in smallest units."""
    kind: OperationKind
    target: str                           # Token for wrap/approve, vault otherwise
    sender: str
    amount: int
    owner: Optional[str] = None
    receiver: Optional[str] = None
    spender: Optional[str] = None

    @property
    def args(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {"amount": self.amount}
        for name in ("owner", "receiver", "spender"):
            value = getattr(self, name)
            if value is not None:
                values[name] = value
        return values

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "target": self.target,
            "sender": self.sender,
            "args": {k: str(v) if isinstance(v, int) else v for k, v in self.args.items()},
        }


@dataclass(frozen=True)
class PreparedTransaction:
    """A standalone transaction sent before the bundle (approvals)."""
    to: str
    data: str
    value: int = 0
    kind: OperationKind = OperationKind.APPROVE
    description: str = ""

    def to_dict(self, sender: Optional[str] = None) -> Dict[str, Any]:
        tx: Dict[str, Any] = {
            "to": self.to,
            "data": self.data,
            "value": hex(self.value),
        }
        if sender:
            tx["from"] = sender
        return tx


@dataclass(frozen=True)
class SignatureRequirement:
    """An unsigned EIP-2612 permit the signer must produce."""
    token: str
    token_name: str
    version: str
    chain_id: int
    owner: str
    spender: str
    value: int
    nonce: int
    deadline: int

    def typed_data(self) -> Dict[str, Any]:
        return {
            "types": {
                name: [{"name": f, "type": t} for f, t in fields]
                for name, fields in PERMIT_TYPES.items()
            },
            "primaryType": "Permit",
            "domain": {
                "name": self.token_name,
                "version": self.version,
                "chainId": self.chain_id,
                "verifyingContract": self.token,
            },
            "message": {
                "owner": self.owner,
                "spender": self.spender,
                "value": str(self.value),
                "nonce": str(self.nonce),
                "deadline": str(self.deadline),
            },
        }

    def permit_calldata(self, signature: str) -> str:
        v, r, s = split_signature(signature)
        return encode_call(
            ERC20_PERMIT,
            encode_address(self.owner),
            encode_address(self.spender),
            encode_uint(self.value),
            encode_uint(self.deadline),
            encode_uint(v),
            r,
            s,
        )


ZERO_HASH = "0x" + "0" * 64


@dataclass(frozen=True)
class BundleCall:
    """A call executed by the bundler inside the main transaction.

    Permit calls carry ``signature_index`` and get their calldata once the
    matching signature exists.
    """
    to: str
    data: str
    value: int = 0
    skip_revert: bool = False
    signature_index: Optional[int] = None

    def resolve(self, signatures: Sequence[str], requirements: Sequence[SignatureRequirement]) -> BundlerCall:
        data = self.data
        if self.signature_index is not None:
            data = requirements[self.signature_index].permit_calldata(signatures[self.signature_index])
        return (self.to, data, self.value, self.skip_revert, ZERO_HASH)


@dataclass(frozen=True)
class Bundle:
    """Prerequisites, signatures and the bundled main call for one attempt."""
    bundler_address: str
    calls: Tuple[BundleCall, ...]
    prerequisite_transactions: Tuple[PreparedTransaction, ...] = ()
    required_signatures: Tuple[SignatureRequirement, ...] = ()

    @property
    def value(self) -> int:
        return sum(call.value for call in self.calls)

    @property
    def main_transaction(self) -> Dict[str, Any]:
        """The main transaction when no signatures are required."""
        if self.required_signatures:
            raise ValueError("Bundle requires signatures; use tx(signatures)")
        return self.tx(())

    def tx(self, signatures: Sequence[str]) -> Dict[str, Any]:
        if len(signatures) != len(self.required_signatures):
            raise ValueError(
                f"Expected {len(self.required_signatures)} signatures, got {len(signatures)}"
            )
        resolved = [call.resolve(signatures, self.required_signatures) for call in self.calls]
        return {
            "to": self.bundler_address,
            "data": encode_bundler_multicall(BUNDLER_MULTICALL, resolved),
            "value": self.value,
        }

    @property
    def total_steps(self) -> int:
        """Wallet prompts the user will see: signatures, prerequisites, main tx."""
        return len(self.required_signatures) + len(self.prerequisite_transactions) + 1


@dataclass
class ExecutionResult:
    """Outcome of one executor attempt."""
    attempt_id: str
    state: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    prerequisite_hashes: Tuple[str, ...] = ()
    allowance_retries: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state == "success"
