"""
Vault Transaction Execution

Turns a deposit, withdraw or transfer intent into signed, ordered on-chain
transactions:
- plan: intent -> protocol operations (wrap, deposit, withdraw)
- SimulationStateBuilder: chain snapshot the bundle is computed against
- BundleBuilder: bundler multicall plus approvals or permits
- TransactionExecutor: state machine that sends and confirms everything

Usage:
    from vaultflow.core.execution import (
        BundleBuilder,
        SimulationStateBuilder,
        TransactionExecutor,
        TransactionIntent,
        IntentKind,
    )

    executor = TransactionExecutor(reader, signer, tracker)
    result = await executor.execute(
        TransactionIntent(kind=IntentKind.DEPOSIT, vault=vault_ref, amount="10")
    )
"""

from .models import (
    IntentKind,
    OperationKind,
    VaultRef,
    TransactionIntent,
    PlanningContext,
    PlannedOperation,
    PreparedTransaction,
    SignatureRequirement,
    BundleCall,
    Bundle,
    ExecutionResult,
)

from .errors import (
    ErrorCategory,
    UserCancelledError,
    InsufficientFundsError,
    InvalidAmountError,
    PlanningError,
    StaleSimulationError,
    SimulationError,
    AllowanceRaceError,
    TransactionRevertedError,
    RpcError,
    GasEstimationError,
    ExecutionError,
    classify_error,
    format_transaction_error,
    is_user_cancellation,
)

from .planner import parse_amount, plan, validate_operations

from .simulation import (
    SimulationState,
    SimulationPending,
    SimulationFailure,
    SimulationScope,
    SimulationStateBuilder,
    VaultSnapshot,
    PermitInfo,
)

from .bundle import BundleBuilder

from .executor import (
    ExecutorState,
    InvalidTransitionError,
    TransactionExecutor,
    WalletSigner,
)

__all__ = [
    # Models
    "IntentKind",
    "OperationKind",
    "VaultRef",
    "TransactionIntent",
    "PlanningContext",
    "PlannedOperation",
    "PreparedTransaction",
    "SignatureRequirement",
    "BundleCall",
    "Bundle",
    "ExecutionResult",
    # Errors
    "ErrorCategory",
    "UserCancelledError",
    "InsufficientFundsError",
    "InvalidAmountError",
    "PlanningError",
    "StaleSimulationError",
    "SimulationError",
    "AllowanceRaceError",
    "TransactionRevertedError",
    "RpcError",
    "GasEstimationError",
    "ExecutionError",
    "classify_error",
    "format_transaction_error",
    "is_user_cancellation",
    # Planner
    "parse_amount",
    "plan",
    "validate_operations",
    # Simulation
    "SimulationState",
    "SimulationPending",
    "SimulationFailure",
    "SimulationScope",
    "SimulationStateBuilder",
    "VaultSnapshot",
    "PermitInfo",
    # Bundle
    "BundleBuilder",
    # Executor
    "ExecutorState",
    "InvalidTransitionError",
    "TransactionExecutor",
    "WalletSigner",
]
