"""
Transaction Executor

Drives one vault transaction attempt from planning to confirmation:

    idle -> planning -> awaiting_signatures -> sending_prerequisites
         -> waiting_prerequisite_confirmation -> estimating_gas
         -> sending_main_transaction -> confirming -> success

``error`` is reachable from every non-terminal state and ``cancelled`` from
the states that show a wallet prompt. Progress is mirrored into the
``TransactionProgressTracker`` the executor is given.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Set,
    Tuple,
    runtime_checkable,
)

from ...config import settings
from ...logging_config import bind_attempt
from ..progress.tracker import TransactionProgressTracker, TransactionStatus
from .bundle import BundleBuilder
from .errors import (
    AllowanceRaceError,
    ExecutionError,
    InsufficientFundsError,
    InvalidAmountError,
    PlanningError,
    SimulationError,
    StaleSimulationError,
    TransactionRevertedError,
    classify_error,
    is_user_cancellation,
)
from .models import (
    Bundle,
    ExecutionResult,
    IntentKind,
    PlannedOperation,
    PlanningContext,
    TransactionIntent,
)
from .planner import parse_amount, plan, validate_operations
from .retry import AllowanceRetryPolicy, Sleep, is_allowance_error
from .simulation import (
    SimulationFailure,
    SimulationResult,
    SimulationScope,
    SimulationState,
    SimulationStateBuilder,
)

if TYPE_CHECKING:
    from ...providers.rpc import ChainReader

logger = logging.getLogger(__name__)


@runtime_checkable
class WalletSigner(Protocol):
    """The connected wallet. Rejections surface as exceptions."""

    @property
    def address(self) -> str:
        ...

    async def sign_typed_data(self, typed_data: Dict[str, Any]) -> str:
        ...

    async def send_transaction(self, tx: Dict[str, Any]) -> str:
        ...


class ExecutorState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    AWAITING_SIGNATURES = "awaiting_signatures"
    SENDING_PREREQUISITES = "sending_prerequisites"
    WAITING_PREREQUISITE_CONFIRMATION = "waiting_prerequisite_confirmation"
    ESTIMATING_GAS = "estimating_gas"
    SENDING_MAIN_TRANSACTION = "sending_main_transaction"
    CONFIRMING = "confirming"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({ExecutorState.SUCCESS, ExecutorState.ERROR, ExecutorState.CANCELLED})


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: ExecutorState, to_state: ExecutorState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


# What the tracker shows for each executor state
TRACKER_STATUS: Dict[ExecutorState, TransactionStatus] = {
    ExecutorState.AWAITING_SIGNATURES: TransactionStatus.SIGNING,
    ExecutorState.SENDING_PREREQUISITES: TransactionStatus.APPROVING,
    ExecutorState.WAITING_PREREQUISITE_CONFIRMATION: TransactionStatus.APPROVING,
    ExecutorState.SENDING_MAIN_TRANSACTION: TransactionStatus.SIGNING,
    ExecutorState.CONFIRMING: TransactionStatus.CONFIRMING,
}


class TransactionExecutor:
    """
    Executes one planned vault transaction at a time.

    Delays are injected through ``sleep`` so tests never wait on the clock.
    """

    TRANSITIONS: Dict[ExecutorState, Set[ExecutorState]] = {
        ExecutorState.IDLE: {
            ExecutorState.PLANNING,
            ExecutorState.ERROR,
        },
        ExecutorState.PLANNING: {
            ExecutorState.AWAITING_SIGNATURES,
            ExecutorState.SENDING_PREREQUISITES,
            ExecutorState.ESTIMATING_GAS,
            ExecutorState.ERROR,
        },
        ExecutorState.AWAITING_SIGNATURES: {
            ExecutorState.SENDING_PREREQUISITES,
            ExecutorState.ESTIMATING_GAS,
            ExecutorState.CANCELLED,
            ExecutorState.ERROR,
        },
        ExecutorState.SENDING_PREREQUISITES: {
            ExecutorState.WAITING_PREREQUISITE_CONFIRMATION,
            ExecutorState.CANCELLED,
            ExecutorState.ERROR,
        },
        ExecutorState.WAITING_PREREQUISITE_CONFIRMATION: {
            ExecutorState.SENDING_PREREQUISITES,  # Next prerequisite
            ExecutorState.ESTIMATING_GAS,
            ExecutorState.ERROR,
        },
        ExecutorState.ESTIMATING_GAS: {
            ExecutorState.SENDING_MAIN_TRANSACTION,
            ExecutorState.ERROR,
        },
        ExecutorState.SENDING_MAIN_TRANSACTION: {
            ExecutorState.CONFIRMING,
            ExecutorState.CANCELLED,
            ExecutorState.ERROR,
        },
        ExecutorState.CONFIRMING: {
            ExecutorState.SUCCESS,
            ExecutorState.CANCELLED,
            ExecutorState.ERROR,
        },
        ExecutorState.SUCCESS: set(),
        ExecutorState.ERROR: set(),
        ExecutorState.CANCELLED: set(),
    }

    def __init__(
        self,
        reader: "ChainReader",
        signer: WalletSigner,
        tracker: TransactionProgressTracker,
        simulation: Optional[SimulationStateBuilder] = None,
        bundle_builder: Optional[BundleBuilder] = None,
        *,
        sleep: Sleep = asyncio.sleep,
        gas_reserve_wei: Optional[int] = None,
        propagation_delay_seconds: Optional[float] = None,
        success_close_delay_seconds: Optional[float] = None,
        retry_policy_factory: Optional[Callable[[], AllowanceRetryPolicy]] = None,
    ) -> None:
        self.reader = reader
        self.signer = signer
        self.tracker = tracker
        self.simulation = simulation or SimulationStateBuilder(reader)
        self.bundle_builder = bundle_builder or BundleBuilder()
        self._sleep = sleep
        self.gas_reserve_wei = settings.gas_reserve_wei if gas_reserve_wei is None else gas_reserve_wei
        self.propagation_delay_seconds = (
            settings.propagation_delay_seconds
            if propagation_delay_seconds is None
            else propagation_delay_seconds
        )
        self.success_close_delay_seconds = (
            settings.success_close_delay_seconds
            if success_close_delay_seconds is None
            else success_close_delay_seconds
        )
        self._retry_policy_factory = retry_policy_factory or (lambda: AllowanceRetryPolicy(sleep=sleep))

        self.state = ExecutorState.IDLE
        self.history: List[Tuple[ExecutorState, ExecutorState, datetime]] = []
        self._close_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def can_transition(self, to_state: ExecutorState) -> bool:
        return to_state in self.TRANSITIONS.get(self.state, set())

    def transition(self, to_state: ExecutorState) -> None:
        if not self.can_transition(to_state):
            raise InvalidTransitionError(self.state, to_state)
        from_state = self.state
        self.state = to_state
        self.history.append((from_state, to_state, datetime.now(timezone.utc)))
        logger.debug(f"Executor {from_state.value} -> {to_state.value}")

    def reset(self) -> None:
        self.state = ExecutorState.IDLE
        self.history = []

    def _show(
        self,
        *,
        step_index: Optional[int] = None,
        total_steps: Optional[int] = None,
        step_label: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> None:
        self.tracker.update_status(
            TRACKER_STATUS[self.state],
            tx_hash=tx_hash,
            step_index=step_index,
            total_steps=total_steps,
            step_label=step_label,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        intent: TransactionIntent,
        context: Optional[PlanningContext] = None,
    ) -> ExecutionResult:
        """Run one attempt for ``intent`` against the tracker's open flow.

        The snapshot is refetched first and the intent planned against it
        before the tracker is touched. Attempt failures after that do not
        raise: the outcome lands in the tracker and in the returned
        ``ExecutionResult``.

        Raises:
            InvalidTransitionError: an attempt is already running
            ExecutionError: the open flow is not in ``preview``
            InvalidAmountError: the amount does not parse to a positive value
            InsufficientFundsError: the balances cannot cover the intent
        """
        if self.state in TERMINAL_STATES:
            self.reset()
        if self.state != ExecutorState.IDLE:
            raise InvalidTransitionError(self.state, ExecutorState.PLANNING)
        if self.tracker.state.is_open and self.tracker.state.status != TransactionStatus.PREVIEW:
            raise ExecutionError(
                f"Transaction flow is {self.tracker.state.status.value}; try again first"
            )

        self.transition(ExecutorState.PLANNING)
        setup_error: Optional[Exception] = None
        operations: Tuple[PlannedOperation, ...] = ()
        bundle: Optional[Bundle] = None
        try:
            operations, bundle = await self._prepare(intent, context)
        except (InvalidAmountError, InsufficientFundsError):
            self.reset()
            raise
        except Exception as exc:
            setup_error = exc

        if not self.tracker.state.is_open:
            self.tracker.open(intent.kind, intent.vault.address, intent.amount)
        attempt_id = self.tracker.state.attempt_id
        bind_attempt(attempt_id, intent.vault.address)

        result = ExecutionResult(attempt_id=attempt_id, state=ExecutorState.PLANNING.value)
        retry_policy = self._retry_policy_factory()
        prerequisites_sent = False

        try:
            if setup_error is not None:
                raise setup_error
            total_steps = bundle.total_steps
            step = 0

            signatures: List[str] = []
            if bundle.required_signatures:
                self.transition(ExecutorState.AWAITING_SIGNATURES)
                for requirement in bundle.required_signatures:
                    self._show(
                        step_index=step,
                        total_steps=total_steps,
                        step_label=f"Sign permit for {requirement.token}",
                    )
                    signatures.append(await self.signer.sign_typed_data(requirement.typed_data()))
                    step += 1

            prerequisites = bundle.prerequisite_transactions
            for index, prerequisite in enumerate(prerequisites):
                self.transition(ExecutorState.SENDING_PREREQUISITES)
                self._show(
                    step_index=step,
                    total_steps=total_steps,
                    step_label=prerequisite.description or f"Prerequisite {index + 1}",
                )
                tx_hash = await self.signer.send_transaction(prerequisite.to_dict(self.signer.address))
                prerequisites_sent = True
                result.prerequisite_hashes += (tx_hash,)
                logger.info(f"Prerequisite {index + 1}/{len(prerequisites)} sent: {tx_hash}")

                self.transition(ExecutorState.WAITING_PREREQUISITE_CONFIRMATION)
                self._show(tx_hash=tx_hash)
                receipt = await self.reader.wait_for_transaction_receipt(tx_hash)
                if not receipt.success:
                    raise TransactionRevertedError("Prerequisite transaction reverted", tx_hash=tx_hash)
                step += 1

            if prerequisites_sent:
                await self._sleep(self.propagation_delay_seconds)

            self.transition(ExecutorState.ESTIMATING_GAS)
            main_tx, gas = await self._estimate_with_retry(
                intent, operations, bundle, signatures, prerequisites_sent, retry_policy
            )
            result.allowance_retries = retry_policy.attempts

            self.transition(ExecutorState.SENDING_MAIN_TRANSACTION)
            self._show(
                step_index=step,
                total_steps=total_steps,
                step_label=f"Confirm {intent.kind.value}",
            )
            send_tx = {"from": self.signer.address, **main_tx, "value": hex(main_tx["value"])}
            if gas is not None:
                send_tx["gas"] = hex(gas)
            tx_hash = await self.signer.send_transaction(send_tx)
            result.tx_hash = tx_hash
            logger.info(f"Main transaction sent: {tx_hash}")

            self.transition(ExecutorState.CONFIRMING)
            self._show(tx_hash=tx_hash)
            receipt = await self.reader.wait_for_transaction_receipt(tx_hash)
            if not receipt.success:
                raise TransactionRevertedError("Transaction reverted on-chain", tx_hash=tx_hash)

            self.transition(ExecutorState.SUCCESS)
            self.tracker.update_status(TransactionStatus.SUCCESS, tx_hash=tx_hash)
            result.state = ExecutorState.SUCCESS.value
            self._schedule_close(attempt_id)
            logger.info(f"{intent.kind.value} confirmed in block {receipt.block_number}")
            return result

        except Exception as exc:
            result.allowance_retries = retry_policy.attempts
            return self._fail(exc, result)

    async def _prepare(
        self,
        intent: TransactionIntent,
        context: Optional[PlanningContext],
    ) -> Tuple[Tuple[PlannedOperation, ...], Bundle]:
        """Plan ``intent`` against a fresh snapshot and build its bundle."""
        loaded = await self._load_snapshot(intent)
        if not isinstance(loaded, SimulationState):
            # Bad input is reported ahead of an unready snapshot
            if intent.kind != IntentKind.WITHDRAW_ALL:
                parse_amount(intent.amount, intent.vault.asset_decimals)
            if isinstance(loaded, SimulationFailure):
                raise loaded.cause
            raise StaleSimulationError("Simulation not ready yet")

        if context is None:
            context = self._context_from_snapshot(intent, loaded)
        operations = plan(intent, context, gas_reserve_wei=self.gas_reserve_wei)
        validate_operations(operations)
        bundle = await self._build_bundle(intent, operations, loaded)
        return operations, bundle

    async def _load_snapshot(self, intent: TransactionIntent) -> SimulationResult:
        """Refetch the snapshot, falling back to the cached one on failure."""
        try:
            return await self._refetch(intent)
        except SimulationError as exc:
            logger.warning(f"Snapshot refresh failed, using cached state: {exc}")
        return self.simulation.build(
            intent.vault,
            self.signer.address,
            SimulationScope(enabled=True),
            extra_vaults=intent.vaults[1:],
        )

    def _context_from_snapshot(self, intent: TransactionIntent, snapshot: SimulationState) -> PlanningContext:
        vault = intent.vault
        wrapped = self.simulation.wrapped_native_address
        is_wrapped = vault.asset_address.lower() == wrapped.lower()
        return PlanningContext(
            asset_address=vault.asset_address,
            asset_decimals=vault.asset_decimals,
            native_balance=snapshot.native_balance,
            is_native_wrapped_asset=is_wrapped,
            sender=self.signer.address,
            wrapped_balance=snapshot.get_holding(wrapped) if is_wrapped else 0,
        )

    async def _build_bundle(
        self,
        intent: TransactionIntent,
        operations: Tuple[PlannedOperation, ...],
        snapshot: SimulationState,
    ) -> Bundle:
        """Build the bundle, refetching the snapshot once if it is stale."""
        try:
            return self.bundle_builder.build(operations, snapshot, self.signer.address)
        except StaleSimulationError as exc:
            logger.warning(f"Stale simulation ({exc}), rebuilding once")
        fresh = await self._refetch(intent)
        return self.bundle_builder.build(operations, fresh, self.signer.address)

    async def _refetch(self, intent: TransactionIntent) -> SimulationState:
        return await self.simulation.refetch(
            intent.vault, self.signer.address, extra_vaults=intent.vaults[1:]
        )

    async def _estimate_with_retry(
        self,
        intent: TransactionIntent,
        operations: Tuple[PlannedOperation, ...],
        bundle: Bundle,
        signatures: List[str],
        prerequisites_sent: bool,
        retry_policy: AllowanceRetryPolicy,
    ) -> Tuple[Dict[str, Any], Optional[int]]:
        """Estimate gas for the main transaction.

        Returns the transaction and its gas limit, or ``None`` as the limit
        when the wallet should estimate instead.
        """
        main_tx = bundle.tx(signatures)
        while True:
            try:
                gas = await self.reader.estimate_gas(main_tx, self.signer.address)
                return main_tx, gas
            except Exception as exc:
                if retry_policy.should_retry(exc, prerequisites_sent):
                    await retry_policy.wait()
                    fresh = await self._refetch(intent)
                    rebuilt = self.bundle_builder.build(operations, fresh, self.signer.address)
                    if len(rebuilt.required_signatures) != len(signatures):
                        raise PlanningError("Bundle changed while retrying, please try again") from exc
                    main_tx = rebuilt.tx(signatures)
                    continue

                if retry_policy.attempts > 0 and is_allowance_error(exc):
                    raise AllowanceRaceError(f"Allowance still missing after retry: {exc}") from exc

                logger.warning(f"Gas estimation failed, letting the wallet estimate: {exc}")
                return main_tx, None

    def _fail(self, exc: Exception, result: ExecutionResult) -> ExecutionResult:
        cancellable = self.can_transition(ExecutorState.CANCELLED)
        if cancellable and is_user_cancellation(exc):
            from_state = self.state
            self.transition(ExecutorState.CANCELLED)
            logger.info(f"User cancelled during {from_state.value}")
            if self.tracker.state.is_open:
                self.tracker.update_status(TransactionStatus.PREVIEW)
            result.state = ExecutorState.CANCELLED.value
            result.tx_hash = None
            return result

        classified = classify_error(exc)
        logger.error(f"Transaction failed in {self.state.value}: {exc}")
        if self.can_transition(ExecutorState.ERROR):
            self.transition(ExecutorState.ERROR)
        if self.tracker.state.is_open and self.tracker.can_transition(TransactionStatus.ERROR):
            self.tracker.update_status(
                TransactionStatus.ERROR, error=classified.message, tx_hash=result.tx_hash
            )
        result.state = ExecutorState.ERROR.value
        result.error = classified.message
        result.details["category"] = classified.category.value
        return result

    def _schedule_close(self, attempt_id: str) -> None:
        async def close_later() -> None:
            await self._sleep(self.success_close_delay_seconds)
            if self.tracker.close_if_attempt(attempt_id):
                logger.debug(f"Closed transaction flow {attempt_id}")

        self._close_task = asyncio.get_running_loop().create_task(close_later())
        self._close_task.add_done_callback(_log_close_failure)

    async def wait_closed(self) -> None:
        """Wait for the success auto-close, if one is scheduled."""
        if self._close_task is not None:
            await asyncio.wait({self._close_task})


def _log_close_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Auto-close of transaction flow failed: {exc}")
