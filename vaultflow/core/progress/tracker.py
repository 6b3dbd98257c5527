"""
Transaction Progress Tracker

Holds the state of the single transaction flow the user sees. The executor
writes to it while a transaction is in flight; the HTTP surface reads it and
issues close/try-again intents. One tracker is created per process and
injected wherever it is needed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, replace as evolve
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class TransactionType(str, Enum):
    """Mirrors the intent kinds the flow can be opened for."""
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    WITHDRAW_ALL = "withdraw_all"
    TRANSFER = "transfer"


class TransactionStatus(str, Enum):
    """What the review modal is showing."""
    IDLE = "idle"                # No flow open
    PREVIEW = "preview"          # Reviewing, nothing sent
    SIGNING = "signing"          # Wallet prompt for a signature or the main tx
    APPROVING = "approving"      # Prerequisite approvals in flight
    CONFIRMING = "confirming"    # Main tx sent, waiting for receipt
    SUCCESS = "success"
    ERROR = "error"


IN_FLIGHT_STATUSES = frozenset(
    {TransactionStatus.SIGNING, TransactionStatus.APPROVING, TransactionStatus.CONFIRMING}
)


class InvalidStatusTransitionError(Exception):
    """Status update not allowed from the current status."""

    def __init__(self, from_status: TransactionStatus, to_status: TransactionStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid status transition: {from_status.value} -> {to_status.value}")


class TransactionFlowBusyError(Exception):
    """A flow is already open and replacing it was not requested."""


@dataclass(frozen=True)
class TransactionProgressState:
    is_open: bool = False
    type: Optional[TransactionType] = None
    vault_address: Optional[str] = None
    amount: Optional[str] = None
    status: TransactionStatus = TransactionStatus.IDLE
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    step_index: Optional[int] = None
    total_steps: Optional[int] = None
    step_label: Optional[str] = None
    attempt_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value if self.type else None
        data["status"] = self.status.value
        return data


INITIAL_STATE = TransactionProgressState()

Subscriber = Callable[[TransactionProgressState], None]


class TransactionProgressTracker:
    """
    Single-flow progress store.

    Status moves forward within an attempt. The only way back is to
    ``preview``: a cancelled wallet prompt, or an explicit ``try_again``.
    """

    STATUS_TRANSITIONS: Dict[TransactionStatus, Set[TransactionStatus]] = {
        TransactionStatus.IDLE: set(),
        TransactionStatus.PREVIEW: {
            TransactionStatus.SIGNING,
            TransactionStatus.APPROVING,
            TransactionStatus.CONFIRMING,
            TransactionStatus.ERROR,
        },
        TransactionStatus.SIGNING: {
            TransactionStatus.APPROVING,
            TransactionStatus.CONFIRMING,
            TransactionStatus.PREVIEW,  # Prompt rejected
            TransactionStatus.ERROR,
        },
        TransactionStatus.APPROVING: {
            TransactionStatus.SIGNING,  # Main transaction prompt
            TransactionStatus.CONFIRMING,
            TransactionStatus.PREVIEW,
            TransactionStatus.ERROR,
        },
        TransactionStatus.CONFIRMING: {
            TransactionStatus.SUCCESS,
            TransactionStatus.PREVIEW,
            TransactionStatus.ERROR,
        },
        TransactionStatus.SUCCESS: set(),
        TransactionStatus.ERROR: set(),
    }

    def __init__(self) -> None:
        self._state = INITIAL_STATE
        self._subscribers: List[Subscriber] = []

    @property
    def state(self) -> TransactionProgressState:
        return self._state

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for every new state; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _set(self, state: TransactionProgressState) -> TransactionProgressState:
        self._state = state
        for callback in list(self._subscribers):
            try:
                callback(state)
            except Exception as exc:
                logger.error(f"Progress subscriber failed: {exc}")
        return state

    def open(
        self,
        type: TransactionType,
        vault_address: str,
        amount: Optional[str] = None,
        *,
        replace: bool = True,
    ) -> TransactionProgressState:
        if self._state.is_open:
            if not replace:
                raise TransactionFlowBusyError(
                    f"Transaction flow {self._state.attempt_id} is already open"
                )
            logger.warning(
                f"Discarding open transaction flow {self._state.attempt_id} "
                f"({self._state.status.value})"
            )

        return self._set(
            TransactionProgressState(
                is_open=True,
                type=TransactionType(type),
                vault_address=vault_address,
                amount=amount,
                status=TransactionStatus.PREVIEW,
                attempt_id=uuid.uuid4().hex,
            )
        )

    def can_transition(self, to_status: TransactionStatus) -> bool:
        current = self._state.status
        if to_status == current:
            return current in IN_FLIGHT_STATUSES or current == TransactionStatus.PREVIEW
        return to_status in self.STATUS_TRANSITIONS.get(current, set())

    def update_status(
        self,
        status: TransactionStatus,
        error: Optional[str] = None,
        tx_hash: Optional[str] = None,
        *,
        step_index: Optional[int] = None,
        total_steps: Optional[int] = None,
        step_label: Optional[str] = None,
    ) -> TransactionProgressState:
        """Move the open flow to ``status``.

        ``error`` and ``tx_hash`` replace the previous values (``None`` clears
        them). Step fields are kept unless given; returning to ``preview``
        clears them.
        """
        status = TransactionStatus(status)
        if not self._state.is_open:
            raise InvalidStatusTransitionError(self._state.status, status)
        if not self.can_transition(status):
            raise InvalidStatusTransitionError(self._state.status, status)

        if status == TransactionStatus.PREVIEW:
            return self._set(
                evolve(
                    self._state,
                    status=status,
                    error=None,
                    tx_hash=None,
                    step_index=None,
                    total_steps=None,
                    step_label=None,
                )
            )

        current = self._state
        return self._set(
            evolve(
                current,
                status=status,
                error=error,
                tx_hash=tx_hash,
                step_index=step_index if step_index is not None else current.step_index,
                total_steps=total_steps if total_steps is not None else current.total_steps,
                step_label=step_label if step_label is not None else current.step_label,
            )
        )

    def try_again(self) -> TransactionProgressState:
        """Back to ``preview`` with every in-flight artifact cleared."""
        if not self._state.is_open:
            raise InvalidStatusTransitionError(self._state.status, TransactionStatus.PREVIEW)
        return self._set(
            evolve(
                self._state,
                status=TransactionStatus.PREVIEW,
                error=None,
                tx_hash=None,
                step_index=None,
                total_steps=None,
                step_label=None,
                attempt_id=uuid.uuid4().hex,
            )
        )

    def close(self) -> TransactionProgressState:
        return self._set(INITIAL_STATE)

    def close_if_attempt(self, attempt_id: str) -> bool:
        """Close only when ``attempt_id`` is still the one showing."""
        if self._state.attempt_id != attempt_id or not self._state.is_open:
            return False
        self.close()
        return True
