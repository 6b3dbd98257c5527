"""Progress of the single open transaction flow."""

from .tracker import (
    INITIAL_STATE,
    InvalidStatusTransitionError,
    TransactionFlowBusyError,
    TransactionProgressState,
    TransactionProgressTracker,
    TransactionStatus,
    TransactionType,
)

__all__ = [
    "INITIAL_STATE",
    "InvalidStatusTransitionError",
    "TransactionFlowBusyError",
    "TransactionProgressState",
    "TransactionProgressTracker",
    "TransactionStatus",
    "TransactionType",
]
