from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..config import settings
from ..core.execution.errors import InsufficientFundsError, InvalidAmountError, PlanningError
from ..core.execution.models import IntentKind, PlanningContext, TransactionIntent, VaultRef
from ..core.execution.planner import plan
from ..core.progress.tracker import (
    InvalidStatusTransitionError,
    TransactionFlowBusyError,
    TransactionProgressTracker,
)


router = APIRouter(prefix="/transactions")

_tracker: Optional[TransactionProgressTracker] = None


def get_tracker() -> TransactionProgressTracker:
    global _tracker
    if _tracker is None:
        _tracker = TransactionProgressTracker()
    return _tracker


class OpenFlowRequest(BaseModel):
    type: IntentKind
    vault_address: str = Field(description="Vault the flow is for")
    amount: Optional[str] = Field(default=None, description="Decimal amount as typed by the user")
    replace: bool = Field(default=True, description="Discard an already open flow instead of failing")


class PlanRequest(BaseModel):
    kind: IntentKind
    vault_address: str
    asset_address: str
    asset_decimals: int = Field(ge=0, le=36)
    sender: str
    amount: Optional[str] = None
    native_balance: str = Field(default="0", description="Native balance in wei, as a decimal string")
    wrapped_balance: str = Field(default="0", description="Wrapped native already held, in wei")
    destination_vault_address: Optional[str] = Field(default=None, description="Transfer target vault")
    is_native_wrapped_asset: Optional[bool] = Field(
        default=None,
        description="Defaults to comparing asset_address with the wrapped native token",
    )
    chain_id: int = Field(default_factory=lambda: settings.chain_id)


class PlanResponse(BaseModel):
    success: bool
    operations: List[Dict[str, Any]] = []
    error: Optional[str] = None
    category: Optional[str] = None


@router.get("/state")
async def get_state(tracker: TransactionProgressTracker = Depends(get_tracker)) -> Dict[str, Any]:
    return tracker.state.to_dict()


@router.post("/open")
async def open_flow(
    req: OpenFlowRequest,
    tracker: TransactionProgressTracker = Depends(get_tracker),
) -> Dict[str, Any]:
    try:
        state = tracker.open(req.type, req.vault_address, req.amount, replace=req.replace)
    except TransactionFlowBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return state.to_dict()


@router.post("/close")
async def close_flow(tracker: TransactionProgressTracker = Depends(get_tracker)) -> Dict[str, Any]:
    return tracker.close().to_dict()


@router.post("/try-again")
async def try_again(tracker: TransactionProgressTracker = Depends(get_tracker)) -> Dict[str, Any]:
    try:
        return tracker.try_again().to_dict()
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/plan")
async def plan_intent(req: PlanRequest) -> PlanResponse:
    """Dry-run planning. Validation failures come back inline, not as HTTP errors."""
    try:
        native_balance = int(req.native_balance)
        wrapped_balance = int(req.wrapped_balance)
    except ValueError:
        raise HTTPException(status_code=422, detail="balances must be integer strings")

    is_wrapped = req.is_native_wrapped_asset
    if is_wrapped is None:
        is_wrapped = req.asset_address.lower() == settings.wrapped_native_address.lower()

    intent = TransactionIntent(
        kind=req.kind,
        vault=VaultRef(
            address=req.vault_address,
            chain_id=req.chain_id,
            asset_address=req.asset_address,
            asset_decimals=req.asset_decimals,
        ),
        amount=req.amount,
        destination=(
            VaultRef(
                address=req.destination_vault_address,
                chain_id=req.chain_id,
                asset_address=req.asset_address,
                asset_decimals=req.asset_decimals,
            )
            if req.destination_vault_address
            else None
        ),
    )
    context = PlanningContext(
        asset_address=req.asset_address,
        asset_decimals=req.asset_decimals,
        native_balance=native_balance,
        is_native_wrapped_asset=is_wrapped,
        sender=req.sender,
        wrapped_balance=wrapped_balance,
    )

    try:
        operations = plan(intent, context)
    except (InvalidAmountError, InsufficientFundsError, PlanningError) as e:
        return PlanResponse(success=False, error=e.message, category=e.category.value)

    return PlanResponse(success=True, operations=[op.to_dict() for op in operations])
