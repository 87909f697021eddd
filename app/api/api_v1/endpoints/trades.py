from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Optional, List

from app.core.database import get_db
from app.models.trades import TradeStatus
from app.schemas.trades import (
    TradeCreateRequest, TradeResponse, TradeEvaluationResponse, ClosureEvaluationResponse,
    ClosureCreateRequest, ClosureUpdateRequest, ClosureResponse, ClosureMutationResponse
)
from app.services.closure_service import ClosureService, ClosureResult
from app.services.pnl_engine import PnLErrorKind, round_for_display
from app.services.trade_service import TradeService, TradeCreate

router = APIRouter()


ERROR_STATUS_CODES = {
    PnLErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    PnLErrorKind.CONCURRENT_MODIFICATION: status.HTTP_409_CONFLICT,
    PnLErrorKind.EXCEEDS_POSITION_SIZE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PnLErrorKind.INVALID_INSTRUMENT_DATA: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def get_trade_service(db: Session = Depends(get_db)) -> TradeService:
    return TradeService(db=db)


def get_closure_service(db: Session = Depends(get_db)) -> ClosureService:
    return ClosureService(db=db)


def _as_float(value, places: int = 2) -> Optional[float]:
    return float(round_for_display(value, places)) if value is not None else None


def _mutation_response(result: ClosureResult) -> ClosureMutationResponse:
    if not result.success:
        raise HTTPException(
            status_code=ERROR_STATUS_CODES.get(result.error, status.HTTP_400_BAD_REQUEST),
            detail={"error": result.error.value if result.error else None, "message": result.message}
        )
    return ClosureMutationResponse(
        trade_id=result.trade_id,
        closure_id=result.closure_id,
        remaining_size=float(result.remaining_size),
        status=result.status,
        r_multiple=_as_float(result.r_multiple),
        message=result.message,
    )


@router.post("/", response_model=TradeResponse, status_code=status.HTTP_201_CREATED)
async def create_trade(
    request: TradeCreateRequest,
    trade_service: TradeService = Depends(get_trade_service)
):
    """トレード登録"""
    try:
        trade = trade_service.create_trade(TradeCreate(**request.model_dump()))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return trade


@router.get("/", response_model=List[TradeResponse])
async def list_trades(
    status_filter: Optional[TradeStatus] = Query(None, alias="status"),
    symbol: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    trade_service: TradeService = Depends(get_trade_service)
):
    """トレード一覧"""
    return trade_service.list_trades(status=status_filter, symbol=symbol, user_id=user_id, limit=limit)


@router.get("/{trade_id}", response_model=TradeResponse)
async def get_trade(
    trade_id: int,
    trade_service: TradeService = Depends(get_trade_service)
):
    trade = trade_service.get_trade(trade_id)
    if trade is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="トレードが見つかりません")
    return trade


@router.delete("/{trade_id}")
async def delete_trade(
    trade_id: int,
    trade_service: TradeService = Depends(get_trade_service)
):
    """トレード削除（決済記録も削除）"""
    if not trade_service.delete_trade(trade_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="トレードが見つかりません")
    return {"status": "success", "trade_id": trade_id}


@router.get("/{trade_id}/evaluation", response_model=TradeEvaluationResponse)
async def evaluate_trade(
    trade_id: int,
    trade_service: TradeService = Depends(get_trade_service)
):
    """損益・Rマルチプル・リスクリワード比"""
    trade = trade_service.get_trade(trade_id)
    if trade is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="トレードが見つかりません")

    evaluation = trade_service.evaluate(trade)
    return TradeEvaluationResponse(
        trade_id=trade.id,
        pnl=_as_float(evaluation.pnl),
        remaining_size=float(evaluation.remaining_size),
        status=evaluation.status,
        closed_size=float(evaluation.closed_size),
        risk_per_unit=_as_float(evaluation.risk_per_unit),
        total_risk=_as_float(evaluation.total_risk),
        risk_reward_ratio=_as_float(evaluation.risk_reward_ratio),
        r_multiple=_as_float(evaluation.r_multiple),
        closures=[
            ClosureEvaluationResponse(
                closure_id=c.closure_id,
                pnl=_as_float(c.pnl),
                r_multiple=_as_float(c.r_multiple),
                r_multiple_error=c.r_multiple_error.value if c.r_multiple_error else None,
            )
            for c in evaluation.closures
        ],
        errors=evaluation.errors,
    )


@router.get("/{trade_id}/closures", response_model=List[ClosureResponse])
async def list_closures(
    trade_id: int,
    closure_service: ClosureService = Depends(get_closure_service)
):
    closures = closure_service.list_closures(trade_id)
    if closures is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="トレードが見つかりません")
    return closures


@router.post("/{trade_id}/closures", response_model=ClosureMutationResponse, status_code=status.HTTP_201_CREATED)
async def add_closure(
    trade_id: int,
    request: ClosureCreateRequest,
    closure_service: ClosureService = Depends(get_closure_service)
):
    """部分決済・全決済の登録"""
    result = closure_service.add_closure(
        trade_id,
        close_price=request.close_price,
        closed_size=request.closed_size,
        close_date=request.close_date,
        notes=request.notes,
    )
    return _mutation_response(result)


@router.put("/{trade_id}/closures/{closure_id}", response_model=ClosureMutationResponse)
async def update_closure(
    trade_id: int,
    closure_id: int,
    request: ClosureUpdateRequest,
    closure_service: ClosureService = Depends(get_closure_service)
):
    result = closure_service.update_closure(trade_id, closure_id, **request.model_dump())
    return _mutation_response(result)


@router.delete("/{trade_id}/closures/{closure_id}", response_model=ClosureMutationResponse)
async def delete_closure(
    trade_id: int,
    closure_id: int,
    closure_service: ClosureService = Depends(get_closure_service)
):
    result = closure_service.delete_closure(trade_id, closure_id)
    return _mutation_response(result)
