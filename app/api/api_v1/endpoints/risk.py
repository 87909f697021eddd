from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from decimal import Decimal
from typing import Optional

from app.core.database import get_db
from app.models.trades import TradeDirection
from app.schemas.trades import RiskPlanRequest
from app.services.risk_manager import RiskManagerService, RiskProfile
from app.services.trade_service import TradeService

router = APIRouter()


def _float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


@router.get("/settings")
async def get_risk_settings(
    account_balance: Optional[float] = Query(None, ge=0),
    risk_profile: Optional[RiskProfile] = None
):
    """リスク設定（最大リスク額）"""
    risk_manager = RiskManagerService(account_balance=account_balance, risk_profile=risk_profile)
    return {
        "account_balance": float(risk_manager.account_balance),
        "risk_profile": risk_manager.risk_profile.value,
        "max_risk_percentage": float(risk_manager.max_risk_percentage),
        "max_risk_amount": round(float(risk_manager.max_risk_amount), 2),
    }


@router.post("/plan")
async def plan_trade(
    request: RiskPlanRequest,
    db: Session = Depends(get_db)
):
    """エントリー前のリスク・リワード計算"""
    try:
        risk_manager = RiskManagerService(
            account_balance=request.account_balance,
            risk_profile=request.risk_profile
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    trade_service = TradeService(db)
    instrument = trade_service.resolve_symbol(
        request.symbol,
        user_id=request.user_id,
        asset_class_hint=request.market_type
    )
    if not instrument.ok:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": instrument.error.value, "message": instrument.message}
        )

    plan = risk_manager.plan_trade(
        instrument.value,
        TradeDirection(request.direction),
        entry_price=request.entry_price,
        stop_loss=request.stop_loss,
        take_profit=request.take_profit,
        quantity=request.quantity,
    )
    sizing = risk_manager.suggest_position_size(
        instrument.value,
        TradeDirection(request.direction),
        entry_price=request.entry_price,
        stop_loss=request.stop_loss,
    )

    return {
        "symbol": instrument.value.symbol,
        "risk_amount": _float(plan.risk_amount),
        "reward_amount": _float(plan.reward_amount),
        "risk_reward_ratio": _float(plan.risk_reward_ratio),
        "max_risk_amount": _float(plan.max_risk_amount),
        "exceeds_max_risk": plan.exceeds_max_risk,
        "risk_formula": plan.risk_formula,
        "reward_formula": plan.reward_formula,
        "warnings": plan.warnings,
        "error": plan.error.value if plan.error else None,
        "suggested_position_size": float(sizing.recommended_size),
    }
