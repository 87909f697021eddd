from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional

from app.core.database import get_db
from app.schemas.trades import SymbolRequest, SymbolResponse
from app.services.trade_service import TradeService

router = APIRouter()


def get_trade_service(db: Session = Depends(get_db)) -> TradeService:
    return TradeService(db=db)


@router.get("/", response_model=List[SymbolResponse])
async def list_symbols(
    user_id: Optional[str] = None,
    trade_service: TradeService = Depends(get_trade_service)
):
    return trade_service.list_symbols(user_id=user_id)


@router.post("/", response_model=SymbolResponse)
async def upsert_symbol(
    request: SymbolRequest,
    trade_service: TradeService = Depends(get_trade_service)
):
    """銘柄登録（既存なら更新）"""
    try:
        return trade_service.upsert_symbol(**request.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
