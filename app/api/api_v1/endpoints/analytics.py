from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from dataclasses import asdict
from datetime import datetime

from app.core.database import get_db
from app.services.performance_analyzer import PerformanceAnalyzer
from app.services.trade_service import TradeService

router = APIRouter()


@router.get("/summary")
async def get_performance_summary(
    min_symbol_trades: int = 3,
    db: Session = Depends(get_db)
):
    """成績サマリー（勝率・プロフィットファクター・最大ドローダウン等）"""
    evaluated = TradeService(db).evaluate_all()
    summary = PerformanceAnalyzer(min_symbol_trades=min_symbol_trades).analyze(evaluated)

    return {
        **asdict(summary),
        "generated_at": datetime.now().isoformat()
    }
