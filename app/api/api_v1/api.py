from fastapi import APIRouter
from app.api.api_v1.endpoints import health, trades, symbols, analytics, risk

api_router = APIRouter()

api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(trades.router, prefix="/trades", tags=["trades"])
api_router.include_router(symbols.router, prefix="/symbols", tags=["symbols"])
api_router.include_router(analytics.router, prefix="/analytics", tags=["analytics"])
api_router.include_router(risk.router, prefix="/risk", tags=["risk"])
