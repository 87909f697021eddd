from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date
from decimal import Decimal

from app.models.trades import TradeDirection, TradeStatus


class TradeCreateRequest(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=20)
    direction: TradeDirection
    entry_price: Decimal = Field(..., gt=0)
    position_size: Decimal = Field(..., gt=0)
    initial_stop_loss: Optional[Decimal] = Field(None, gt=0)
    take_profit: Optional[Decimal] = Field(None, gt=0)
    market_type: Optional[str] = None
    trade_date: Optional[date] = None
    strategy_name: Optional[str] = None
    account_name: Optional[str] = None
    notes: Optional[str] = None
    user_id: Optional[str] = Field(None, max_length=64)


class TradeResponse(BaseModel):
    id: int
    user_id: Optional[str] = None
    symbol: str
    market_type: Optional[str] = None
    direction: TradeDirection
    status: TradeStatus
    trade_date: Optional[date] = None
    entry_price: float
    position_size: float
    remaining_size: float
    initial_stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    exit_price: Optional[float] = None
    risk_amount: Optional[float] = None
    reward_amount: Optional[float] = None
    strategy_name: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class ClosureCreateRequest(BaseModel):
    close_price: Decimal = Field(..., gt=0)
    closed_size: Decimal = Field(..., gt=0)
    close_date: Optional[date] = None
    notes: Optional[str] = None


class ClosureUpdateRequest(BaseModel):
    close_price: Optional[Decimal] = Field(None, gt=0)
    closed_size: Optional[Decimal] = Field(None, gt=0)
    close_date: Optional[date] = None
    notes: Optional[str] = None


class ClosureResponse(BaseModel):
    id: int
    trade_id: int
    close_price: float
    closed_size: float
    r_multiple: Optional[float] = None
    close_date: Optional[date] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class ClosureMutationResponse(BaseModel):
    trade_id: int
    closure_id: Optional[int] = None
    remaining_size: float
    status: TradeStatus
    r_multiple: Optional[float] = None
    message: str


class ClosureEvaluationResponse(BaseModel):
    closure_id: Optional[int] = None
    pnl: float
    r_multiple: Optional[float] = None
    r_multiple_error: Optional[str] = None


class TradeEvaluationResponse(BaseModel):
    trade_id: int
    pnl: Optional[float] = None
    remaining_size: float
    status: TradeStatus
    closed_size: float
    risk_per_unit: Optional[float] = None
    total_risk: Optional[float] = None
    risk_reward_ratio: Optional[float] = None
    r_multiple: Optional[float] = None
    closures: List[ClosureEvaluationResponse] = []
    errors: List[str] = []


class SymbolRequest(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=20)
    user_id: Optional[str] = Field(None, max_length=64)
    asset_class: str = "stock"
    name: Optional[str] = None
    tick_size: Optional[Decimal] = Field(None, gt=0)
    tick_value: Optional[Decimal] = Field(None, gt=0)
    contract_size: Optional[Decimal] = Field(None, gt=0)


class SymbolResponse(BaseModel):
    id: int
    user_id: Optional[str] = None
    symbol: str
    name: Optional[str] = None
    asset_class: str
    tick_size: Optional[float] = None
    tick_value: Optional[float] = None
    contract_size: Optional[float] = None

    model_config = {"from_attributes": True}


class RiskPlanRequest(BaseModel):
    symbol: str
    direction: TradeDirection
    entry_price: Decimal = Field(..., gt=0)
    stop_loss: Decimal = Field(..., gt=0)
    take_profit: Optional[Decimal] = Field(None, gt=0)
    quantity: Decimal = Field(Decimal("1"), gt=0)
    market_type: Optional[str] = None
    user_id: Optional[str] = None
    account_balance: Optional[Decimal] = Field(None, ge=0)
    risk_profile: Optional[str] = None
