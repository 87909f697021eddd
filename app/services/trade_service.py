from typing import Optional, List, Tuple
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
import logging
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.symbols import AssetClass, Symbol
from app.models.trades import Trade, TradeDirection, TradeStatus
from app.services.contract_specs import InstrumentResolver
from app.services.pnl_engine import (
    TradeSnapshot, ClosureSnapshot, TradeEvaluation, CalcResult,
    evaluate_trade, recompute_trade_state, risk_per_unit, dollar_delta,
    round_for_display, to_decimal
)

logger = logging.getLogger(__name__)


def default_resolver() -> InstrumentResolver:
    """設定に応じた銘柄リゾルバ"""
    return InstrumentResolver() if settings.use_futures_fallback else InstrumentResolver({})


@dataclass
class TradeCreate:
    """トレード登録内容"""
    symbol: str
    direction: TradeDirection
    entry_price: Decimal
    position_size: Decimal
    initial_stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    market_type: Optional[str] = None
    trade_date: Optional[date] = None
    strategy_name: Optional[str] = None
    account_name: Optional[str] = None
    notes: Optional[str] = None
    user_id: Optional[str] = None


class TradeService:
    """トレード・銘柄の管理と評価"""

    def __init__(self, db: Session, resolver: InstrumentResolver = None):
        self.db = db
        self.resolver = resolver or default_resolver()

    # --- 銘柄 ---

    def get_symbol(self, symbol: str, user_id: Optional[str] = None) -> Optional[Symbol]:
        """シンボル検索（大文字小文字を区別しない・user_id未指定なら共有銘柄）"""
        query = self.db.query(Symbol).filter(func.lower(Symbol.symbol) == symbol.strip().lower())
        if user_id is not None:
            query = query.filter(Symbol.user_id == user_id)
        else:
            query = query.filter(Symbol.user_id.is_(None))
        return query.first()

    def list_symbols(self, user_id: Optional[str] = None) -> List[Symbol]:
        query = self.db.query(Symbol)
        if user_id is not None:
            query = query.filter(Symbol.user_id == user_id)
        return query.order_by(Symbol.symbol).all()

    def upsert_symbol(self,
                      symbol: str,
                      asset_class: str = AssetClass.STOCK.value,
                      name: Optional[str] = None,
                      tick_size=None,
                      tick_value=None,
                      contract_size=None,
                      user_id: Optional[str] = None) -> Symbol:
        """銘柄の登録・更新"""
        asset_class = AssetClass(asset_class.lower()).value
        for label, value in (("tick_size", tick_size), ("tick_value", tick_value)):
            if value is not None and to_decimal(value) <= 0:
                raise ValueError(f"{label} must be positive: {value}")

        row = self.get_symbol(symbol, user_id)
        if row is None:
            row = Symbol(symbol=symbol.strip().upper(), user_id=user_id)
            self.db.add(row)

        row.asset_class = asset_class
        row.name = name or row.name or symbol
        row.tick_size = to_decimal(tick_size)
        row.tick_value = to_decimal(tick_value)
        row.contract_size = to_decimal(contract_size)

        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"銘柄保存エラー: {str(e)}")
            raise

        self.db.refresh(row)
        logger.info(f"銘柄を保存: {row.symbol} ({row.asset_class})")
        return row

    def resolve_symbol(self,
                       symbol: str,
                       user_id: Optional[str] = None,
                       asset_class_hint: Optional[str] = None) -> CalcResult:
        """ユーザーの銘柄設定 → 共有銘柄 → スペック表の順で解決"""
        stored = self.get_symbol(symbol, user_id) if user_id is not None else None
        if stored is None:
            stored = self.get_symbol(symbol)
        return self.resolver.resolve(symbol, stored=stored, asset_class_hint=asset_class_hint)

    def resolve_instrument(self, trade: Trade) -> CalcResult:
        return self.resolve_symbol(trade.symbol, trade.user_id, trade.market_type)

    # --- トレード ---

    def create_trade(self, data: TradeCreate) -> Trade:
        """トレード登録（未決済・残サイズ＝建玉）"""
        entry_price = to_decimal(data.entry_price)
        position_size = to_decimal(data.position_size)
        if entry_price is None or entry_price <= 0:
            raise ValueError("エントリー価格は正の値である必要があります")
        if position_size is None or position_size <= 0:
            raise ValueError("ポジションサイズは正の値である必要があります")

        trade = Trade(
            user_id=data.user_id,
            symbol=data.symbol.strip().upper(),
            market_type=data.market_type.strip().lower() if data.market_type else None,
            direction=TradeDirection(data.direction),
            status=TradeStatus.OPEN,
            trade_date=data.trade_date or date.today(),
            entry_price=entry_price,
            position_size=position_size,
            remaining_size=position_size,
            initial_stop_loss=to_decimal(data.initial_stop_loss),
            take_profit=to_decimal(data.take_profit),
            strategy_name=data.strategy_name,
            account_name=data.account_name,
            notes=data.notes,
        )
        self._store_plan_amounts(trade)

        self.db.add(trade)
        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"トレード保存エラー: {str(e)}")
            raise

        self.db.refresh(trade)
        logger.info(f"トレードを登録: {trade.id} {trade.symbol} {trade.direction.value} x{trade.position_size}")
        return trade

    def get_trade(self, trade_id: int) -> Optional[Trade]:
        return self.db.query(Trade).filter(Trade.id == trade_id).first()

    def list_trades(self,
                    status: Optional[TradeStatus] = None,
                    symbol: Optional[str] = None,
                    user_id: Optional[str] = None,
                    limit: int = 100) -> List[Trade]:
        query = self.db.query(Trade)
        if user_id is not None:
            query = query.filter(Trade.user_id == user_id)
        if status is not None:
            query = query.filter(Trade.status == status)
        if symbol:
            query = query.filter(func.lower(Trade.symbol) == symbol.lower())
        return query.order_by(Trade.id.desc()).limit(limit).all()

    def delete_trade(self, trade_id: int) -> bool:
        """トレード削除（決済記録も削除）"""
        trade = self.get_trade(trade_id)
        if trade is None:
            return False

        self.db.delete(trade)
        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"トレード削除エラー: {str(e)}")
            raise

        logger.info(f"トレードを削除: {trade_id}")
        return True

    # --- 評価 ---

    def evaluate(self, trade: Trade) -> TradeEvaluation:
        """エンジンによるトレード評価"""
        snapshot = TradeSnapshot.from_model(trade)
        closures = [ClosureSnapshot.from_model(c) for c in trade.closures]

        instrument = self.resolve_instrument(trade)
        if not instrument.ok:
            state = recompute_trade_state(snapshot.position_size, [c.closed_size for c in closures])
            return TradeEvaluation(
                pnl=None,
                remaining_size=state.remaining_size,
                status=state.status,
                closed_size=state.total_closed,
                risk_per_unit=None,
                total_risk=None,
                risk_reward_ratio=None,
                r_multiple=None,
                errors=[instrument.message],
            )

        return evaluate_trade(snapshot, instrument.value, closures)

    def evaluate_all(self, status: Optional[TradeStatus] = None) -> List[Tuple[Trade, TradeEvaluation]]:
        trades = self.db.query(Trade).order_by(Trade.trade_date, Trade.id)
        if status is not None:
            trades = trades.filter(Trade.status == status)
        return [(trade, self.evaluate(trade)) for trade in trades.all()]

    def _store_plan_amounts(self, trade: Trade):
        """登録時点のリスク額・リワード額を保存"""
        instrument = self.resolve_instrument(trade)
        if not instrument.ok:
            return

        snapshot = TradeSnapshot.from_model(trade)
        risk = risk_per_unit(snapshot, instrument.value)
        if risk.ok:
            trade.risk_amount = round_for_display(risk.value * snapshot.position_size)

        if snapshot.take_profit is not None:
            reward = dollar_delta(instrument.value, snapshot.take_profit, snapshot.entry_price, snapshot.position_size)
            trade.reward_amount = round_for_display(abs(reward.value))
