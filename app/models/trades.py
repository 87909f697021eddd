from sqlalchemy import Column, Integer, String, Date, DateTime, Numeric, Text, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from enum import Enum

from app.core.database import Base


class TradeDirection(str, Enum):
    """売買方向"""
    LONG = "long"
    SHORT = "short"


class TradeStatus(str, Enum):
    """トレード状態（決済記録から導出）"""
    OPEN = "open"          # 未決済
    PARTIAL = "partial"    # 一部決済
    CLOSED = "closed"      # 全決済


class Trade(Base):
    """トレード（ポジションのライフサイクル）"""
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)

    # 基本情報
    user_id = Column(String(64), nullable=True, index=True)  # 銘柄設定の所有者
    symbol = Column(String(20), nullable=False, index=True)
    market_type = Column(String(20), nullable=True)  # シンボル未登録時の資産クラス（未指定なら先物表を参照）
    direction = Column(SQLEnum(TradeDirection), nullable=False)
    status = Column(SQLEnum(TradeStatus), nullable=False, default=TradeStatus.OPEN, index=True)
    trade_date = Column(Date, nullable=True)

    # 価格とサイズ
    entry_price = Column(Numeric(18, 8), nullable=False)
    position_size = Column(Numeric(18, 8), nullable=False)
    remaining_size = Column(Numeric(18, 8), nullable=False)
    exit_price = Column(Numeric(18, 8), nullable=True)  # 旧形式の一括決済価格

    # リスク管理
    initial_stop_loss = Column(Numeric(18, 8), nullable=True)
    take_profit = Column(Numeric(18, 8), nullable=True)
    risk_amount = Column(Numeric(18, 2), nullable=True)
    reward_amount = Column(Numeric(18, 2), nullable=True)

    # メタデータ
    strategy_name = Column(String(50), nullable=True)
    account_name = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)

    # 楽観的排他制御
    version_id = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    closures = relationship(
        "TradeClosure",
        back_populates="trade",
        cascade="all, delete-orphan",
        order_by="TradeClosure.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self):
        return f"<Trade(id={self.id}, symbol={self.symbol}, direction={self.direction}, status={self.status}, remaining={self.remaining_size}/{self.position_size})>"

    @property
    def is_open(self) -> bool:
        """未決済（一部決済含む）か"""
        return self.status in (TradeStatus.OPEN, TradeStatus.PARTIAL)

    @property
    def is_closed(self) -> bool:
        return self.status == TradeStatus.CLOSED


class TradeClosure(Base):
    """決済記録（部分決済・全決済）"""
    __tablename__ = "trade_closures"

    id = Column(Integer, primary_key=True, index=True)
    trade_id = Column(Integer, ForeignKey("trades.id", ondelete="CASCADE"), nullable=False, index=True)

    close_price = Column(Numeric(18, 8), nullable=False)
    closed_size = Column(Numeric(18, 8), nullable=False)
    r_multiple = Column(Numeric(10, 2), nullable=True)  # 表示用に丸めた値
    close_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    trade = relationship("Trade", back_populates="closures")

    def __repr__(self):
        return f"<TradeClosure(id={self.id}, trade_id={self.trade_id}, price={self.close_price}, size={self.closed_size})>"
