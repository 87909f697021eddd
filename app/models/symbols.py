from sqlalchemy import Column, Integer, String, DateTime, Numeric, UniqueConstraint
from sqlalchemy.sql import func
from enum import Enum

from app.core.database import Base


class AssetClass(str, Enum):
    """資産クラス"""
    STOCK = "stock"
    CRYPTO = "crypto"
    FOREX = "forex"
    FUTURES = "futures"
    OPTIONS = "options"


class Symbol(Base):
    """取引銘柄（ティック情報を含む）"""
    __tablename__ = "symbols"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    symbol = Column(String(20), nullable=False, index=True)
    name = Column(String(100), nullable=True)
    asset_class = Column(String(20), nullable=False, default=AssetClass.STOCK.value)

    # 先物のみ
    tick_size = Column(Numeric(18, 8), nullable=True)
    tick_value = Column(Numeric(18, 8), nullable=True)
    contract_size = Column(Numeric(18, 8), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "symbol", name="uq_symbols_user_symbol"),
    )

    def __repr__(self):
        return f"<Symbol(id={self.id}, symbol={self.symbol}, asset_class={self.asset_class})>"

    @property
    def is_futures(self) -> bool:
        return (self.asset_class or "").lower() == AssetClass.FUTURES.value
