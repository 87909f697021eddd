from typing import Optional, List, Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
import logging
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.models.trades import Trade, TradeClosure, TradeStatus
from app.services.contract_specs import InstrumentResolver
from app.services.trade_service import TradeService
from app.services.pnl_engine import (
    PnLErrorKind, TradeSnapshot, ClosureSnapshot,
    recompute_trade_state, validate_closure_size, r_multiple,
    round_for_display, to_decimal
)

logger = logging.getLogger(__name__)


@dataclass
class ClosureResult:
    """決済操作の結果"""
    success: bool
    trade_id: Optional[int] = None
    closure_id: Optional[int] = None
    remaining_size: Optional[Decimal] = None
    status: Optional[TradeStatus] = None
    r_multiple: Optional[Decimal] = None
    error: Optional[PnLErrorKind] = None
    message: str = ""


class ClosureService:
    """
    決済記録の登録・修正・削除

    決済の変更とトレードの残サイズ・ステータス更新は同一トランザクションで行う。
    トレード行のバージョン列で同時更新を検出し、最新状態を読み直して再試行する。
    """

    def __init__(self,
                 db: Session,
                 resolver: InstrumentResolver = None,
                 max_retries: Optional[int] = None):
        self.db = db
        self.trade_service = TradeService(db, resolver)
        self.max_retries = max_retries if max_retries is not None else settings.closure_max_retries
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1: {self.max_retries}")

    def list_closures(self, trade_id: int) -> Optional[List[TradeClosure]]:
        if self.trade_service.get_trade(trade_id) is None:
            return None
        return self._load_closures(trade_id)

    def add_closure(self,
                    trade_id: int,
                    close_price,
                    closed_size,
                    close_date: Optional[date] = None,
                    notes: Optional[str] = None) -> ClosureResult:
        """部分決済・全決済の登録"""
        close_price = to_decimal(close_price)
        closed_size = to_decimal(closed_size)

        def mutate(trade: Trade, closures: List[TradeClosure]) -> ClosureResult:
            check = validate_closure_size(
                trade.position_size, [c.closed_size for c in closures], closed_size
            )
            if not check.ok:
                return ClosureResult(success=False, trade_id=trade.id, error=check.error, message=check.message)

            closure = TradeClosure(
                trade_id=trade.id,
                close_price=close_price,
                closed_size=closed_size,
                close_date=close_date or date.today(),
                notes=notes,
            )
            closure.r_multiple = self._stored_r_multiple(trade, closure)
            self.db.add(closure)
            self.db.flush()
            return ClosureResult(success=True, trade_id=trade.id, closure_id=closure.id,
                                 r_multiple=closure.r_multiple, message="決済を登録しました")

        return self._apply(trade_id, "add", mutate)

    def update_closure(self,
                       trade_id: int,
                       closure_id: int,
                       close_price=None,
                       closed_size=None,
                       close_date: Optional[date] = None,
                       notes: Optional[str] = None) -> ClosureResult:
        """決済記録の修正"""

        def mutate(trade: Trade, closures: List[TradeClosure]) -> ClosureResult:
            closure = next((c for c in closures if c.id == closure_id), None)
            if closure is None:
                return self._not_found(trade.id, f"決済記録 {closure_id} が見つかりません")

            new_size = to_decimal(closed_size) if closed_size is not None else closure.closed_size
            check = validate_closure_size(
                trade.position_size, [c.closed_size for c in closures if c.id != closure_id], new_size
            )
            if not check.ok:
                return ClosureResult(success=False, trade_id=trade.id, closure_id=closure_id,
                                     error=check.error, message=check.message)

            closure.closed_size = new_size
            if close_price is not None:
                closure.close_price = to_decimal(close_price)
            if close_date is not None:
                closure.close_date = close_date
            if notes is not None:
                closure.notes = notes
            closure.r_multiple = self._stored_r_multiple(trade, closure)
            self.db.flush()
            return ClosureResult(success=True, trade_id=trade.id, closure_id=closure.id,
                                 r_multiple=closure.r_multiple, message="決済を更新しました")

        return self._apply(trade_id, "update", mutate)

    def delete_closure(self, trade_id: int, closure_id: int) -> ClosureResult:
        """決済記録の削除"""

        def mutate(trade: Trade, closures: List[TradeClosure]) -> ClosureResult:
            closure = next((c for c in closures if c.id == closure_id), None)
            if closure is None:
                return self._not_found(trade.id, f"決済記録 {closure_id} が見つかりません")

            self.db.delete(closure)
            self.db.flush()
            return ClosureResult(success=True, trade_id=trade.id, closure_id=closure_id,
                                 message="決済を削除しました")

        return self._apply(trade_id, "delete", mutate)

    def _apply(self,
               trade_id: int,
               action: str,
               mutate: Callable[[Trade, List[TradeClosure]], ClosureResult]) -> ClosureResult:
        """決済変更＋トレード状態再計算を1トランザクションで実行（競合時は再試行）"""
        for attempt in range(1, self.max_retries + 1):
            try:
                trade = self.db.query(Trade).populate_existing().filter(Trade.id == trade_id).first()
                if trade is None:
                    return self._not_found(trade_id, f"トレード {trade_id} が見つかりません")

                result = mutate(trade, self._load_closures(trade_id))
                if not result.success:
                    self.db.rollback()
                    logger.warning(f"決済{action}を拒否: trade={trade_id} {result.message}")
                    return result

                # 変更後の決済を読み直して再計算
                state = recompute_trade_state(
                    trade.position_size, [c.closed_size for c in self._load_closures(trade_id)]
                )
                trade.remaining_size = state.remaining_size
                trade.status = state.status
                trade.updated_at = datetime.now(timezone.utc)

                self.db.commit()

                result.remaining_size = state.remaining_size
                result.status = state.status
                logger.info(
                    f"決済{action}: trade={trade_id} closure={result.closure_id} "
                    f"残り={state.remaining_size} 状態={state.status.value}"
                )
                return result

            except StaleDataError:
                self.db.rollback()
                logger.warning(f"トレード {trade_id} の同時更新を検出 ({attempt}/{self.max_retries})")

            except Exception as e:
                self.db.rollback()
                logger.error(f"決済{action}エラー: {str(e)}")
                raise

        return ClosureResult(
            success=False,
            trade_id=trade_id,
            error=PnLErrorKind.CONCURRENT_MODIFICATION,
            message="トレードが同時に更新されました。再度お試しください"
        )

    def _load_closures(self, trade_id: int) -> List[TradeClosure]:
        return self.db.query(TradeClosure).populate_existing().filter(
            TradeClosure.trade_id == trade_id
        ).order_by(TradeClosure.id).all()

    def _stored_r_multiple(self, trade: Trade, closure: TradeClosure) -> Optional[Decimal]:
        """保存用Rマルチプル（計算不可ならNone）"""
        instrument = self.trade_service.resolve_instrument(trade)
        if not instrument.ok:
            return None

        result = r_multiple(
            TradeSnapshot.from_model(trade),
            instrument.value,
            ClosureSnapshot(close_price=closure.close_price, closed_size=closure.closed_size),
        )
        if not result.ok:
            logger.debug(f"Rマルチプル計算不可: trade={trade.id} {result.message}")
            return None
        return round_for_display(result.value, settings.display_decimals)

    def _not_found(self, trade_id: int, message: str) -> ClosureResult:
        return ClosureResult(success=False, trade_id=trade_id, error=PnLErrorKind.NOT_FOUND, message=message)
