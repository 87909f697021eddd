import pandas as pd
from datetime import date
from typing import List, Dict, Optional, Tuple
from dataclasses import dataclass, field
import logging

from app.models.trades import Trade
from app.services.pnl_engine import TradeEvaluation, TradeSnapshot

logger = logging.getLogger(__name__)


@dataclass
class SymbolPerformance:
    """銘柄別成績"""
    symbol: str
    total_pnl: float
    trade_count: int


@dataclass
class PerformanceSummary:
    """ジャーナル全体の成績"""
    total_trades: int
    winning_trades: int
    losing_trades: int
    total_pnl: float
    gross_profit: float
    gross_loss: float
    win_rate: float                  # %
    profit_factor: Optional[float]   # 損失トレードがなければNone
    expected_value: float            # 1トレードあたり期待値
    max_drawdown: float
    open_risk: float
    average_r_multiple: Optional[float]
    monthly_pnl: Dict[str, float] = field(default_factory=dict)
    symbol_performance: List[SymbolPerformance] = field(default_factory=list)
    best_symbol: Optional[str] = None
    worst_symbol: Optional[str] = None
    unavailable_trades: int = 0      # 損益計算不可（ティック情報不足など）


class PerformanceAnalyzer:
    """トレード評価結果からの成績集計"""

    def __init__(self, min_symbol_trades: int = 3):
        self.min_symbol_trades = min_symbol_trades

    def analyze(self, evaluated: List[Tuple[Trade, TradeEvaluation]]) -> PerformanceSummary:
        realized = self._realized_frame(evaluated)
        unavailable = sum(1 for _, ev in evaluated if ev.pnl is None)
        if unavailable:
            logger.warning(f"損益計算できないトレードを除外: {unavailable}件")

        open_risk = self._open_risk(evaluated)

        if realized.empty:
            return PerformanceSummary(
                total_trades=0, winning_trades=0, losing_trades=0,
                total_pnl=0.0, gross_profit=0.0, gross_loss=0.0,
                win_rate=0.0, profit_factor=None, expected_value=0.0,
                max_drawdown=0.0, open_risk=open_risk, average_r_multiple=None,
                unavailable_trades=unavailable,
            )

        pnl = realized['pnl']
        wins = pnl[pnl > 0]
        losses = pnl[pnl < 0]
        decided = len(wins) + len(losses)

        gross_profit = float(wins.sum())
        gross_loss = float(abs(losses.sum()))
        total_pnl = float(pnl.sum())

        symbol_performance = self._symbol_performance(realized)
        best, worst = self._best_and_worst(symbol_performance)

        r_values = realized['r_multiple'].dropna()

        return PerformanceSummary(
            total_trades=len(realized),
            winning_trades=len(wins),
            losing_trades=len(losses),
            total_pnl=round(total_pnl, 2),
            gross_profit=round(gross_profit, 2),
            gross_loss=round(gross_loss, 2),
            win_rate=round(len(wins) / decided * 100, 1) if decided else 0.0,
            profit_factor=round(gross_profit / gross_loss, 2) if gross_loss > 0 else None,
            expected_value=round(total_pnl / decided, 2) if decided else 0.0,
            max_drawdown=round(self._max_drawdown(pnl), 2),
            open_risk=open_risk,
            average_r_multiple=round(float(r_values.mean()), 2) if not r_values.empty else None,
            monthly_pnl=self._monthly_pnl(realized),
            symbol_performance=symbol_performance,
            best_symbol=best,
            worst_symbol=worst,
            unavailable_trades=unavailable,
        )

    def _realized_frame(self, evaluated: List[Tuple[Trade, TradeEvaluation]]) -> pd.DataFrame:
        """決済済み数量のあるトレードのみ"""
        rows = []
        for trade, ev in evaluated:
            if ev.pnl is None or ev.closed_size <= 0:
                continue
            rows.append({
                'trade_id': trade.id,
                'symbol': trade.symbol,
                'trade_date': pd.Timestamp(trade.trade_date or date.today()),
                'pnl': float(ev.pnl),
                'r_multiple': float(ev.r_multiple) if ev.r_multiple is not None else None,
            })

        frame = pd.DataFrame(rows, columns=['trade_id', 'symbol', 'trade_date', 'pnl', 'r_multiple'])
        if frame.empty:
            return frame
        frame['r_multiple'] = frame['r_multiple'].astype(float)
        return frame.sort_values(['trade_date', 'trade_id']).reset_index(drop=True)

    def _max_drawdown(self, pnl: pd.Series) -> float:
        """累積損益のピークからの最大下落幅"""
        equity = pnl.cumsum()
        peak = equity.cummax().clip(lower=0)
        return float((peak - equity).max())

    def _monthly_pnl(self, realized: pd.DataFrame) -> Dict[str, float]:
        monthly = realized.groupby(realized['trade_date'].dt.strftime('%Y-%m'))['pnl'].sum()
        return {month: round(float(value), 2) for month, value in monthly.items()}

    def _symbol_performance(self, realized: pd.DataFrame) -> List[SymbolPerformance]:
        grouped = realized.groupby('symbol')['pnl'].agg(['sum', 'count'])
        return [
            SymbolPerformance(symbol=symbol, total_pnl=round(float(row['sum']), 2), trade_count=int(row['count']))
            for symbol, row in grouped.sort_values('sum', ascending=False).iterrows()
        ]

    def _best_and_worst(self, performance: List[SymbolPerformance]) -> Tuple[Optional[str], Optional[str]]:
        """最低取引回数を満たす銘柄のうち最良・最悪"""
        eligible = [p for p in performance if p.trade_count >= self.min_symbol_trades]
        best = max(eligible, key=lambda p: p.total_pnl, default=None)
        worst = min(eligible, key=lambda p: p.total_pnl, default=None)
        return (
            best.symbol if best and best.total_pnl > 0 else None,
            worst.symbol if worst and worst.total_pnl < 0 else None,
        )

    def _open_risk(self, evaluated: List[Tuple[Trade, TradeEvaluation]]) -> float:
        """未決済分がストップに達した場合の損失合計"""
        total = 0.0
        for trade, ev in evaluated:
            if not trade.is_open or ev.risk_per_unit is None or ev.remaining_size <= 0:
                continue
            snapshot = TradeSnapshot.from_model(trade)
            # ストップが建値より有利側にあるなら損失リスクなし
            if snapshot.direction_sign * (snapshot.entry_price - snapshot.initial_stop_loss) <= 0:
                continue
            total += float(ev.risk_per_unit * ev.remaining_size)
        return round(total, 2)
