from typing import Optional, List
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR
from enum import Enum

from app.core.config import settings
from app.models.trades import TradeDirection
from app.services.pnl_engine import (
    InstrumentSpec, TradeSnapshot, PnLErrorKind,
    risk_per_unit, dollar_delta, round_for_display, to_decimal
)


class RiskProfile(str, Enum):
    """リスクプロファイル"""
    CONSERVATIVE = "conservative"   # 口座残高の0.5%
    AGGRESSIVE = "aggressive"       # 口座残高の1.0%


RISK_PERCENTAGES = {
    RiskProfile.CONSERVATIVE: Decimal("0.5"),
    RiskProfile.AGGRESSIVE: Decimal("1.0"),
}


@dataclass
class TradeRiskPlan:
    """エントリー前のリスク計画"""
    risk_amount: Optional[Decimal]
    reward_amount: Optional[Decimal]
    risk_reward_ratio: Optional[Decimal]
    max_risk_amount: Decimal
    risk_formula: str = ""
    reward_formula: str = ""
    warnings: List[str] = field(default_factory=list)
    error: Optional[PnLErrorKind] = None

    @property
    def exceeds_max_risk(self) -> bool:
        return self.risk_amount is not None and self.risk_amount > self.max_risk_amount


@dataclass
class PositionSizeCalculation:
    """ポジションサイズ計算結果"""
    recommended_size: Decimal
    risk_amount: Decimal
    risk_per_unit: Optional[Decimal]
    max_risk_amount: Decimal
    reasoning: List[str]


class RiskManagerService:
    """口座残高とリスクプロファイルに基づくリスク管理"""

    def __init__(self,
                 account_balance=None,
                 risk_profile: RiskProfile = None):
        self.account_balance = to_decimal(
            account_balance if account_balance is not None else settings.account_balance
        )
        self.risk_profile = RiskProfile(risk_profile or settings.risk_profile)
        if self.account_balance < 0:
            raise ValueError(f"account_balance must not be negative: {self.account_balance}")

    @property
    def max_risk_percentage(self) -> Decimal:
        return RISK_PERCENTAGES[self.risk_profile]

    @property
    def max_risk_amount(self) -> Decimal:
        """1トレードあたりの最大リスク額"""
        return self.account_balance * self.max_risk_percentage / Decimal(100)

    def set_risk_profile(self, risk_profile: RiskProfile):
        self.risk_profile = RiskProfile(risk_profile)

    def plan_trade(self,
                   instrument: InstrumentSpec,
                   direction: TradeDirection,
                   entry_price,
                   stop_loss,
                   take_profit=None,
                   quantity=1) -> TradeRiskPlan:
        """リスク額・リワード額・リスクリワード比の計算"""
        trade = TradeSnapshot(
            symbol=instrument.symbol,
            direction=direction,
            entry_price=entry_price,
            position_size=quantity,
            initial_stop_loss=stop_loss,
            take_profit=take_profit,
        )
        plan = TradeRiskPlan(
            risk_amount=None,
            reward_amount=None,
            risk_reward_ratio=None,
            max_risk_amount=round_for_display(self.max_risk_amount),
        )

        per_unit = risk_per_unit(trade, instrument)
        if not per_unit.ok:
            plan.error = per_unit.error
            plan.warnings.append(per_unit.message)
            return plan

        quantity = trade.position_size
        plan.risk_amount = round_for_display(per_unit.value * quantity)
        plan.risk_formula = self._formula(instrument, trade.entry_price, trade.initial_stop_loss,
                                          per_unit.value, quantity, plan.risk_amount)

        if trade.take_profit is not None:
            reward = dollar_delta(instrument, trade.take_profit, trade.entry_price, 1)
            reward_per_unit = abs(reward.value)
            plan.reward_amount = round_for_display(reward_per_unit * quantity)
            plan.reward_formula = self._formula(instrument, trade.take_profit, trade.entry_price,
                                                reward_per_unit, quantity, plan.reward_amount)
            if plan.reward_amount > 0 and plan.risk_amount > 0:
                plan.risk_reward_ratio = round_for_display(reward_per_unit / per_unit.value)

        if plan.exceeds_max_risk:
            amount_over = plan.risk_amount - plan.max_risk_amount
            percent_over = (plan.risk_amount / plan.max_risk_amount - 1) * 100 if plan.max_risk_amount > 0 else None
            message = (
                f"リスク額 {plan.risk_amount:.2f} が最大リスク {plan.max_risk_amount:.2f} を "
                f"{amount_over:.2f} 超えています"
            )
            if percent_over is not None:
                message += f" ({percent_over:.1f}%)"
            plan.warnings.append(message)

        return plan

    def suggest_position_size(self,
                              instrument: InstrumentSpec,
                              direction: TradeDirection,
                              entry_price,
                              stop_loss,
                              size_step="1") -> PositionSizeCalculation:
        """最大リスク額に収まるポジションサイズ（size_step単位で切り捨て）"""
        size_step = to_decimal(size_step)
        if size_step is None or size_step <= 0:
            raise ValueError(f"size_step must be positive: {size_step}")
        trade = TradeSnapshot(
            symbol=instrument.symbol,
            direction=direction,
            entry_price=entry_price,
            position_size=size_step,
            initial_stop_loss=stop_loss,
        )
        max_risk = self.max_risk_amount
        per_unit = risk_per_unit(trade, instrument)
        if not per_unit.ok:
            return PositionSizeCalculation(
                recommended_size=Decimal(0),
                risk_amount=Decimal(0),
                risk_per_unit=None,
                max_risk_amount=max_risk,
                reasoning=[per_unit.message],
            )

        steps = (max_risk / per_unit.value / size_step).to_integral_value(rounding=ROUND_FLOOR)
        size = steps * size_step
        risk_amount = per_unit.value * size

        return PositionSizeCalculation(
            recommended_size=size,
            risk_amount=round_for_display(risk_amount),
            risk_per_unit=per_unit.value,
            max_risk_amount=max_risk,
            reasoning=[
                f"最大リスク額: {max_risk:.2f} ({self.max_risk_percentage}%)",
                f"1単位あたりリスク: {per_unit.value:.2f}",
                f"推奨サイズ: {size}",
            ],
        )

    def _formula(self, instrument: InstrumentSpec, price_a: Decimal, price_b: Decimal,
                 per_unit: Decimal, quantity: Decimal, total: Decimal) -> str:
        """計算式の表示文字列"""
        if instrument.is_futures:
            return (
                f"(|{price_a} - {price_b}| / {instrument.tick_size}) × {instrument.tick_value} = "
                f"{per_unit:.2f} per contract × {quantity} = {total:.2f}"
            )
        return f"|{price_a} - {price_b}| = {per_unit:.2f} per unit × {quantity} = {total:.2f}"
