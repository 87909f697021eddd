import pytest
from decimal import Decimal

from app.models.symbols import AssetClass
from app.models.trades import TradeDirection
from app.services.contract_specs import InstrumentResolver
from app.services.pnl_engine import InstrumentSpec, PnLErrorKind
from app.services.risk_manager import (
    RiskManagerService, RiskProfile, TradeRiskPlan, PositionSizeCalculation, RISK_PERCENTAGES
)


@pytest.fixture
def risk_manager():
    """口座残高10000・保守的プロファイル"""
    return RiskManagerService(account_balance=10000, risk_profile=RiskProfile.CONSERVATIVE)


@pytest.fixture
def stock():
    return InstrumentSpec("AAPL", AssetClass.STOCK)


@pytest.fixture
def es_future():
    return InstrumentResolver().resolve("ES").value


def test_risk_percentages():
    assert RISK_PERCENTAGES[RiskProfile.CONSERVATIVE] == Decimal("0.5")
    assert RISK_PERCENTAGES[RiskProfile.AGGRESSIVE] == Decimal("1.0")


def test_max_risk_amount(risk_manager):
    assert risk_manager.max_risk_percentage == Decimal("0.5")
    assert risk_manager.max_risk_amount == Decimal("50")

    risk_manager.set_risk_profile("aggressive")
    assert risk_manager.risk_profile == RiskProfile.AGGRESSIVE
    assert risk_manager.max_risk_amount == Decimal("100")


def test_defaults_from_settings():
    manager = RiskManagerService()
    assert manager.account_balance == Decimal("10000.0")
    assert manager.risk_profile == RiskProfile.CONSERVATIVE


def test_negative_balance_rejected():
    with pytest.raises(ValueError):
        RiskManagerService(account_balance=-1)


def test_unknown_risk_profile_rejected():
    with pytest.raises(ValueError):
        RiskManagerService(account_balance=1000, risk_profile="reckless")


def test_plan_trade_within_limit(risk_manager, stock):
    plan = risk_manager.plan_trade(stock, TradeDirection.LONG, "100", "95", take_profit="110", quantity=10)

    assert isinstance(plan, TradeRiskPlan)
    assert plan.error is None
    assert plan.risk_amount == Decimal("50.00")
    assert plan.reward_amount == Decimal("100.00")
    assert plan.risk_reward_ratio == Decimal("2.00")
    assert plan.max_risk_amount == Decimal("50.00")
    assert not plan.exceeds_max_risk
    assert plan.warnings == []
    assert plan.risk_formula == "|100 - 95| = 5.00 per unit × 10 = 50.00"
    assert plan.reward_formula == "|110 - 100| = 10.00 per unit × 10 = 100.00"


def test_plan_trade_exceeding_max_risk_warns(risk_manager, stock):
    plan = risk_manager.plan_trade(stock, TradeDirection.LONG, "100", "95", take_profit="110", quantity=20)

    assert plan.risk_amount == Decimal("100.00")
    assert plan.exceeds_max_risk
    assert len(plan.warnings) == 1
    assert "50.00 超えています" in plan.warnings[0]
    assert "(100.0%)" in plan.warnings[0]


def test_plan_short_trade(risk_manager, stock):
    plan = risk_manager.plan_trade(stock, TradeDirection.SHORT, "50", "52", take_profit="44", quantity=5)

    assert plan.risk_amount == Decimal("10.00")
    assert plan.reward_amount == Decimal("30.00")
    assert plan.risk_reward_ratio == Decimal("3.00")


def test_plan_futures_trade(es_future):
    manager = RiskManagerService(account_balance=100000, risk_profile=RiskProfile.AGGRESSIVE)

    plan = manager.plan_trade(es_future, TradeDirection.LONG, "4500", "4495", take_profit="4510", quantity=1)

    assert plan.risk_amount == Decimal("250.00")
    assert plan.reward_amount == Decimal("500.00")
    assert plan.risk_reward_ratio == Decimal("2.00")
    assert plan.risk_formula == "(|4500 - 4495| / 0.25) × 12.50 = 250.00 per contract × 1 = 250.00"
    assert plan.warnings == []


def test_plan_without_take_profit(risk_manager, stock):
    plan = risk_manager.plan_trade(stock, TradeDirection.LONG, "100", "99", quantity=10)

    assert plan.risk_amount == Decimal("10.00")
    assert plan.reward_amount is None
    assert plan.risk_reward_ratio is None
    assert plan.reward_formula == ""


def test_plan_without_stop_loss(risk_manager, stock):
    plan = risk_manager.plan_trade(stock, TradeDirection.LONG, "100", None, take_profit="110")

    assert plan.error == PnLErrorKind.MISSING_STOP_LOSS
    assert plan.risk_amount is None
    assert len(plan.warnings) == 1


def test_plan_with_stop_at_entry(risk_manager, stock):
    plan = risk_manager.plan_trade(stock, TradeDirection.LONG, "100", "100")
    assert plan.error == PnLErrorKind.INVALID_RISK


def test_plan_futures_without_tick_data(risk_manager):
    unknown = InstrumentSpec("ZB", AssetClass.FUTURES)
    plan = risk_manager.plan_trade(unknown, TradeDirection.LONG, "110", "109")
    assert plan.error == PnLErrorKind.INVALID_INSTRUMENT_DATA


def test_suggest_position_size(risk_manager, stock):
    result = risk_manager.suggest_position_size(stock, TradeDirection.LONG, "100", "97")

    assert isinstance(result, PositionSizeCalculation)
    # 50 / 3 = 16.66… → 16
    assert result.recommended_size == Decimal("16")
    assert result.risk_amount == Decimal("48.00")
    assert result.risk_per_unit == Decimal("3")
    assert len(result.reasoning) == 3


def test_suggest_fractional_position_size(risk_manager):
    btc = InstrumentSpec("BTCUSD", AssetClass.CRYPTO)
    result = risk_manager.suggest_position_size(btc, TradeDirection.SHORT, "30000", "30700", size_step="0.001")

    # 50 / 700 = 0.0714… → 0.071
    assert result.recommended_size == Decimal("0.071")
    assert result.risk_amount == Decimal("49.70")


def test_suggest_futures_position_size(es_future):
    manager = RiskManagerService(account_balance=100000, risk_profile=RiskProfile.CONSERVATIVE)
    result = manager.suggest_position_size(es_future, TradeDirection.LONG, "4500", "4490")

    # 最大500 / 1枚500
    assert result.recommended_size == Decimal("1")


def test_suggest_position_size_without_stop(risk_manager, stock):
    result = risk_manager.suggest_position_size(stock, TradeDirection.LONG, "100", None)

    assert result.recommended_size == Decimal("0")
    assert result.risk_per_unit is None


@pytest.mark.parametrize("size_step", ["0", "-0.5"])
def test_suggest_position_size_rejects_non_positive_step(risk_manager, stock, size_step):
    with pytest.raises(ValueError):
        risk_manager.suggest_position_size(stock, TradeDirection.LONG, "100", "97", size_step=size_step)
