import pytest
from decimal import Decimal
from datetime import date
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.database import Base
from app.models.trades import TradeDirection
from app.services.closure_service import ClosureService
from app.services.performance_analyzer import PerformanceAnalyzer, PerformanceSummary, SymbolPerformance
from app.services.trade_service import TradeService, TradeCreate


@pytest.fixture
def db_session():
    """テスト用データベースセッション"""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def trade_service(db_session):
    return TradeService(db_session)


@pytest.fixture
def analyzer():
    return PerformanceAnalyzer()


def record(trade_service, symbol, trade_date, entry, exit_price, size=1, stop=None,
           direction=TradeDirection.LONG, close_size=None):
    """トレードを登録して決済する"""
    trade = trade_service.create_trade(TradeCreate(
        symbol=symbol,
        direction=direction,
        entry_price=Decimal(str(entry)),
        position_size=Decimal(str(size)),
        initial_stop_loss=Decimal(str(stop)) if stop is not None else None,
        trade_date=trade_date,
    ))
    if exit_price is not None:
        ClosureService(trade_service.db).add_closure(
            trade.id, close_price=str(exit_price), closed_size=str(close_size or size)
        )
    return trade


def test_empty_journal(analyzer):
    summary = analyzer.analyze([])

    assert isinstance(summary, PerformanceSummary)
    assert summary.total_trades == 0
    assert summary.win_rate == 0.0
    assert summary.profit_factor is None
    assert summary.average_r_multiple is None
    assert summary.monthly_pnl == {}
    assert summary.best_symbol is None


def test_basic_statistics(trade_service, analyzer):
    record(trade_service, "AAPL", date(2024, 1, 5), 100, 110)   # +10
    record(trade_service, "AAPL", date(2024, 1, 8), 100, 95)    # -5
    record(trade_service, "MSFT", date(2024, 1, 9), 100, 120)   # +20
    record(trade_service, "MSFT", date(2024, 1, 10), 100, 100)  # 0

    summary = analyzer.analyze(trade_service.evaluate_all())

    assert summary.total_trades == 4
    assert summary.winning_trades == 2
    assert summary.losing_trades == 1
    assert summary.total_pnl == 25.0
    assert summary.gross_profit == 30.0
    assert summary.gross_loss == 5.0
    # 引き分けは勝率の分母に含めない
    assert summary.win_rate == 66.7
    assert summary.profit_factor == 6.0
    assert summary.expected_value == pytest.approx(8.33)


def test_no_losses_profit_factor_is_none(trade_service, analyzer):
    record(trade_service, "AAPL", date(2024, 1, 5), 100, 110)

    summary = analyzer.analyze(trade_service.evaluate_all())

    assert summary.win_rate == 100.0
    assert summary.profit_factor is None


def test_max_drawdown(trade_service, analyzer):
    record(trade_service, "AAPL", date(2024, 1, 1), 100, 110)   # 10
    record(trade_service, "AAPL", date(2024, 1, 2), 100, 90)    # 0
    record(trade_service, "AAPL", date(2024, 1, 3), 100, 95)    # -5
    record(trade_service, "AAPL", date(2024, 1, 4), 100, 130)   # 25
    record(trade_service, "AAPL", date(2024, 1, 5), 100, 92)    # 17

    summary = analyzer.analyze(trade_service.evaluate_all())

    assert summary.max_drawdown == 15.0


def test_drawdown_from_initial_losses(trade_service, analyzer):
    record(trade_service, "AAPL", date(2024, 1, 1), 100, 96)
    record(trade_service, "AAPL", date(2024, 1, 2), 100, 97)

    summary = analyzer.analyze(trade_service.evaluate_all())

    assert summary.max_drawdown == 7.0


def test_monthly_pnl(trade_service, analyzer):
    record(trade_service, "AAPL", date(2024, 1, 5), 100, 110)
    record(trade_service, "AAPL", date(2024, 1, 20), 100, 104)
    record(trade_service, "AAPL", date(2024, 2, 1), 100, 97)

    summary = analyzer.analyze(trade_service.evaluate_all())

    assert summary.monthly_pnl == {"2024-01": 14.0, "2024-02": -3.0}


def test_best_and_worst_symbol_require_minimum_trades(trade_service, analyzer):
    for day in (1, 2, 3):
        record(trade_service, "AAPL", date(2024, 1, day), 100, 105)
        record(trade_service, "TSLA", date(2024, 1, day), 100, 98)
    record(trade_service, "NVDA", date(2024, 1, 4), 100, 200)   # 取引回数不足
    record(trade_service, "META", date(2024, 1, 4), 100, 10)

    summary = analyzer.analyze(trade_service.evaluate_all())

    assert summary.best_symbol == "AAPL"
    assert summary.worst_symbol == "TSLA"
    assert summary.symbol_performance[0] == SymbolPerformance(symbol="NVDA", total_pnl=100.0, trade_count=1)
    assert {p.symbol for p in summary.symbol_performance} == {"AAPL", "TSLA", "NVDA", "META"}


def test_worst_symbol_requires_negative_pnl(trade_service, analyzer):
    for day in (1, 2, 3):
        record(trade_service, "AAPL", date(2024, 1, day), 100, 105)

    summary = analyzer.analyze(trade_service.evaluate_all())

    assert summary.best_symbol == "AAPL"
    assert summary.worst_symbol is None


def test_average_r_multiple(trade_service, analyzer):
    record(trade_service, "AAPL", date(2024, 1, 1), 100, 110, stop=95)  # 2R
    record(trade_service, "AAPL", date(2024, 1, 2), 100, 95, stop=95)   # -1R
    record(trade_service, "AAPL", date(2024, 1, 3), 100, 120)           # ストップなし

    summary = analyzer.analyze(trade_service.evaluate_all())

    assert summary.average_r_multiple == 0.5


def test_open_trades_excluded_and_open_risk(trade_service, analyzer):
    record(trade_service, "AAPL", date(2024, 1, 1), 100, 110)
    record(trade_service, "MSFT", date(2024, 1, 2), 100, None, size=10, stop=95)           # 未決済
    record(trade_service, "TSLA", date(2024, 1, 3), 200, 210, size=10, stop=190, close_size=4)  # 部分決済
    record(trade_service, "NVDA", date(2024, 1, 4), 100, None, size=10, stop=105)          # 建値より上のストップ

    summary = analyzer.analyze(trade_service.evaluate_all())

    assert summary.total_trades == 2
    assert summary.total_pnl == 50.0
    # MSFT 5 × 10 + TSLA 10 × 6
    assert summary.open_risk == 110.0


def test_unavailable_trades_counted(trade_service, analyzer):
    record(trade_service, "AAPL", date(2024, 1, 1), 100, 110)
    trade = trade_service.create_trade(TradeCreate(
        symbol="6E",
        direction=TradeDirection.LONG,
        entry_price=Decimal("1.1"),
        position_size=Decimal("1"),
        market_type="futures",
    ))
    ClosureService(trade_service.db).add_closure(trade.id, close_price="1.2", closed_size="1")

    summary = analyzer.analyze(trade_service.evaluate_all())

    assert summary.unavailable_trades == 1
    assert summary.total_trades == 1
