"""
損益計算エンジン

トレードと決済記録から損益・リスク額・Rマルチプルを計算する。
入出力は不変のスナップショットのみで、DBアクセスや副作用は持たない。
想定内の異常（ストップ未設定、ティック情報不足など）は例外ではなく
CalcResult として返す。
"""
from typing import Optional, List, Sequence
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from app.models.symbols import AssetClass
from app.models.trades import TradeDirection, TradeStatus


ZERO = Decimal("0")


class PnLErrorKind(str, Enum):
    """計算エラー種別"""
    INVALID_INSTRUMENT_DATA = "invalid_instrument_data"    # 先物のティック情報不足
    MISSING_STOP_LOSS = "missing_stop_loss"                # 初期ストップ未設定
    INVALID_RISK = "invalid_risk"                          # ストップ＝エントリー
    EXCEEDS_POSITION_SIZE = "exceeds_position_size"        # 建玉超過の決済
    CONCURRENT_MODIFICATION = "concurrent_modification"    # 同時更新の競合
    NOT_FOUND = "not_found"


class PnLCalculationError(Exception):
    """計算途中のエラー（公開関数の内部でのみ使用）"""

    def __init__(self, kind: PnLErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


@dataclass(frozen=True)
class CalcResult:
    """計算結果（値またはエラー）"""
    value: Optional[Decimal] = None
    error: Optional[PnLErrorKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[Decimal]) -> "CalcResult":
        return cls(value=value)

    @classmethod
    def failure(cls, error: PnLErrorKind, message: str) -> "CalcResult":
        return cls(error=error, message=message)


def to_decimal(value) -> Optional[Decimal]:
    """float等をDecimalへ変換（二進誤差を持ち込まないよう文字列経由）"""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_for_display(value: Optional[Decimal], places: int = 2) -> Optional[Decimal]:
    """表示用の丸め（四捨五入）"""
    if value is None:
        return None
    return to_decimal(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class InstrumentSpec:
    """銘柄の価格規約"""
    symbol: str
    asset_class: AssetClass = AssetClass.STOCK
    tick_size: Optional[Decimal] = None
    tick_value: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, "asset_class", AssetClass(self.asset_class))
        object.__setattr__(self, "tick_size", to_decimal(self.tick_size))
        object.__setattr__(self, "tick_value", to_decimal(self.tick_value))
        for name in ("tick_size", "tick_value"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must not be negative: {value}")

    @property
    def is_futures(self) -> bool:
        return self.asset_class == AssetClass.FUTURES

    @property
    def has_tick_data(self) -> bool:
        return bool(self.tick_size and self.tick_value)


@dataclass(frozen=True)
class TradeSnapshot:
    """計算用のトレード情報"""
    symbol: str
    direction: TradeDirection
    entry_price: Decimal
    position_size: Decimal
    initial_stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    remaining_size: Optional[Decimal] = None
    status: TradeStatus = TradeStatus.OPEN
    exit_price: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, "direction", TradeDirection(self.direction))
        object.__setattr__(self, "status", TradeStatus(self.status))
        for name in ("entry_price", "position_size", "initial_stop_loss",
                     "take_profit", "remaining_size", "exit_price"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))

        if self.position_size is None or self.position_size < 0:
            raise ValueError(f"position_size must not be negative: {self.position_size}")
        if self.remaining_size is None:
            object.__setattr__(self, "remaining_size", self.position_size)

    @property
    def direction_sign(self) -> int:
        return 1 if self.direction == TradeDirection.LONG else -1

    @classmethod
    def from_model(cls, trade) -> "TradeSnapshot":
        return cls(
            symbol=trade.symbol,
            direction=trade.direction,
            entry_price=trade.entry_price,
            position_size=trade.position_size,
            initial_stop_loss=trade.initial_stop_loss,
            take_profit=trade.take_profit,
            remaining_size=trade.remaining_size,
            status=trade.status or TradeStatus.OPEN,
            exit_price=trade.exit_price,
        )


@dataclass(frozen=True)
class ClosureSnapshot:
    """計算用の決済記録"""
    close_price: Decimal
    closed_size: Decimal
    id: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "close_price", to_decimal(self.close_price))
        object.__setattr__(self, "closed_size", to_decimal(self.closed_size))
        if self.closed_size is None or self.closed_size <= 0:
            raise ValueError(f"closed_size must be positive: {self.closed_size}")

    @classmethod
    def from_model(cls, closure) -> "ClosureSnapshot":
        return cls(
            close_price=closure.close_price,
            closed_size=closure.closed_size,
            id=closure.id,
        )


@dataclass(frozen=True)
class TradeState:
    """決済集計から導出したトレード状態"""
    remaining_size: Decimal
    status: TradeStatus
    total_closed: Decimal


@dataclass
class ClosureEvaluation:
    """決済ごとの評価"""
    closure_id: Optional[int]
    pnl: Decimal
    r_multiple: Optional[Decimal]
    r_multiple_error: Optional[PnLErrorKind] = None


@dataclass
class TradeEvaluation:
    """トレード評価結果（表示層向け）"""
    pnl: Optional[Decimal]
    remaining_size: Decimal
    status: TradeStatus
    closed_size: Decimal
    risk_per_unit: Optional[Decimal]
    total_risk: Optional[Decimal]
    risk_reward_ratio: Optional[Decimal]
    r_multiple: Optional[Decimal]
    closures: List[ClosureEvaluation] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class PriceConverter(ABC):
    """値幅→金額換算の基底クラス"""

    @abstractmethod
    def to_dollars(self, price_move: Decimal, size: Decimal) -> Decimal:
        """符号付き値幅を符号付き金額に換算"""
        pass


class LinearPriceConverter(PriceConverter):
    """株式・暗号資産・FX（1単位あたり値幅＝金額）"""

    def to_dollars(self, price_move: Decimal, size: Decimal) -> Decimal:
        return price_move * size


class TickPriceConverter(PriceConverter):
    """先物（ティック数×ティック価値）"""

    def __init__(self, tick_size: Decimal, tick_value: Decimal):
        self.tick_size = tick_size
        self.tick_value = tick_value

    def to_dollars(self, price_move: Decimal, size: Decimal) -> Decimal:
        ticks = abs(price_move) / self.tick_size
        magnitude = ticks * self.tick_value * size
        return magnitude if price_move >= 0 else -magnitude


def converter_for(instrument: InstrumentSpec) -> PriceConverter:
    if instrument.is_futures:
        if not instrument.has_tick_data:
            raise PnLCalculationError(
                PnLErrorKind.INVALID_INSTRUMENT_DATA,
                f"{instrument.symbol}: 先物のティックサイズ・ティック価値が不明です"
            )
        return TickPriceConverter(instrument.tick_size, instrument.tick_value)
    return LinearPriceConverter()


# --- 公開計算関数 ---

def dollar_delta(instrument: InstrumentSpec, price_a, price_b, size) -> CalcResult:
    """価格差（a - b）を符号付き金額に換算"""
    try:
        converter = converter_for(instrument)
    except PnLCalculationError as e:
        return CalcResult.failure(e.kind, e.message)
    move = to_decimal(price_a) - to_decimal(price_b)
    return CalcResult.success(converter.to_dollars(move, to_decimal(size)))


def _closure_pnl(trade: TradeSnapshot, converter: PriceConverter, close_price: Decimal, size: Decimal) -> Decimal:
    signed_move = trade.direction_sign * (close_price - trade.entry_price)
    return converter.to_dollars(signed_move, size)


def closure_pnl(trade: TradeSnapshot, instrument: InstrumentSpec, closure: ClosureSnapshot) -> CalcResult:
    """決済1件の損益（有利方向の値動きで正）"""
    try:
        converter = converter_for(instrument)
    except PnLCalculationError as e:
        return CalcResult.failure(e.kind, e.message)
    return CalcResult.success(_closure_pnl(trade, converter, closure.close_price, closure.closed_size))


def legacy_closed_size(trade: TradeSnapshot) -> Decimal:
    """旧形式（exit_priceのみで全決済）トレードの決済サイズ"""
    closed = trade.position_size - trade.remaining_size
    return closed if closed > 0 else trade.position_size


def is_legacy_close(trade: TradeSnapshot, closures: Sequence[ClosureSnapshot]) -> bool:
    return not closures and trade.status == TradeStatus.CLOSED and trade.exit_price is not None


def aggregate_pnl(trade: TradeSnapshot, instrument: InstrumentSpec, closures: Sequence[ClosureSnapshot]) -> CalcResult:
    """
    全決済の損益合計

    決済記録がなくステータスがclosedのトレードは、exit_priceによる
    旧形式の一括決済として扱う（互換用）。決済記録があればそちらを優先する。
    """
    try:
        converter = converter_for(instrument)
    except PnLCalculationError as e:
        return CalcResult.failure(e.kind, e.message)

    if is_legacy_close(trade, closures):
        return CalcResult.success(
            _closure_pnl(trade, converter, trade.exit_price, legacy_closed_size(trade))
        )

    total = ZERO
    for closure in closures:
        total += _closure_pnl(trade, converter, closure.close_price, closure.closed_size)
    return CalcResult.success(total)


def _risk_per_unit(trade: TradeSnapshot, instrument: InstrumentSpec) -> Decimal:
    if trade.initial_stop_loss is None:
        raise PnLCalculationError(
            PnLErrorKind.MISSING_STOP_LOSS,
            "初期ストップロスが設定されていないためRマルチプルを計算できません"
        )
    converter = converter_for(instrument)
    raw_risk = trade.direction_sign * (trade.entry_price - trade.initial_stop_loss)
    risk = converter.to_dollars(abs(raw_risk), Decimal(1))
    if risk == 0:
        raise PnLCalculationError(
            PnLErrorKind.INVALID_RISK,
            "ストップロスがエントリー価格と同じです"
        )
    return risk


def risk_per_unit(trade: TradeSnapshot, instrument: InstrumentSpec) -> CalcResult:
    """1単位あたりの初期リスク額"""
    try:
        return CalcResult.success(_risk_per_unit(trade, instrument))
    except PnLCalculationError as e:
        return CalcResult.failure(e.kind, e.message)


def r_multiple(trade: TradeSnapshot, instrument: InstrumentSpec, closure: ClosureSnapshot) -> CalcResult:
    """決済1件のRマルチプル（丸めなし）"""
    try:
        risk = _risk_per_unit(trade, instrument)
        converter = converter_for(instrument)
    except PnLCalculationError as e:
        return CalcResult.failure(e.kind, e.message)

    pnl = _closure_pnl(trade, converter, closure.close_price, closure.closed_size)
    per_unit_profit = pnl / closure.closed_size
    return CalcResult.success(per_unit_profit / risk)


def risk_reward_ratio(trade: TradeSnapshot, instrument: InstrumentSpec) -> CalcResult:
    """
    リスクリワード比

    利確目標が未設定なら値はNone（エラーではない）。
    ストップ未設定はエラー、リスクゼロは値None。
    """
    if trade.take_profit is None:
        return CalcResult.success(None)

    risk = risk_per_unit(trade, instrument)
    if not risk.ok:
        if risk.error == PnLErrorKind.INVALID_RISK:
            return CalcResult.success(None)
        return risk

    reward = dollar_delta(instrument, trade.take_profit, trade.entry_price, 1)
    if not reward.ok:
        return reward
    return CalcResult.success(abs(reward.value) / risk.value)


def recompute_trade_state(position_size, closed_sizes: Sequence) -> TradeState:
    """決済サイズの合計から残サイズとステータスを再計算"""
    position_size = to_decimal(position_size)
    total_closed = sum((to_decimal(s) for s in closed_sizes), ZERO)
    remaining = max(ZERO, position_size - total_closed)
    remaining = min(remaining, position_size)

    if remaining == 0:
        status = TradeStatus.CLOSED
    elif total_closed > 0:
        status = TradeStatus.PARTIAL
    else:
        status = TradeStatus.OPEN

    return TradeState(remaining_size=remaining, status=status, total_closed=total_closed)


def validate_closure_size(position_size, other_closed_sizes: Sequence, new_size) -> CalcResult:
    """新しい決済サイズが建玉を超えないか検証"""
    new_size = to_decimal(new_size)
    if new_size is None or new_size <= 0:
        raise ValueError(f"closed_size must be positive: {new_size}")

    already_closed = sum((to_decimal(s) for s in other_closed_sizes), ZERO)
    available = to_decimal(position_size) - already_closed
    if new_size > available:
        return CalcResult.failure(
            PnLErrorKind.EXCEEDS_POSITION_SIZE,
            f"決済サイズが残りサイズを超えています (要求: {new_size}, 残り: {max(ZERO, available)})"
        )
    return CalcResult.success(new_size)


def evaluate_trade(trade: TradeSnapshot,
                   instrument: InstrumentSpec,
                   closures: Sequence[ClosureSnapshot]) -> TradeEvaluation:
    """表示層向けにトレードの計算結果をまとめる"""
    errors = []

    state = recompute_trade_state(trade.position_size, [c.closed_size for c in closures])
    if is_legacy_close(trade, closures):
        closed_size = legacy_closed_size(trade)
        remaining_size, status = trade.position_size - closed_size, TradeStatus.CLOSED
    else:
        closed_size = state.total_closed
        remaining_size, status = state.remaining_size, state.status

    pnl = aggregate_pnl(trade, instrument, closures)
    if not pnl.ok:
        errors.append(pnl.message)

    risk = risk_per_unit(trade, instrument)
    if not risk.ok and risk.error != pnl.error:
        errors.append(risk.message)

    rr = risk_reward_ratio(trade, instrument)

    closure_evaluations = []
    if pnl.ok:
        for closure in closures:
            closure_result = closure_pnl(trade, instrument, closure)
            r = r_multiple(trade, instrument, closure)
            closure_evaluations.append(ClosureEvaluation(
                closure_id=closure.id,
                pnl=closure_result.value,
                r_multiple=r.value,
                r_multiple_error=r.error,
            ))

    trade_r = None
    if pnl.ok and risk.ok and closed_size > 0:
        trade_r = pnl.value / (risk.value * closed_size)

    return TradeEvaluation(
        pnl=pnl.value,
        remaining_size=remaining_size,
        status=status,
        closed_size=closed_size,
        risk_per_unit=risk.value,
        total_risk=risk.value * trade.position_size if risk.ok else None,
        risk_reward_ratio=rr.value,
        r_multiple=trade_r,
        closures=closure_evaluations,
        errors=errors,
    )
