from typing import Dict, Optional
from dataclasses import dataclass
from decimal import Decimal
import logging

from app.models.symbols import AssetClass, Symbol
from app.services.pnl_engine import (
    InstrumentSpec, CalcResult, PnLErrorKind, to_decimal
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContractSpec:
    """先物の限月共通スペック"""
    root: str
    tick_size: Decimal
    tick_value: Decimal
    description: str = ""


# 取引所公表の最小変動幅・1ティック価値（米ドル）
FUTURES_CONTRACT_SPECS_VERSION = "2024.1"

FUTURES_CONTRACT_SPECS: Dict[str, ContractSpec] = {
    spec.root: spec for spec in [
        ContractSpec("ES", Decimal("0.25"), Decimal("12.50"), "E-mini S&P 500"),
        ContractSpec("MES", Decimal("0.25"), Decimal("1.25"), "Micro E-mini S&P 500"),
        ContractSpec("NQ", Decimal("0.25"), Decimal("5.00"), "E-mini Nasdaq-100"),
        ContractSpec("MNQ", Decimal("0.25"), Decimal("0.50"), "Micro E-mini Nasdaq-100"),
        ContractSpec("YM", Decimal("1"), Decimal("5.00"), "E-mini Dow"),
        ContractSpec("MYM", Decimal("1"), Decimal("0.50"), "Micro E-mini Dow"),
        ContractSpec("RTY", Decimal("0.10"), Decimal("5.00"), "E-mini Russell 2000"),
        ContractSpec("M2K", Decimal("0.10"), Decimal("0.50"), "Micro E-mini Russell 2000"),
        ContractSpec("CL", Decimal("0.01"), Decimal("10.00"), "Crude Oil"),
        ContractSpec("MCL", Decimal("0.01"), Decimal("1.00"), "Micro WTI Crude Oil"),
        ContractSpec("GC", Decimal("0.10"), Decimal("10.00"), "Gold"),
        ContractSpec("MGC", Decimal("0.10"), Decimal("1.00"), "Micro Gold"),
    ]
}


class InstrumentResolver:
    """
    銘柄情報の解決

    登録済みシンボルを優先し、先物でティック情報が欠けている場合のみ
    スペック表で補完する。表にもない先物はエラーとして返し、推測はしない。
    """

    def __init__(self, contract_specs: Optional[Dict[str, ContractSpec]] = None):
        self.contract_specs = FUTURES_CONTRACT_SPECS if contract_specs is None else contract_specs

    def lookup_contract(self, symbol: str) -> Optional[ContractSpec]:
        return self.contract_specs.get((symbol or "").strip().upper())

    def resolve(self,
                symbol: str,
                stored: Optional[Symbol] = None,
                asset_class_hint: Optional[str] = None) -> CalcResult:
        """シンボル→InstrumentSpec（CalcResult.valueに格納）"""
        if stored is not None:
            asset_class = self._parse_asset_class(stored.asset_class)
            tick_size = to_decimal(stored.tick_size)
            tick_value = to_decimal(stored.tick_value)
        else:
            # 資産クラス未指定の場合のみスペック表から先物と判定する
            if not asset_class_hint and self.lookup_contract(symbol) is not None:
                asset_class = AssetClass.FUTURES
            else:
                asset_class = self._parse_asset_class(asset_class_hint)
            tick_size = tick_value = None

        if asset_class != AssetClass.FUTURES:
            return CalcResult.success(InstrumentSpec(symbol=symbol, asset_class=asset_class))

        if not (tick_size and tick_value):
            contract = self.lookup_contract(symbol)
            if contract is None:
                logger.warning(f"ティック情報が解決できない先物銘柄: {symbol}")
                return CalcResult.failure(
                    PnLErrorKind.INVALID_INSTRUMENT_DATA,
                    f"{symbol}: ティックサイズとティック価値を登録してください"
                )
            tick_size = tick_size or contract.tick_size
            tick_value = tick_value or contract.tick_value
            logger.debug(f"{symbol}: スペック表 {FUTURES_CONTRACT_SPECS_VERSION} のティック情報を使用")

        return CalcResult.success(InstrumentSpec(
            symbol=symbol,
            asset_class=AssetClass.FUTURES,
            tick_size=tick_size,
            tick_value=tick_value,
        ))

    def _parse_asset_class(self, value: Optional[str]) -> AssetClass:
        if not value:
            return AssetClass.STOCK
        try:
            return AssetClass(str(value).strip().lower())
        except ValueError:
            logger.warning(f"不明な資産クラス '{value}' を株式として扱います")
            return AssetClass.STOCK
