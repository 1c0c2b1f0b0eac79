"""
Instrument catalog, instrument classification and contract multipliers.

The order feed reports prices and lot quantities but no realized P&L, so the
USD value of a one-point move for one lot has to be derived per instrument:

    metals (XAU/XAG/GOLD/SILVER)      -> 100
    EU indices (DAX/CAC/ESP35/...)    -> 100 x EURUSD
    UK indices (UK100/FTSE/UKX)       -> 100 x GBPUSD
    forex                             -> 100000 x quote-currency factor
    everything else (US indices, crypto, equity CFDs) -> 1

The forex quote-currency factor is 1 / (quote currency's USD cross rate) for
EUR, GBP, AUD and NZD quotes. With GBPUSD at 1.25 an EURGBP lot is worth
100000 / 1.25 = 80000 per point. This departs from the multiply-by-cross-rate
convention (100000 x GBPUSD = 125000), so journal rows computed that way will
not match these for non-USD-quoted pairs.

Unknown or missing FX rates fall back to their defaults and are logged as a
pricing-accuracy warning; classification never fails.
"""
import re
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from journal_sync.constants import FOREX_CONTRACT_SIZE, INDEX_CONTRACT_SIZE, METAL_CONTRACT_SIZE
from journal_sync.domain.models import FXRateTable, Instrument, InstrumentClass
from journal_sync.exceptions import APIError
from journal_sync.monitoring.logger import get_logger

logger = get_logger(__name__)

METAL_MARKERS = ("XAU", "XAG", "GOLD", "SILVER")
EUR_INDEX_MARKERS = (
    "DE40", "GER40", "DE30", "GER30", "DAX",
    "FRA40", "CAC40", "ESP35", "EU50", "STOXX50",
    "STOXX", "AEX", "SMI", "IBEX", "MIB", "FTSEMIB",
)
GBP_INDEX_MARKERS = ("UK100", "FTSE", "UKX")

FOREX_TYPE_TAG = "FOREX"
_PAIR_RE = re.compile(r"^[A-Z]{6}$")

# Pair holding each quote currency's USD cross rate
QUOTE_CROSS_PAIRS: Dict[str, str] = {
    "EUR": "EURUSD",
    "GBP": "GBPUSD",
    "AUD": "AUDUSD",
    "NZD": "NZDUSD",
    "CAD": "USDCAD",
    "CHF": "USDCHF",
    "JPY": "USDJPY",
    "SGD": "USDSGD",
}

DEFAULT_FX_RATES: Dict[str, Decimal] = {
    "EURUSD": Decimal("1.0"),
    "GBPUSD": Decimal("1.0"),
    "AUDUSD": Decimal("1.0"),
    "NZDUSD": Decimal("1.0"),
    "USDCAD": Decimal("1.0"),
    "USDCHF": Decimal("1.0"),
    "USDJPY": Decimal("100.0"),
    "USDSGD": Decimal("1.3"),
}

FxRates = Union[FXRateTable, Mapping[str, Any], None]


def compact_symbol(symbol: str) -> str:
    """Upper-case and strip separators: "de40.pro" -> "DE40PRO"."""
    return re.sub(r"[.\s_/]", "", (symbol or "").upper())


def base_symbol(symbol: str) -> str:
    """Symbol without its broker suffix: "EURUSD.PRO" -> "EURUSD", "EUR/USD" -> "EURUSD"."""
    head = (symbol or "").upper().split(".", 1)[0]
    return re.sub(r"[\s_/]", "", head)


def _as_rate_table(fx_rates: FxRates) -> FXRateTable:
    if fx_rates is None:
        return FXRateTable()
    if isinstance(fx_rates, FXRateTable):
        return fx_rates
    return FXRateTable.of(**{k: v for k, v in fx_rates.items() if v is not None})


def classify(symbol: str, instrument_type: str = "") -> InstrumentClass:
    """
    Classify an instrument for P&L conversion. First match wins.

    Forex is detected from an explicit FOREX type tag, or, when the broker
    gave no type at all, from a six-letter alphabetic base symbol.
    """
    s = compact_symbol(symbol)
    if not s:
        return InstrumentClass.OTHER
    if any(m in s for m in METAL_MARKERS):
        return InstrumentClass.METAL
    if any(m in s for m in EUR_INDEX_MARKERS):
        return InstrumentClass.INDEX_EUR
    if any(m in s for m in GBP_INDEX_MARKERS):
        return InstrumentClass.INDEX_GBP

    tag = (instrument_type or "").strip().upper()
    if tag == FOREX_TYPE_TAG or (not tag and _PAIR_RE.match(base_symbol(symbol))):
        return InstrumentClass.FOREX
    return InstrumentClass.OTHER


def _rate_or_default(rates: FXRateTable, pair: str, symbol: str) -> Decimal:
    value = rates.get(pair)
    if value is None:
        value = DEFAULT_FX_RATES.get(pair, Decimal("1"))
        logger.warning("PNL_FX_RATE_FALLBACK", symbol=symbol, pair=pair, fallback=str(value))
    return value


def quote_to_usd(symbol: str, fx_rates: FxRates = None) -> Decimal:
    """
    Conversion factor applied to a forex pair's quote-currency P&L.

    USD-quoted pairs need none. Otherwise the factor is the inverse of the
    quote currency's USD cross rate, whichever orientation the table holds.
    """
    rates = _as_rate_table(fx_rates)
    quote = base_symbol(symbol)[-3:]
    if quote == "USD":
        return Decimal("1")
    pair = QUOTE_CROSS_PAIRS.get(quote)
    if pair is None:
        logger.warning("PNL_MULTIPLIER_FALLBACK", symbol=symbol, reason="unknown_quote_currency", quote=quote)
        return Decimal("1")
    return Decimal("1") / _rate_or_default(rates, pair, symbol)


def multiplier(
    symbol: str,
    fx_rates: FxRates = None,
    *,
    instrument_class: Optional[InstrumentClass] = None,
    instrument_type: str = "",
) -> Decimal:
    """
    USD value of a one-point move for one lot.

    Args:
        symbol: Broker symbol, e.g. "DE40.PRO"
        fx_rates: FXRateTable or a plain {"EURUSD": 1.08} mapping
        instrument_class: Pre-resolved class; classified from the symbol if None
        instrument_type: Broker type tag used when classifying
    """
    if not symbol:
        logger.warning("PNL_MULTIPLIER_FALLBACK", symbol=symbol, reason="unknown_symbol")
        return Decimal("1")

    rates = _as_rate_table(fx_rates)
    cls = instrument_class or classify(symbol, instrument_type)

    if cls is InstrumentClass.METAL:
        return Decimal(METAL_CONTRACT_SIZE)
    if cls is InstrumentClass.INDEX_EUR:
        return Decimal(INDEX_CONTRACT_SIZE) * _rate_or_default(rates, "EURUSD", symbol)
    if cls is InstrumentClass.INDEX_GBP:
        return Decimal(INDEX_CONTRACT_SIZE) * _rate_or_default(rates, "GBPUSD", symbol)
    if cls is InstrumentClass.FOREX:
        return Decimal(FOREX_CONTRACT_SIZE) * quote_to_usd(symbol, rates)
    return Decimal("1")


class InstrumentCatalog:
    """
    Snapshot of the account's tradable instruments, keyed by instrument id.

    Built once per sync run and never mutated afterwards.
    """

    def __init__(self, instruments: Iterable[Instrument] = ()):
        self._by_id: Dict[str, Instrument] = {i.id: i for i in instruments}

    @classmethod
    def from_payload(cls, payload: Iterable[Mapping[str, Any]]) -> "InstrumentCatalog":
        """Parse the broker's instruments list. Entries without id or symbol are skipped."""
        instruments = []
        for item in payload or []:
            if not isinstance(item, Mapping):
                continue
            inst_id = item.get("tradableInstrumentId") or item.get("id") or item.get("instrumentId")
            symbol = item.get("symbol") or item.get("name") or item.get("instrumentName")
            if inst_id in (None, "") or not symbol:
                continue
            info_route = next(
                (r.get("id") for r in item.get("routes") or [] if isinstance(r, Mapping) and r.get("type") == "INFO"),
                None,
            )
            instruments.append(
                Instrument(
                    id=str(inst_id),
                    symbol=str(symbol),
                    instrument_type=str(item.get("type") or item.get("instrumentType") or ""),
                    info_route_id=str(info_route) if info_route is not None else None,
                )
            )
        return cls(instruments)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, instrument_id: object) -> bool:
        return instrument_id in self._by_id

    def get(self, instrument_id: Optional[str]) -> Optional[Instrument]:
        if instrument_id is None:
            return None
        return self._by_id.get(str(instrument_id))

    def symbol_for(self, instrument_id: Optional[str]) -> str:
        inst = self.get(instrument_id)
        return inst.symbol if inst else ""

    def classify(self, instrument_id: Optional[str]) -> InstrumentClass:
        inst = self.get(instrument_id)
        if inst is None:
            return InstrumentClass.OTHER
        return classify(inst.symbol, inst.instrument_type)

    def find_by_names(self, names: Iterable[str]) -> Optional[Instrument]:
        """First instrument whose symbol equals one of names (case-insensitive)."""
        wanted = {n.upper() for n in names}
        for inst in self._by_id.values():
            if inst.symbol.upper() in wanted:
                return inst
        return None


def _pair_names(pair: str) -> List[str]:
    return [pair, f"{pair[:3]}/{pair[3:]}"]


def build_fx_rate_table(
    client,
    access_token: str,
    acc_num: int,
    catalog: InstrumentCatalog,
    fx_pairs: Iterable[str],
    spread_symbols: Optional[Mapping[str, Iterable[str]]] = None,
) -> FXRateTable:
    """
    Quote the configured currency pairs and build the run's FX table.

    Each pair is quoted on its instrument's INFO route and stored as the mid
    price. Pairs that cannot be located or quoted keep their default. For
    diagnostic symbols only the spread is recorded.
    """
    rates: Dict[str, Decimal] = {pair: DEFAULT_FX_RATES.get(pair, Decimal("1.0")) for pair in fx_pairs}
    spreads: Dict[str, Decimal] = {}

    def _quote(names: List[str], label: str) -> Optional[Dict[str, Decimal]]:
        inst = catalog.find_by_names(names)
        if inst is None or inst.info_route_id is None:
            logger.debug("FX_INSTRUMENT_NOT_FOUND", target=label)
            return None
        try:
            quote = client.get_quote(access_token, inst.id, inst.info_route_id, acc_num)
        except APIError as e:
            logger.warning("FX_QUOTE_FAILED", target=label, error=str(e), status_code=e.status_code)
            return None
        if not quote or quote.get("bid") is None or quote["bid"] <= 0:
            return None
        return quote

    for pair in rates:
        quote = _quote(_pair_names(pair), pair)
        if quote is None:
            continue
        rates[pair] = (quote["bid"] + quote["ask"]) / 2
        logger.info("FX_RATE_LOADED", pair=pair, rate=str(rates[pair]))

    for key, names in (spread_symbols or {}).items():
        quote = _quote(list(names), key)
        if quote is None:
            continue
        spreads[compact_symbol(key)] = quote["ask"] - quote["bid"]

    # Derived aliases
    for ccy in ("CAD", "CHF", "JPY"):
        usd_base = rates.get(f"USD{ccy}")
        if usd_base and usd_base > 0:
            rates[f"{ccy}USD"] = Decimal("1") / usd_base

    return FXRateTable(rates=rates, spreads=spreads)
