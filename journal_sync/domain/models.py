"""
Domain models for the journal sync engine.

These are the core business objects passed between the normalizer,
reconciler, P&L calculator and sync orchestrator. Broker timestamps are
kept as epoch milliseconds (the wire unit); datetimes are UTC-aware.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional


class Side(str, Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class OrderKind(str, Enum):
    """Order type as reported by the broker."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"


class OrderStatus(str, Enum):
    """Order status values the engine cares about. Others pass through as strings."""
    FILLED = "filled"
    CANCELLED = "cancelled"
    PENDING = "pending"


class InstrumentClass(str, Enum):
    """P&L conversion class of an instrument."""
    FOREX = "forex"
    METAL = "metal"
    INDEX_EUR = "index-eur"
    INDEX_GBP = "index-gbp"
    OTHER = "other"  # US indices, crypto, equity CFDs


class SyncMode(str, Enum):
    """Sync run mode."""
    INITIAL = "initial"
    REFRESH = "refresh"


def ms_to_datetime(ms: Optional[int]) -> Optional[datetime]:
    """Epoch milliseconds to UTC datetime (None passes through)."""
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def datetime_to_ms(dt: Optional[datetime]) -> Optional[int]:
    """UTC datetime to epoch milliseconds. Naive datetimes are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


@dataclass(frozen=True)
class RawOrder:
    """
    One broker order (fill or attempt) in canonical form.

    Unknown or empty wire values are None, never 0, so "not set" stays
    distinguishable from "set to zero".
    """
    position_id: str
    order_id: Optional[str] = None
    instrument_id: Optional[str] = None
    route_id: Optional[str] = None
    quantity: Optional[Decimal] = None
    side: Optional[Side] = None
    order_kind: Optional[str] = None  # market|limit|stop|...
    status: Optional[str] = None  # filled|cancelled|pending|...
    filled_quantity: Optional[Decimal] = None
    avg_fill_price: Optional[Decimal] = None
    trigger_price: Optional[Decimal] = None
    stop_trigger_price: Optional[Decimal] = None
    time_in_force: Optional[str] = None
    expire_at: Optional[str] = None
    created_at_ms: Optional[int] = None
    last_modified_ms: Optional[int] = None
    is_opening_fill: Optional[bool] = None
    stop_loss_price: Optional[Decimal] = None
    stop_loss_kind: Optional[str] = None
    take_profit_price: Optional[Decimal] = None
    take_profit_kind: Optional[str] = None
    strategy_id: Optional[str] = None

    def __post_init__(self):
        if not self.position_id:
            raise ValueError("RawOrder requires a non-empty position_id")

    @property
    def is_filled(self) -> bool:
        return self.status == OrderStatus.FILLED.value

    @property
    def is_opening(self) -> bool:
        """Filled order that opened the position."""
        return self.is_filled and self.is_opening_fill is True

    @property
    def is_closing(self) -> bool:
        """Filled order that closed the position."""
        return self.is_filled and self.is_opening_fill is False


@dataclass(frozen=True)
class Instrument:
    """A tradable instrument from the broker catalog."""
    id: str
    symbol: str
    instrument_type: str = ""  # raw broker tag, e.g. "FOREX", "EQUITY_CFD"
    info_route_id: Optional[str] = None


@dataclass(frozen=True)
class FXRateTable:
    """
    Currency-pair mid rates for one sync run, plus per-symbol observed
    spreads (diagnostics only). Immutable for the run.
    """
    rates: Mapping[str, Decimal] = field(default_factory=dict)
    spreads: Mapping[str, Decimal] = field(default_factory=dict)

    def get(self, pair: str, default: Optional[Decimal] = None) -> Optional[Decimal]:
        value = self.rates.get(pair.upper())
        if value is None or value <= 0:
            return default
        return value

    @classmethod
    def of(cls, **rates) -> "FXRateTable":
        return cls(rates={k.upper(): Decimal(str(v)) for k, v in rates.items()})


@dataclass(frozen=True)
class Position:
    """
    One reconciled open→close round trip. Exists only when both an opening
    and a closing fill were found for the position id.
    """
    position_id: str
    closing_order_id: str
    instrument_id: str
    side: Optional[Side]
    quantity: Optional[Decimal]
    entry_price: Optional[Decimal]
    exit_price: Optional[Decimal]
    entry_at_ms: Optional[int]
    exit_at_ms: Optional[int]
    gross_pnl: Decimal
    symbol: str = ""
    instrument_class: InstrumentClass = InstrumentClass.OTHER
    order_kind: Optional[str] = None
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None

    @property
    def external_id(self) -> str:
        """Deduplication key: position id, falling back to the closing order id."""
        return self.position_id or self.closing_order_id

    @property
    def exit_at(self) -> Optional[datetime]:
        return ms_to_datetime(self.exit_at_ms)

    @property
    def entry_at(self) -> Optional[datetime]:
        return ms_to_datetime(self.entry_at_ms)


@dataclass(frozen=True)
class TradeRecord:
    """
    Journal row projected from a Position, ready for the external store.
    """
    external_trade_id: str
    date: datetime
    day: str
    pnl: Decimal
    open_balance: Decimal
    close_balance: Decimal
    percent_gain: Decimal
    risk_dollar: Decimal
    target_dollar: Decimal
    rr_achieved: Decimal
    target_hit: bool
    result: str
    notes: str
    position_id: str = ""
    closing_order_id: str = ""
    instrument_id: str = ""
    symbol: str = ""
    side: Optional[Side] = None
    quantity: Optional[Decimal] = None
    entry_price: Optional[Decimal] = None
    exit_price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    closed_at_ms: Optional[int] = None


@dataclass(frozen=True)
class JournalSettings:
    """Per-account journal settings used for risk metrics."""
    starting_balance: Decimal = Decimal("1000")
    risk_percent: Decimal = Decimal("2")
    risk_reward: Decimal = Decimal("3")


@dataclass(frozen=True)
class LastSyncedTrade:
    """Close time of the most recently persisted broker-imported trade."""
    closed_at_ms: int


@dataclass(frozen=True)
class SyncState:
    """Per-account sync state read at the start of a run."""
    last_synced_at_ms: Optional[int] = None
    last_trade_closed_at_ms: Optional[int] = None
    external_ids: FrozenSet[str] = frozenset()

    @property
    def is_first_sync(self) -> bool:
        return not self.external_ids


@dataclass
class BrokerAccount:
    """A connected broker account with its stored credential and token state."""
    account_id: str
    acc_num: int
    email: str
    encrypted_password: str
    server: str
    environment: str = "live"
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    is_connected: bool = True


@dataclass(frozen=True)
class AccessToken:
    """Token pair issued by the broker auth endpoints."""
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class AccountSummary:
    """One entry of the broker's account list."""
    account_id: str
    account_number: int
    balance: Decimal = Decimal("0")
    equity: Decimal = Decimal("0")
    currency: str = "USD"


@dataclass
class SyncResult:
    """Outcome of one sync run."""
    mode: SyncMode
    created: int = 0
    skipped: int = 0
    failed: int = 0
    positions_in_window: int = 0
    raw_orders: int = 0
    last_synced_at: Optional[datetime] = None
    checkpoint_advanced: bool = False
    account_balance: Optional[Decimal] = None
    records: list = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "mode": self.mode.value,
            "created": self.created,
            "skipped": self.skipped,
            "failed": self.failed,
            "positions_in_window": self.positions_in_window,
            "raw_orders": self.raw_orders,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "checkpoint_advanced": self.checkpoint_advanced,
            "account_balance": str(self.account_balance) if self.account_balance is not None else None,
        }
