"""
Order normalizer: one raw ordersHistory record -> canonical RawOrder.

The broker emits each order in one of two encodings:

- DENSE: an array (or an object keyed "0".."21") laid out by the
  ordersHistoryConfig column order.
- SPARSE: a named-field object whose key names vary between endpoints and
  broker builds.

Parsing is a two-step tagged union: detect the encoding, then pull each
canonical field through that encoding's source table. Everything downstream
sees only RawOrder and never branches on the wire encoding.

Dense column layout (index -> canonical field):

    0  order_id            8  avg_fill_price       16 position_id
    1  instrument_id       9  trigger_price        17 stop_loss_price
    2  route_id           10  stop_trigger_price   18 stop_loss_kind
    3  quantity           11  time_in_force        19 take_profit_price
    4  side               12  expire_at            20 take_profit_kind
    5  order_kind         13  created_at_ms        21 strategy_id
    6  status             14  last_modified_ms
    7  filled_quantity    15  is_opening_fill

Note that index 2 is the route, not the position, and index 10 is the stop
trigger of a stop order, not the stop-loss level of the position.
The feed carries no realized P&L, fee or swap column.
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from journal_sync.domain.models import RawOrder, Side
from journal_sync.exceptions import MalformedOrderError
from journal_sync.monitoring.logger import get_logger

logger = get_logger(__name__)

DENSE_MIN_KEYS = 15
_MAX_DENSE_INDEX = 63

# Prices and quantities at or above 10**12 are garbage, not market data;
# below that they also fit the Numeric(20, 8) trade columns
MAX_DECIMAL_EXPONENT = 11
# Last millisecond of 9999-12-31, the largest instant datetime can hold
MAX_EPOCH_MS = 253_402_300_799_999


class WireEncoding(str, Enum):
    DENSE = "dense"
    SPARSE = "sparse"


DENSE_COLUMNS: Dict[str, int] = {
    "order_id": 0,
    "instrument_id": 1,
    "route_id": 2,
    "quantity": 3,
    "side": 4,
    "order_kind": 5,
    "status": 6,
    "filled_quantity": 7,
    "avg_fill_price": 8,
    "trigger_price": 9,
    "stop_trigger_price": 10,
    "time_in_force": 11,
    "expire_at": 12,
    "created_at_ms": 13,
    "last_modified_ms": 14,
    "is_opening_fill": 15,
    "position_id": 16,
    "stop_loss_price": 17,
    "stop_loss_kind": 18,
    "take_profit_price": 19,
    "take_profit_kind": 20,
    "strategy_id": 21,
}

# Ordered source keys per canonical field; first non-empty wins.
SPARSE_ALIASES: Dict[str, Tuple[str, ...]] = {
    "order_id": ("id", "orderId", "orderID", "ticket"),
    "instrument_id": ("tradableInstrumentId", "instrumentId", "symbolId"),
    "route_id": ("routeId",),
    "quantity": ("qty", "quantity", "volume", "lotSize", "size", "amount"),
    "side": ("side", "direction", "type"),
    "order_kind": ("orderType", "type"),
    "status": ("status", "state"),
    "filled_quantity": ("filledQty", "filledQuantity"),
    "avg_fill_price": ("avgPrice", "avgFillPrice", "openPrice", "entryPrice", "executionPrice"),
    "trigger_price": ("price", "limitPrice"),
    "stop_trigger_price": ("stopPrice",),
    "time_in_force": ("validity", "timeInForce"),
    "expire_at": ("expireDate", "expireAt"),
    "created_at_ms": ("createdDate", "createdAt", "openTime", "openTimestamp"),
    "last_modified_ms": ("lastModified", "lastModifiedDate", "updatedAt"),
    "is_opening_fill": ("isOpen", "isOpening"),
    "position_id": ("positionId", "positionID"),
    "stop_loss_price": ("stopLoss", "slPrice", "sl"),
    "stop_loss_kind": ("stopLossType",),
    "take_profit_price": ("takeProfit", "tpPrice", "tp"),
    "take_profit_kind": ("takeProfitType",),
    "strategy_id": ("strategyId",),
}

_SIDE_VALUES = {s.value for s in Side}


# ---------------------------------------------------------------------------
# Encoding detection
# ---------------------------------------------------------------------------

def _as_index(key: Any) -> Optional[int]:
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return key if 0 <= key <= _MAX_DENSE_INDEX else None
    if isinstance(key, str) and key.isdigit():
        idx = int(key)
        return idx if idx <= _MAX_DENSE_INDEX else None
    return None


def detect_encoding(raw: Any) -> Tuple[WireEncoding, Mapping]:
    """
    Classify a raw record and return it as a mapping.

    DENSE when every key is a small non-negative integer and there are at
    least DENSE_MIN_KEYS of them; SPARSE otherwise.
    """
    if isinstance(raw, (list, tuple)):
        mapping: Mapping = {i: v for i, v in enumerate(raw)}
    elif isinstance(raw, Mapping):
        mapping = raw
    else:
        raise MalformedOrderError(f"Unsupported order record type: {type(raw).__name__}")

    keys = list(mapping.keys())
    if len(keys) >= DENSE_MIN_KEYS and all(_as_index(k) is not None for k in keys):
        return WireEncoding.DENSE, {_as_index(k): v for k, v in mapping.items()}
    return WireEncoding.SPARSE, mapping


# ---------------------------------------------------------------------------
# Field extraction (the only place that knows about encodings)
# ---------------------------------------------------------------------------

def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _extract_dense(mapping: Mapping[int, Any]) -> Dict[str, Any]:
    out = {}
    for name, idx in DENSE_COLUMNS.items():
        value = mapping.get(idx)
        out[name] = None if _is_empty(value) else value
    return out


def _extract_sparse(mapping: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name, aliases in SPARSE_ALIASES.items():
        out[name] = None
        for alias in aliases:
            value = mapping.get(alias)
            if _is_empty(value):
                continue
            # "type" is overloaded: a side on some payloads, an order kind on others
            if name == "side" and str(value).strip().lower() not in _SIDE_VALUES:
                continue
            if name == "order_kind" and str(value).strip().lower() in _SIDE_VALUES:
                continue
            out[name] = value
            break
    return out


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------

def _to_str(value: Any) -> Optional[str]:
    if _is_empty(value):
        return None
    return str(value).strip()


def _to_decimal(value: Any) -> Optional[Decimal]:
    if _is_empty(value) or isinstance(value, bool):
        return None
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite() or d.adjusted() > MAX_DECIMAL_EXPONENT:
        return None
    return d


def _bounded_ms(ms: int) -> Optional[int]:
    return ms if 0 < ms <= MAX_EPOCH_MS else None


def _to_epoch_ms(value: Any) -> Optional[int]:
    if _is_empty(value) or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return _bounded_ms(int(dt.timestamp() * 1000))
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        d = None
    if d is not None:
        if not d.is_finite() or d.adjusted() > 15:
            return None
        return _bounded_ms(int(d))
    try:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return _bounded_ms(int(dt.timestamp() * 1000))


def _to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if _is_empty(value):
        return None
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    return None


def _to_side(value: Any) -> Optional[Side]:
    s = _to_str(value)
    if s is None:
        return None
    try:
        return Side(s.lower())
    except ValueError:
        return None


def _to_lower(value: Any) -> Optional[str]:
    s = _to_str(value)
    return s.lower() if s is not None else None


def _to_upper(value: Any) -> Optional[str]:
    s = _to_str(value)
    return s.upper() if s is not None else None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_order(raw: Any) -> RawOrder:
    """
    Parse one raw record into a RawOrder.

    Raises:
        MalformedOrderError: record is not a list/mapping, or has no positionId
    """
    encoding, mapping = detect_encoding(raw)
    fields = _extract_dense(mapping) if encoding is WireEncoding.DENSE else _extract_sparse(mapping)

    position_id = _to_str(fields["position_id"])
    if not position_id:
        raise MalformedOrderError("Order has no positionId")

    return RawOrder(
        position_id=position_id,
        order_id=_to_str(fields["order_id"]),
        instrument_id=_to_str(fields["instrument_id"]),
        route_id=_to_str(fields["route_id"]),
        quantity=_to_decimal(fields["quantity"]),
        side=_to_side(fields["side"]),
        order_kind=_to_lower(fields["order_kind"]),
        status=_to_lower(fields["status"]),
        filled_quantity=_to_decimal(fields["filled_quantity"]),
        avg_fill_price=_to_decimal(fields["avg_fill_price"]),
        trigger_price=_to_decimal(fields["trigger_price"]),
        stop_trigger_price=_to_decimal(fields["stop_trigger_price"]),
        time_in_force=_to_upper(fields["time_in_force"]),
        expire_at=_to_str(fields["expire_at"]),
        created_at_ms=_to_epoch_ms(fields["created_at_ms"]),
        last_modified_ms=_to_epoch_ms(fields["last_modified_ms"]),
        is_opening_fill=_to_bool(fields["is_opening_fill"]),
        stop_loss_price=_to_decimal(fields["stop_loss_price"]),
        stop_loss_kind=_to_str(fields["stop_loss_kind"]),
        take_profit_price=_to_decimal(fields["take_profit_price"]),
        take_profit_kind=_to_str(fields["take_profit_kind"]),
        strategy_id=_to_str(fields["strategy_id"]),
    )


def normalize_order(raw: Any) -> Optional[RawOrder]:
    """Parse one record; malformed records are logged and yield None."""
    try:
        return parse_order(raw)
    except MalformedOrderError as e:
        logger.warning("ORDER_DROPPED", reason=str(e))
        return None


def normalize_orders(raws: Iterable[Any]) -> List[RawOrder]:
    """Normalize a batch, dropping malformed records."""
    orders: List[RawOrder] = []
    dropped = 0
    for raw in raws:
        order = normalize_order(raw)
        if order is None:
            dropped += 1
            continue
        orders.append(order)
    if dropped:
        logger.info("ORDERS_NORMALIZED", kept=len(orders), dropped=dropped)
    return orders
