"""
Unit tests for the order normalizer.

The same order arrives either as a 22-column array or as a named-field
object; both must produce an identical RawOrder.
"""
from decimal import Decimal

import pytest

from factories import BASE_MS, dense_order
from journal_sync.data.order_normalizer import (
    WireEncoding,
    detect_encoding,
    normalize_order,
    normalize_orders,
    parse_order,
)
from journal_sync.domain.models import Side
from journal_sync.exceptions import MalformedOrderError


def _sparse(**overrides):
    order = {
        "id": "7001",
        "tradableInstrumentId": "1001",
        "routeId": "901",
        "qty": "0.19",
        "side": "buy",
        "type": "market",
        "status": "filled",
        "filledQty": "0.19",
        "avgPrice": "25105.50",
        "validity": "IOC",
        "createdDate": BASE_MS,
        "lastModified": BASE_MS,
        "isOpen": "true",
        "positionId": "P-1",
        "stopLoss": "24900",
        "takeProfit": "25500",
    }
    order.update(overrides)
    return order


# ---------------------------------------------------------------------------
# Encoding detection
# ---------------------------------------------------------------------------

def test_array_is_dense():
    encoding, mapping = detect_encoding(dense_order("P-1"))
    assert encoding is WireEncoding.DENSE
    assert mapping[16] == "P-1"


def test_object_with_numeric_string_keys_is_dense():
    raw = {str(i): v for i, v in enumerate(dense_order("P-1"))}
    encoding, mapping = detect_encoding(raw)
    assert encoding is WireEncoding.DENSE
    assert mapping[16] == "P-1"


def test_named_object_is_sparse():
    encoding, _ = detect_encoding(_sparse())
    assert encoding is WireEncoding.SPARSE


def test_short_numeric_object_is_sparse():
    raw = {str(i): "x" for i in range(5)}
    encoding, _ = detect_encoding(raw)
    assert encoding is WireEncoding.SPARSE


def test_scalar_record_is_malformed():
    with pytest.raises(MalformedOrderError):
        detect_encoding("not-an-order")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def test_dense_and_sparse_produce_the_same_order():
    dense = dense_order(
        "P-1",
        order_id="7001",
        instrument_id="1001",
        qty="0.19",
        avg_price="25105.50",
        created_ms=BASE_MS,
        stop_loss="24900",
        take_profit="25500",
    )
    from_dense = parse_order(dense)
    from_sparse = parse_order(_sparse())

    for field in (
        "position_id", "order_id", "instrument_id", "route_id", "quantity", "side",
        "order_kind", "status", "filled_quantity", "avg_fill_price", "time_in_force",
        "created_at_ms", "is_opening_fill", "stop_loss_price", "take_profit_price",
    ):
        assert getattr(from_dense, field) == getattr(from_sparse, field), field


def test_dense_fields_are_coerced():
    order = parse_order(dense_order("P-9", order_id=55, instrument_id=1001, qty="2", side="SELL", avg_price="1.2345"))
    assert order.position_id == "P-9"
    assert order.order_id == "55"
    assert order.instrument_id == "1001"
    assert order.quantity == Decimal("2")
    assert order.side is Side.SELL
    assert order.avg_fill_price == Decimal("1.2345")
    assert order.created_at_ms == BASE_MS
    assert order.is_opening


def test_route_column_is_not_position():
    order = parse_order(dense_order("P-1", route_id="901"))
    assert order.route_id == "901"
    assert order.position_id == "P-1"


def test_stop_trigger_column_is_not_stop_loss():
    order = parse_order(dense_order("P-1", kind="stop", stop_price="24000"))
    assert order.stop_trigger_price == Decimal("24000")
    assert order.stop_loss_price is None


def test_empty_values_become_none_not_zero():
    order = parse_order(dense_order("P-1", avg_price="", stop_loss="", take_profit=None))
    assert order.avg_fill_price is None
    assert order.stop_loss_price is None
    assert order.take_profit_price is None


def test_unparseable_numbers_become_none():
    order = parse_order(_sparse(avgPrice="n/a", qty="NaN"))
    assert order.avg_fill_price is None
    assert order.quantity is None


def test_implausible_numbers_become_none():
    order = parse_order(dense_order("P-1", avg_price="1e30", qty="5e13", stop_loss="123456789012.5"))
    assert order.avg_fill_price is None
    assert order.quantity is None
    assert order.stop_loss_price == Decimal("123456789012.5")


def test_timestamps_beyond_datetime_range_become_none():
    assert parse_order(dense_order("P-1", created_ms=10**17)).created_at_ms is None
    assert parse_order(dense_order("P-1", created_ms="1e400")).created_at_ms is None
    assert parse_order(dense_order("P-1", created_ms=-5)).created_at_ms is None
    assert parse_order(dense_order("P-1", created_ms=253_402_300_799_999)).created_at_ms == 253_402_300_799_999


def test_is_open_is_tri_state():
    assert parse_order(dense_order("P-1", is_open="true")).is_opening_fill is True
    assert parse_order(dense_order("P-1", is_open="false")).is_opening_fill is False
    assert parse_order(dense_order("P-1", is_open=None)).is_opening_fill is None


def test_unfilled_order_is_neither_opening_nor_closing():
    order = parse_order(dense_order("P-1", status="cancelled", is_open="true"))
    assert not order.is_opening
    assert not order.is_closing


def test_sparse_aliases():
    order = parse_order({
        "orderId": "A1",
        "instrumentId": "1002",
        "volume": "0.5",
        "direction": "sell",
        "orderType": "limit",
        "state": "Filled",
        "entryPrice": "2400.10",
        "createdAt": "2025-10-09T08:53:20Z",
        "isOpening": False,
        "positionID": "P-2",
        "sl": "2410",
        "tp": "2380",
    })
    assert order.order_id == "A1"
    assert order.instrument_id == "1002"
    assert order.quantity == Decimal("0.5")
    assert order.side is Side.SELL
    assert order.order_kind == "limit"
    assert order.status == "filled"
    assert order.avg_fill_price == Decimal("2400.10")
    assert order.created_at_ms == BASE_MS
    assert order.is_closing
    assert order.stop_loss_price == Decimal("2410")
    assert order.take_profit_price == Decimal("2380")


def test_sparse_type_key_as_side():
    order = parse_order({"positionId": "P-3", "type": "sell", "status": "filled"})
    assert order.side is Side.SELL
    assert order.order_kind is None


def test_sparse_type_key_as_order_kind():
    order = parse_order({"positionId": "P-3", "side": "buy", "type": "stop"})
    assert order.side is Side.BUY
    assert order.order_kind == "stop"


# ---------------------------------------------------------------------------
# Dropping
# ---------------------------------------------------------------------------

def test_missing_position_id_is_malformed():
    with pytest.raises(MalformedOrderError):
        parse_order(_sparse(positionId=None))


def test_normalize_order_drops_malformed():
    assert normalize_order(dense_order("")) is None
    assert normalize_order(42) is None


def test_normalize_orders_keeps_valid_records_in_order():
    raws = [dense_order("P-1", order_id="a"), {"foo": "bar"}, _sparse(id="b", positionId="P-2")]
    orders = normalize_orders(raws)
    assert [o.order_id for o in orders] == ["a", "b"]
