"""
Unit tests for the trade recording pipeline.

Tests:
1. Risk metrics and result classification
2. Notes formatting
3. Running balance across a batch
4. Idempotent persistence (duplicates are skipped, failures counted)
"""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from factories import BASE_MS
from journal_sync.domain.models import JournalSettings, Position, Side
from journal_sync.exceptions import DuplicateTradeError, PersistenceError
from journal_sync.recording.trade_recorder import (
    RESULT_BREAKEVEN,
    RESULT_LOSS,
    RESULT_TARGET,
    RESULT_WIN,
    build_notes,
    build_trade_record,
    classify_result,
    record_trades,
    sequence_records,
)

SETTINGS = JournalSettings(
    starting_balance=Decimal("1000"),
    risk_percent=Decimal("2"),
    risk_reward=Decimal("3"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_position(
    position_id: str = "P-1",
    pnl: str = "1.27",
    exit_at_ms=BASE_MS + 60_000,
    entry_at_ms=BASE_MS,
    stop_loss=None,
    take_profit=None,
) -> Position:
    return Position(
        position_id=position_id,
        closing_order_id=f"{position_id}-close",
        instrument_id="1001",
        side=Side.BUY,
        quantity=Decimal("0.19"),
        entry_price=Decimal("25105.50"),
        exit_price=Decimal("25112.20"),
        entry_at_ms=entry_at_ms,
        exit_at_ms=exit_at_ms,
        gross_pnl=Decimal(pnl),
        symbol="NAS100",
        order_kind="market",
        stop_loss=stop_loss,
        take_profit=take_profit,
    )


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------

def test_record_risk_metrics():
    record = build_trade_record(_make_position(pnl="30.00"), Decimal("1000"), SETTINGS)

    assert record.external_trade_id == "P-1"
    assert record.pnl == Decimal("30.00")
    assert record.open_balance == Decimal("1000.00")
    assert record.close_balance == Decimal("1030.00")
    assert record.percent_gain == Decimal("3.00")
    assert record.risk_dollar == Decimal("20.00")
    assert record.target_dollar == Decimal("60.00")
    assert record.rr_achieved == Decimal("1.50")
    assert record.target_hit is False
    assert record.result == RESULT_WIN


def test_record_date_is_exit_time():
    record = build_trade_record(_make_position(), Decimal("1000"), SETTINGS)
    assert record.date == datetime(2025, 10, 9, 8, 54, 20, tzinfo=timezone.utc)
    assert record.day == "Thu"
    assert record.closed_at_ms == BASE_MS + 60_000


def test_record_date_falls_back_to_now():
    now = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
    record = build_trade_record(_make_position(exit_at_ms=None, entry_at_ms=None), Decimal("1000"), SETTINGS, now=now)
    assert record.date == now
    assert record.day == "Mon"


def test_levels_are_rounded_and_non_positive_dropped():
    record = build_trade_record(
        _make_position(stop_loss=Decimal("1.234567"), take_profit=Decimal("0")),
        Decimal("1000"),
        SETTINGS,
    )
    assert record.stop_loss == Decimal("1.23457")
    assert record.take_profit is None


def test_zero_balance_does_not_divide():
    record = build_trade_record(_make_position(pnl="-5"), Decimal("0"), SETTINGS)
    assert record.percent_gain == Decimal("0.00")
    assert record.rr_achieved == Decimal("0.00")


@pytest.mark.parametrize(
    "pnl,target_hit,expected",
    [
        (Decimal("60"), True, RESULT_TARGET),
        (Decimal("10"), False, RESULT_WIN),
        (Decimal("-10"), False, RESULT_LOSS),
        (Decimal("0"), False, RESULT_BREAKEVEN),
    ],
)
def test_classify_result(pnl, target_hit, expected):
    assert classify_result(pnl, target_hit) == expected


def test_target_hit_when_pnl_reaches_target():
    record = build_trade_record(_make_position(pnl="60.00"), Decimal("1000"), SETTINGS)
    assert record.target_hit is True
    assert record.result == RESULT_TARGET


def test_notes_format():
    notes = build_notes(_make_position(), Decimal("25000"), None)
    assert notes == (
        "NAS100 | Buy 0.19 Market | Entry: 25105.50 | Exit: 25112.20 | SL: 25000.00 | TP: N/A"
        " | Fee: $0.00 | Swap: $0.00 | Order: P-1-close | Position: P-1"
    )


# ---------------------------------------------------------------------------
# Sequencing
# ---------------------------------------------------------------------------

def test_balances_chain_oldest_first():
    positions = [
        _make_position("B", pnl="-20.00", exit_at_ms=BASE_MS + 2),
        _make_position("A", pnl="50.00", exit_at_ms=BASE_MS + 1),
    ]

    records = sequence_records(positions, Decimal("1000"), SETTINGS)

    assert [r.external_trade_id for r in records] == ["A", "B"]
    assert records[0].open_balance == Decimal("1000.00")
    assert records[0].close_balance == Decimal("1050.00")
    assert records[1].open_balance == Decimal("1050.00")
    assert records[1].close_balance == Decimal("1030.00")


def test_unprojectable_position_is_skipped_without_breaking_the_chain():
    positions = [
        _make_position("A", pnl="50.00", exit_at_ms=BASE_MS + 1),
        # year far beyond what datetime can hold
        _make_position("B", pnl="10.00", exit_at_ms=10**17),
        _make_position("C", pnl="-20.00", exit_at_ms=BASE_MS + 2),
    ]

    records = sequence_records(positions, Decimal("1000"), SETTINGS)

    assert [r.external_trade_id for r in records] == ["A", "C"]
    assert records[1].open_balance == Decimal("1050.00")
    assert records[1].close_balance == Decimal("1030.00")


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def test_record_trades_counts_outcomes():
    records = sequence_records(
        [_make_position("A"), _make_position("B"), _make_position("C"), _make_position("D")],
        Decimal("1000"),
        SETTINGS,
    )
    store = MagicMock()
    store.upsert_trade.side_effect = [True, False, DuplicateTradeError("dup"), PersistenceError("disk full")]

    outcome = record_trades(store, "ACC-1", records)

    assert (outcome.created, outcome.skipped, outcome.failed) == (1, 2, 1)
    assert store.upsert_trade.call_count == 4


def test_record_trades_continues_after_failure():
    records = sequence_records([_make_position("A"), _make_position("B")], Decimal("1000"), SETTINGS)
    store = MagicMock()
    store.upsert_trade.side_effect = [PersistenceError("boom"), True]

    outcome = record_trades(store, "ACC-1", records)

    assert outcome.created == 1
    assert outcome.failed == 1
