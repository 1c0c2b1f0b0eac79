"""
Trade recorder: projects reconciled positions into journal rows and
persists them.

Design decisions:
- external_trade_id is the position id, falling back to the closing order id.
- Risk metrics use the journal settings of the account:
  risk_dollar = open_balance * risk% / 100, target = risk_dollar * RR.
- Money fields are rounded to cents, SL/TP to 5 dp, None when unset.
- The row date is the exit time, falling back to entry time, then now().
- Idempotent: a duplicate key is counted as skipped, never as a failure.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from journal_sync.domain.models import JournalSettings, Position, Side, TradeRecord
from journal_sync.exceptions import DuplicateTradeError, PersistenceError
from journal_sync.monitoring.logger import get_logger
from journal_sync.reconciliation.pnl import round2

logger = get_logger(__name__)

LEVEL_QUANT = Decimal("0.00001")
RESULT_TARGET = "Target Achieved"
RESULT_WIN = "Win"
RESULT_LOSS = "Loss"
RESULT_BREAKEVEN = "Breakeven"

_DAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------

def _round_level(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None or value <= 0:
        return None
    return value.quantize(LEVEL_QUANT, rounding=ROUND_HALF_UP)


def _fmt_qty(value: Optional[Decimal]) -> str:
    if value is None:
        return "0"
    return format(value.normalize(), "f")


def _fmt_price(value: Decimal) -> str:
    return f"{round2(value):.2f}"


def classify_result(pnl: Decimal, target_hit: bool) -> str:
    if target_hit and pnl > 0:
        return RESULT_TARGET
    if pnl > 0:
        return RESULT_WIN
    if pnl < 0:
        return RESULT_LOSS
    return RESULT_BREAKEVEN


def build_notes(position: Position, stop_loss: Optional[Decimal], take_profit: Optional[Decimal]) -> str:
    """Pipe-joined human summary of the trade."""
    parts: List[str] = []
    if position.symbol:
        parts.append(position.symbol)
    elif position.instrument_id:
        parts.append(f"Instrument {position.instrument_id}")

    side = {Side.BUY: "Buy", Side.SELL: "Sell"}.get(position.side, "")
    if side:
        kind = (position.order_kind or "").capitalize()
        parts.append(" ".join(p for p in (side, _fmt_qty(position.quantity), kind) if p))

    if position.entry_price and position.exit_price and position.entry_price > 0 and position.exit_price > 0:
        parts.append(f"Entry: {_fmt_price(position.entry_price)}")
        parts.append(f"Exit: {_fmt_price(position.exit_price)}")

    parts.append(f"SL: {_fmt_price(stop_loss)}" if stop_loss else "SL: N/A")
    parts.append(f"TP: {_fmt_price(take_profit)}" if take_profit else "TP: N/A")
    # Not reported by the order feed
    parts.append("Fee: $0.00")
    parts.append("Swap: $0.00")

    if position.closing_order_id:
        parts.append(f"Order: {position.closing_order_id}")
    if position.position_id:
        parts.append(f"Position: {position.position_id}")
    return " | ".join(parts) if parts else "Broker trade"


def build_trade_record(
    position: Position,
    open_balance: Decimal,
    settings: JournalSettings,
    now: Optional[datetime] = None,
) -> TradeRecord:
    """Project one position into a journal row, given its opening balance."""
    pnl = round2(position.gross_pnl)
    risk_dollar = open_balance * settings.risk_percent / Decimal("100")
    target_dollar = risk_dollar * settings.risk_reward
    percent_gain = pnl / open_balance * Decimal("100") if open_balance > 0 else Decimal("0")
    rr_achieved = pnl / risk_dollar if risk_dollar > 0 else Decimal("0")
    target_hit = pnl >= target_dollar
    close_balance = open_balance + pnl

    date = position.exit_at or position.entry_at
    if date is None:
        date = now or datetime.now(timezone.utc)
        logger.warning("TRADE_DATE_FALLBACK_NOW", position_id=position.position_id)

    stop_loss = _round_level(position.stop_loss)
    take_profit = _round_level(position.take_profit)

    return TradeRecord(
        external_trade_id=position.external_id,
        date=date,
        day=_DAY_NAMES[date.weekday()],
        pnl=pnl,
        open_balance=round2(open_balance),
        close_balance=round2(close_balance),
        percent_gain=round2(percent_gain),
        risk_dollar=round2(risk_dollar),
        target_dollar=round2(target_dollar),
        rr_achieved=round2(rr_achieved),
        target_hit=target_hit,
        result=classify_result(pnl, target_hit),
        notes=build_notes(position, stop_loss, take_profit),
        position_id=position.position_id,
        closing_order_id=position.closing_order_id,
        instrument_id=position.instrument_id,
        symbol=position.symbol,
        side=position.side,
        quantity=position.quantity,
        entry_price=position.entry_price,
        exit_price=position.exit_price,
        stop_loss=stop_loss,
        take_profit=take_profit,
        closed_at_ms=position.exit_at_ms,
    )


def sequence_records(
    positions: Iterable[Position],
    starting_balance: Decimal,
    settings: JournalSettings,
    now: Optional[datetime] = None,
) -> List[TradeRecord]:
    """
    Build records oldest-first, carrying a running balance.

    Each record opens at the previous record's close balance; the first opens
    at starting_balance. A position that cannot be projected is dropped and
    leaves the balance untouched.
    """
    records = []
    balance = starting_balance
    for position in sorted(positions, key=lambda p: p.exit_at_ms or 0):
        try:
            record = build_trade_record(position, balance, settings, now=now)
        except (ArithmeticError, ValueError, OverflowError) as e:
            logger.warning(
                "TRADE_PROJECTION_FAILED",
                position_id=position.position_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            continue
        records.append(record)
        balance = record.close_balance
    return records


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

@dataclass
class RecordOutcome:
    created: int = 0
    skipped: int = 0
    failed: int = 0


def record_trades(store, account_id: str, records: Iterable[TradeRecord]) -> RecordOutcome:
    """
    Persist records through store.upsert_trade.

    Duplicates are swallowed as an expected race with dedup. Other storage
    failures are logged and counted; remaining rows are still attempted.
    """
    outcome = RecordOutcome()
    for record in records:
        try:
            inserted = store.upsert_trade(account_id, record)
        except DuplicateTradeError:
            inserted = False
        except PersistenceError as e:
            outcome.failed += 1
            logger.error(
                "TRADE_RECORD_FAILURE",
                account_id=account_id,
                external_trade_id=record.external_trade_id,
                error=str(e),
            )
            continue

        if inserted:
            outcome.created += 1
        else:
            outcome.skipped += 1
            logger.warning(
                "TRADE_ALREADY_RECORDED",
                account_id=account_id,
                external_trade_id=record.external_trade_id,
            )
    return outcome
