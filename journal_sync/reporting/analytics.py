"""
Journal analytics over persisted trades.

Pure functions: running balances, cumulative P&L, a daily P&L calendar, the
equity curve, win/loss stats and a compounding growth projection.
Trades are ordered by close date; equal dates keep the caller's order
(repository order, i.e. insertion order).
"""
import calendar
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from journal_sync.domain.models import TradeRecord
from journal_sync.reconciliation.pnl import round2

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def _chronological(trades: Iterable[TradeRecord]) -> List[TradeRecord]:
    return sorted(trades, key=lambda t: t.date)


def recalculate_balances(trades: Iterable[TradeRecord], starting_balance: Decimal) -> List[TradeRecord]:
    """Re-derive open/close balances chronologically from starting_balance."""
    balance = Decimal(starting_balance)
    out = []
    for trade in _chronological(trades):
        open_balance = balance
        balance = open_balance + trade.pnl
        out.append(replace(trade, open_balance=round2(open_balance), close_balance=round2(balance)))
    return out


def cumulative_pnl(trades: Iterable[TradeRecord]) -> List[Tuple[datetime, Decimal]]:
    """(close date, running P&L total) per trade."""
    total = ZERO
    points = []
    for trade in _chronological(trades):
        total += trade.pnl
        points.append((trade.date, round2(total)))
    return points


@dataclass(frozen=True)
class DayPnL:
    pnl: Decimal
    trades: int


def daily_pnl_calendar(trades: Iterable[TradeRecord]) -> Dict[date, DayPnL]:
    """Calendar day (UTC) -> total P&L and trade count."""
    days: Dict[date, DayPnL] = {}
    for trade in trades:
        day = trade.date.astimezone(timezone.utc).date() if trade.date.tzinfo else trade.date.date()
        prev = days.get(day, DayPnL(ZERO, 0))
        days[day] = DayPnL(round2(prev.pnl + trade.pnl), prev.trades + 1)
    return dict(sorted(days.items()))


def equity_curve(trades: Iterable[TradeRecord], starting_balance: Decimal) -> List[Tuple[Optional[datetime], Decimal]]:
    """Starting point followed by the close balance after each trade."""
    curve: List[Tuple[Optional[datetime], Decimal]] = [(None, round2(Decimal(starting_balance)))]
    for trade in recalculate_balances(trades, starting_balance):
        curve.append((trade.date, trade.close_balance))
    return curve


@dataclass(frozen=True)
class TradeStats:
    win_rate: Decimal  # percent, 1 dp
    total_trades: int
    wins: int
    losses: int
    avg_win: Decimal
    avg_loss: Decimal
    current_balance: Decimal


def trade_stats(trades: Iterable[TradeRecord], starting_balance: Decimal) -> TradeStats:
    """Win/loss statistics. With no trades the win rate defaults to 50%."""
    ordered = _chronological(trades)
    if not ordered:
        return TradeStats(Decimal("50"), 0, 0, 0, ZERO, ZERO, round2(Decimal(starting_balance)))

    wins = [t.pnl for t in ordered if t.pnl > 0]
    losses = [t.pnl for t in ordered if t.pnl < 0]
    win_rate = Decimal(len(wins)) / Decimal(len(ordered)) * HUNDRED
    return TradeStats(
        win_rate=win_rate.quantize(Decimal("0.1")),
        total_trades=len(ordered),
        wins=len(wins),
        losses=len(losses),
        avg_win=round2(sum(wins, ZERO) / len(wins)) if wins else ZERO,
        avg_loss=round2(sum(losses, ZERO) / len(losses)) if losses else ZERO,
        current_balance=round2(ordered[-1].close_balance),
    )


@dataclass(frozen=True)
class MonthProjection:
    month: str  # "Jan 2026"
    is_current_month: bool
    start_balance: Decimal
    end_balance: Decimal
    return_amount: Decimal
    return_percent: Decimal
    trades: int


def _add_months(d: date, n: int) -> date:
    month_index = d.month - 1 + n
    return date(d.year + month_index // 12, month_index % 12 + 1, 1)


def project_growth(
    stats: TradeStats,
    risk_percent: Decimal,
    risk_reward: Decimal,
    trades_per_month: int = 20,
    months: int = 6,
    today: Optional[date] = None,
) -> List[MonthProjection]:
    """
    Compounding projection from the current balance.

    Each simulated trade adds balance * risk% * (win_rate * (RR + 1) - 1).
    The current month is pro-rated by days elapsed; the result covers the
    current month plus `months` more.
    """
    today = today or datetime.now(timezone.utc).date()
    win_rate = stats.win_rate / HUNDRED
    risk = Decimal(risk_percent) / HUNDRED
    edge = win_rate * (Decimal(risk_reward) + 1) - 1

    balance = stats.current_balance
    month_start = today.replace(day=1)
    projections = []
    for index in range(months + 1):
        month = _add_months(month_start, index)
        if index == 0:
            days_in_month = calendar.monthrange(today.year, today.month)[1]
            n_trades = int(Decimal(trades_per_month) * Decimal(today.day) / Decimal(days_in_month))
        else:
            n_trades = trades_per_month

        start_balance = balance
        running = balance
        for _ in range(n_trades):
            running += running * risk * edge
        end_balance = round2(running)
        ret = end_balance - start_balance
        projections.append(
            MonthProjection(
                month=month.strftime("%b %Y"),
                is_current_month=index == 0,
                start_balance=round2(start_balance),
                end_balance=end_balance,
                return_amount=round2(ret),
                return_percent=round2(ret / start_balance * HUNDRED) if start_balance > 0 else ZERO,
                trades=n_trades,
            )
        )
        balance = end_balance
    return projections
