"""
Position reconciliation: raw broker orders -> closed round trips.

Orders are grouped by positionId. A group becomes a Position only when it
holds both a filled opening order and a filled closing order.
- Several opening fills: the earliest-created wins.
- Several closing fills: the latest-created wins.
Equal creation times keep broker order. This pairing is a policy observed
from the broker, not a documented guarantee.

SL/TP come from the opening order's stopLoss/takeProfit fields. When those are
absent the broker has usually encoded them as bracket orders on the same
position: opposite side, cancelled/pending, GTC. A stop bracket carries the
SL level and a limit bracket the TP level, both in the trigger price.

Pure: malformed groups are dropped, nothing here raises.
"""
from collections import OrderedDict
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from journal_sync.data.instrument_catalog import FxRates, InstrumentCatalog, multiplier
from journal_sync.domain.models import OrderKind, OrderStatus, Position, RawOrder
from journal_sync.monitoring.logger import get_logger
from journal_sync.reconciliation.pnl import gross_pnl

logger = get_logger(__name__)

BRACKET_STATUSES = (OrderStatus.CANCELLED.value, OrderStatus.PENDING.value, None)
BRACKET_TIME_IN_FORCE = "GTC"


def group_by_position(orders: Iterable[RawOrder]) -> "OrderedDict[str, List[RawOrder]]":
    """Group orders by position id, keeping first-seen order."""
    groups: "OrderedDict[str, List[RawOrder]]" = OrderedDict()
    for order in orders:
        groups.setdefault(order.position_id, []).append(order)
    return groups


def _created(order: RawOrder) -> int:
    return order.created_at_ms or 0


def pick_round_trip(orders: List[RawOrder]) -> Optional[Tuple[RawOrder, RawOrder]]:
    """(opening, closing) fill for one position group, or None if incomplete."""
    openings = [o for o in orders if o.is_opening]
    closings = [o for o in orders if o.is_closing]
    if not openings or not closings:
        return None
    opening = sorted(openings, key=_created)[0]
    closing = sorted(closings, key=_created, reverse=True)[0]
    return opening, closing


def _positive(value: Optional[Decimal]) -> Optional[Decimal]:
    return value if value is not None and value > 0 else None


def recover_brackets(opening: RawOrder, orders: List[RawOrder]) -> Tuple[Optional[Decimal], Optional[Decimal]]:
    """
    Resolve (stop_loss, take_profit) for a position.

    Dedicated fields on the opening order take precedence; bracket orders only
    fill in a level that is still missing.
    """
    stop_loss = _positive(opening.stop_loss_price)
    take_profit = _positive(opening.take_profit_price)
    if stop_loss is not None and take_profit is not None:
        return stop_loss, take_profit
    if opening.side is None:
        return stop_loss, take_profit

    closing_side = opening.side.opposite
    for order in orders:
        if order.side is not closing_side:
            continue
        if order.status not in BRACKET_STATUSES:
            continue
        if order.time_in_force != BRACKET_TIME_IN_FORCE:
            continue
        price = _positive(order.trigger_price)
        if price is None:
            continue
        if order.order_kind == OrderKind.STOP.value and stop_loss is None:
            stop_loss = price
        elif order.order_kind == OrderKind.LIMIT.value and take_profit is None:
            take_profit = price
    return stop_loss, take_profit


class PositionReconciler:
    """
    Rebuilds closed positions from the order history and prices them.
    """

    def __init__(self, catalog: Optional[InstrumentCatalog] = None, fx_rates: FxRates = None):
        self.catalog = catalog if catalog is not None else InstrumentCatalog()
        self.fx_rates = fx_rates

    def build_position(self, position_id: str, orders: List[RawOrder]) -> Optional[Position]:
        pair = pick_round_trip(orders)
        if pair is None:
            logger.debug("POSITION_INCOMPLETE", position_id=position_id, orders=len(orders))
            return None
        opening, closing = pair

        instrument = self.catalog.get(opening.instrument_id)
        symbol = instrument.symbol if instrument else ""
        instrument_class = self.catalog.classify(opening.instrument_id)
        stop_loss, take_profit = recover_brackets(opening, orders)

        if instrument is not None:
            mult = multiplier(
                symbol,
                self.fx_rates,
                instrument_class=instrument_class,
                instrument_type=instrument.instrument_type,
            )
        else:
            mult = Decimal("1")
            logger.warning(
                "PNL_MULTIPLIER_FALLBACK",
                position_id=position_id,
                instrument_id=opening.instrument_id,
                reason="instrument_not_in_catalog",
            )

        pnl = gross_pnl(opening.side, opening.avg_fill_price, closing.avg_fill_price, opening.quantity, mult)
        if mult != 1:
            logger.debug(
                "PNL_CALCULATED",
                position_id=position_id,
                symbol=symbol,
                multiplier=str(mult),
                gross_pnl=str(pnl),
            )

        return Position(
            position_id=position_id,
            closing_order_id=closing.order_id or "",
            instrument_id=opening.instrument_id or "",
            side=opening.side,
            quantity=opening.quantity,
            entry_price=opening.avg_fill_price,
            exit_price=closing.avg_fill_price,
            entry_at_ms=opening.created_at_ms,
            exit_at_ms=closing.created_at_ms,
            gross_pnl=pnl,
            symbol=symbol,
            instrument_class=instrument_class,
            order_kind=opening.order_kind,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )

    def reconcile(self, orders: Iterable[RawOrder]) -> List[Position]:
        """Closed positions sorted ascending by exit time."""
        groups = group_by_position(orders)
        positions = []
        for position_id, group in groups.items():
            try:
                position = self.build_position(position_id, group)
            except (ArithmeticError, ValueError, OverflowError) as e:
                logger.warning(
                    "POSITION_DROPPED",
                    position_id=position_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                continue
            if position is not None:
                positions.append(position)
        positions.sort(key=lambda p: p.exit_at_ms or 0)
        logger.info("POSITIONS_RECONCILED", groups=len(groups), positions=len(positions))
        return positions


def reconcile(
    orders: Iterable[RawOrder],
    catalog: Optional[InstrumentCatalog] = None,
    fx_rates: FxRates = None,
) -> List[Position]:
    """Convenience wrapper around PositionReconciler."""
    return PositionReconciler(catalog, fx_rates).reconcile(orders)
