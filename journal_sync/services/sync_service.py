"""
Sync orchestrator: one incremental import of closed broker positions.

Pipeline for a single account (strictly sequential):

    1. window     initial -> no lower bound; refresh -> close time of the
                  latest persisted trade (no buffer, dedup is the safety net)
    2. fetch      order history from the broker (429 retried once)
    3. reconcile  normalize, group, pair fills, price with live FX
    4. re-filter  refresh mode drops positions closed before the bound
    5. cap        initial or first-ever sync keeps the newest N positions
    6. dedup      drop positions whose positionId or closingOrderId is known
    7. sequence   running balance from the current ledger balance
    8. persist    insert rows; the checkpoint advances only if none failed

Nothing is written before step 8 except refreshed tokens. Callers must not
run two syncs for the same account at once.
"""
from datetime import datetime, timezone
from typing import AbstractSet, Callable, Iterable, List, Optional

import structlog

from journal_sync.config.config import SyncConfig
from journal_sync.data.instrument_catalog import InstrumentCatalog, build_fx_rate_table
from journal_sync.data.order_normalizer import normalize_orders
from journal_sync.domain.models import (
    BrokerAccount,
    FXRateTable,
    JournalSettings,
    Position,
    SyncMode,
    SyncResult,
    SyncState,
    datetime_to_ms,
)
from journal_sync.exceptions import APIError, TradeSyncError
from journal_sync.monitoring.logger import get_logger
from journal_sync.reconciliation.reconciler import PositionReconciler
from journal_sync.recording.trade_recorder import record_trades, sequence_records
from journal_sync.services.token_manager import TokenLifecycleManager

logger = get_logger(__name__)


def refilter_window(positions: Iterable[Position], lower_bound_ms: Optional[int]) -> List[Position]:
    """Drop positions that closed before lower_bound_ms. No bound keeps everything."""
    if lower_bound_ms is None:
        return list(positions)
    return [p for p in positions if p.exit_at_ms is not None and p.exit_at_ms >= lower_bound_ms]


def cap_most_recent(positions: List[Position], limit: int) -> List[Position]:
    """Keep the `limit` most recent positions by exit time, oldest first."""
    ordered = sorted(positions, key=lambda p: p.exit_at_ms or 0)
    if len(ordered) <= limit:
        return ordered
    return ordered[-limit:]


def drop_known(positions: Iterable[Position], existing_ids: AbstractSet[str]) -> List[Position]:
    """Drop positions already imported under their position id or closing order id."""
    fresh = []
    for p in positions:
        if p.position_id in existing_ids:
            continue
        if p.closing_order_id and p.closing_order_id in existing_ids:
            continue
        fresh.append(p)
    return fresh


class SyncOrchestrator:
    """
    Runs sync passes for broker accounts.

    Args:
        client: BrokerAPI implementation (bound to the account's environment)
        store: TradeStore implementation
        token_manager: TokenLifecycleManager for the same client/store
        config: SyncConfig (limits, journal defaults, FX pairs)
        clock: injectable "now" for tests
    """

    def __init__(
        self,
        client,
        store,
        token_manager: TokenLifecycleManager,
        config: Optional[SyncConfig] = None,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.client = client
        self.store = store
        self.token_manager = token_manager
        self.config = config or SyncConfig()
        self._clock = clock

    def _settings(self, account_id: str) -> JournalSettings:
        settings = self.store.get_settings(account_id)
        if settings is not None:
            return settings
        return JournalSettings(
            starting_balance=self.config.default_starting_balance,
            risk_percent=self.config.default_risk_percent,
            risk_reward=self.config.default_risk_reward,
        )

    def _load_catalog(self, access_token: str, account: BrokerAccount) -> InstrumentCatalog:
        try:
            payload = self.client.get_instruments(access_token, account.account_id, account.acc_num)
        except APIError as e:
            logger.warning("INSTRUMENTS_UNAVAILABLE", error=str(e), status_code=e.status_code)
            return InstrumentCatalog()
        catalog = InstrumentCatalog.from_payload(payload)
        logger.info("INSTRUMENTS_LOADED", count=len(catalog))
        return catalog

    def _load_fx_rates(self, access_token: str, account: BrokerAccount, catalog: InstrumentCatalog) -> FXRateTable:
        return build_fx_rate_table(
            self.client,
            access_token,
            account.acc_num,
            catalog,
            self.config.fx_pairs,
            self.config.spread_symbols,
        )

    def _read_state(self, account: BrokerAccount) -> SyncState:
        last = self.store.read_last_synced_trade(account.account_id)
        return SyncState(
            last_synced_at_ms=datetime_to_ms(account.last_synced_at),
            last_trade_closed_at_ms=last.closed_at_ms if last else None,
            external_ids=frozenset(self.store.read_existing_external_ids(account.account_id)),
        )

    def _account_balance(self, access_token: str, account: BrokerAccount):
        # Informational only; never overwrites the journal's starting balance
        try:
            for summary in self.client.list_accounts(access_token):
                if summary.account_id == account.account_id:
                    return summary.balance
        except APIError as e:
            logger.debug("ACCOUNT_BALANCE_UNAVAILABLE", error=str(e))
        return None

    def run(self, account: BrokerAccount, mode: SyncMode = SyncMode.REFRESH) -> SyncResult:
        """
        Run one sync pass.

        Raises:
            CredentialError: stale or missing credentials (reconnect required)
            OperationalError: broker failure; nothing was persisted
        """
        mode = SyncMode(mode)
        structlog.contextvars.bind_contextvars(account_id=account.account_id, sync_mode=mode.value)
        try:
            return self._run(account, mode)
        except TradeSyncError as e:
            logger.error("SYNC_FAILED", error_type=type(e).__name__, error=str(e))
            raise
        finally:
            structlog.contextvars.unbind_contextvars("account_id", "sync_mode")

    def _run(self, account: BrokerAccount, mode: SyncMode) -> SyncResult:
        account_id = account.account_id
        result = SyncResult(mode=mode)
        logger.info("SYNC_START")

        settings = self._settings(account_id)
        access_token = self.token_manager.get_valid_access_token(account)

        # 1. window
        state = self._read_state(account)
        lower_bound_ms = state.last_trade_closed_at_ms if mode is SyncMode.REFRESH else None
        logger.info(
            "SYNC_WINDOW",
            lower_bound_ms=lower_bound_ms,
            last_synced_at_ms=state.last_synced_at_ms,
            known_trades=len(state.external_ids),
        )

        # 2. fetch
        raw_orders = self.client.get_orders_history(
            access_token, account_id, account.acc_num, start_time_ms=lower_bound_ms
        )
        result.raw_orders = len(raw_orders)

        # 3. reconcile
        orders = normalize_orders(raw_orders)
        catalog = self._load_catalog(access_token, account)
        fx_rates = self._load_fx_rates(access_token, account, catalog)
        positions = PositionReconciler(catalog, fx_rates).reconcile(orders)

        # 4. re-filter
        if mode is SyncMode.REFRESH:
            positions = refilter_window(positions, lower_bound_ms)
        result.positions_in_window = len(positions)

        # 5. cap
        if mode is SyncMode.INITIAL or state.is_first_sync:
            before = len(positions)
            positions = cap_most_recent(positions, self.config.initial_sync_limit)
            if len(positions) < before:
                logger.info("SYNC_CAPPED", kept=len(positions), discarded=before - len(positions))

        # 6. dedup
        fresh = drop_known(positions, state.external_ids)
        result.skipped = len(positions) - len(fresh)

        # 7. sequence
        opening_balance = self.store.read_ledger_balance(account_id, settings.starting_balance)
        records = sequence_records(fresh, opening_balance, settings, now=self._clock())
        result.records = records

        # 8. persist
        outcome = record_trades(self.store, account_id, records)
        result.created = outcome.created
        result.skipped += outcome.skipped
        result.failed = outcome.failed

        if outcome.failed == 0:
            synced_at = self._clock()
            self.store.commit_sync_checkpoint(account_id, synced_at)
            account.last_synced_at = synced_at
            result.last_synced_at = synced_at
            result.checkpoint_advanced = True
        else:
            result.last_synced_at = account.last_synced_at
            logger.warning("SYNC_CHECKPOINT_HELD", failed=outcome.failed)

        result.account_balance = self._account_balance(access_token, account)
        logger.info(
            "SYNC_COMPLETE",
            created=result.created,
            skipped=result.skipped,
            failed=result.failed,
            positions_in_window=result.positions_in_window,
            raw_orders=result.raw_orders,
            checkpoint_advanced=result.checkpoint_advanced,
        )
        return result
