"""
Domain protocols (interfaces) for dependency inversion.

The sync engine depends on these contracts rather than on the concrete
SQLAlchemy repository or the requests-based broker client, so tests can
substitute in-memory fakes.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Set, runtime_checkable

from journal_sync.domain.models import (
    AccessToken,
    AccountSummary,
    JournalSettings,
    LastSyncedTrade,
    TradeRecord,
)


@runtime_checkable
class TradeStore(Protocol):
    """
    Persistence contract for the journal.

    Implemented by journal_sync.storage.repository.JournalRepository.
    """

    def read_last_synced_trade(self, account_id: str) -> Optional[LastSyncedTrade]: ...

    def read_existing_external_ids(self, account_id: str) -> Set[str]: ...

    def read_ledger_balance(self, account_id: str, default: Decimal) -> Decimal: ...

    def get_settings(self, account_id: str) -> Optional[JournalSettings]: ...

    def upsert_trade(self, account_id: str, record: TradeRecord) -> bool:
        """Insert keyed by (account_id, external_trade_id). Returns False if the key existed."""
        ...

    def commit_sync_checkpoint(self, account_id: str, synced_at: datetime) -> None: ...

    def save_tokens(
        self,
        account_id: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: Optional[str],
    ) -> None: ...


@runtime_checkable
class BrokerAPI(Protocol):
    """
    Broker REST contract.

    Implemented by journal_sync.data.tradelocker_client.TradeLockerClient.
    """

    def authenticate(self, email: str, password: str, server: str) -> AccessToken: ...

    def refresh(self, refresh_token: str) -> AccessToken: ...

    def list_accounts(self, access_token: str) -> List[AccountSummary]: ...

    def get_orders_history(
        self,
        access_token: str,
        account_id: str,
        acc_num: int,
        start_time_ms: Optional[int] = None,
    ) -> List[Any]: ...

    def get_instruments(self, access_token: str, account_id: str, acc_num: int) -> List[Dict[str, Any]]: ...

    def get_quote(
        self,
        access_token: str,
        instrument_id: str,
        route_id: str,
        acc_num: int,
    ) -> Optional[Dict[str, Decimal]]: ...


__all__ = ["TradeStore", "BrokerAPI"]
