"""
Persistence for the trading journal.

ORM models plus JournalRepository, the SQLAlchemy implementation of the
TradeStore protocol the sync engine writes through.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Set

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from journal_sync.domain.models import (
    BrokerAccount,
    JournalSettings,
    LastSyncedTrade,
    Side,
    TradeRecord,
    datetime_to_ms,
)
from journal_sync.exceptions import PersistenceError
from journal_sync.monitoring.logger import get_logger
from journal_sync.storage.db import Base, Database

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; stored values are always UTC
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# ORM Models
class TradeModel(Base):
    """ORM model for journal trades (manual or broker-imported)."""
    __tablename__ = "trades"
    __table_args__ = (
        # Dedup key for broker imports
        UniqueConstraint("account_id", "external_trade_id", name="uq_trade_external_id"),
        Index("idx_trade_account_date", "account_id", "date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False)
    external_trade_id = Column(String, nullable=True)

    date = Column(DateTime(timezone=True), nullable=False)
    day = Column(String(3), nullable=False)
    symbol = Column(String, nullable=True)
    side = Column(String, nullable=True)
    quantity = Column(Numeric(precision=20, scale=8), nullable=True)
    entry_price = Column(Numeric(precision=20, scale=8), nullable=True)
    exit_price = Column(Numeric(precision=20, scale=8), nullable=True)
    stop_loss = Column(Numeric(precision=20, scale=5), nullable=True)
    take_profit = Column(Numeric(precision=20, scale=5), nullable=True)

    pnl = Column(Numeric(precision=20, scale=2), nullable=False)
    open_balance = Column(Numeric(precision=20, scale=2), nullable=False)
    close_balance = Column(Numeric(precision=20, scale=2), nullable=False)
    percent_gain = Column(Numeric(precision=20, scale=2), nullable=False)
    risk_dollar = Column(Numeric(precision=20, scale=2), nullable=False)
    target_dollar = Column(Numeric(precision=20, scale=2), nullable=False)
    rr_achieved = Column(Numeric(precision=20, scale=2), nullable=False)
    target_hit = Column(Boolean, nullable=False, default=False)
    result = Column(String, nullable=False)
    notes = Column(Text, nullable=True)

    position_id = Column(String, nullable=True)
    closing_order_id = Column(String, nullable=True)
    instrument_id = Column(String, nullable=True)
    closed_at_ms = Column(BigInteger, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class BrokerAccountModel(Base):
    """ORM model for a connected broker account and its token state."""
    __tablename__ = "broker_accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False, unique=True)
    acc_num = Column(Integer, nullable=False)
    email = Column(String, nullable=False)
    encrypted_password = Column(Text, nullable=False)
    server = Column(String, nullable=False)
    environment = Column(String, nullable=False, default="live")
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    is_connected = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class JournalSettingsModel(Base):
    """ORM model for per-account journal settings."""
    __tablename__ = "journal_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False, unique=True)
    starting_balance = Column(Numeric(precision=20, scale=2), nullable=False)
    risk_percent = Column(Numeric(precision=10, scale=4), nullable=False)
    risk_reward = Column(Numeric(precision=10, scale=4), nullable=False)


def _trade_from_model(m: TradeModel) -> TradeRecord:
    return TradeRecord(
        external_trade_id=m.external_trade_id or "",
        date=_as_utc(m.date),
        day=m.day,
        pnl=Decimal(m.pnl),
        open_balance=Decimal(m.open_balance),
        close_balance=Decimal(m.close_balance),
        percent_gain=Decimal(m.percent_gain),
        risk_dollar=Decimal(m.risk_dollar),
        target_dollar=Decimal(m.target_dollar),
        rr_achieved=Decimal(m.rr_achieved),
        target_hit=bool(m.target_hit),
        result=m.result,
        notes=m.notes or "",
        position_id=m.position_id or "",
        closing_order_id=m.closing_order_id or "",
        instrument_id=m.instrument_id or "",
        symbol=m.symbol or "",
        side=Side(m.side) if m.side else None,
        quantity=m.quantity,
        entry_price=m.entry_price,
        exit_price=m.exit_price,
        stop_loss=m.stop_loss,
        take_profit=m.take_profit,
        closed_at_ms=m.closed_at_ms,
    )


def _model_from_trade(account_id: str, record: TradeRecord) -> TradeModel:
    return TradeModel(
        account_id=account_id,
        external_trade_id=record.external_trade_id or None,
        date=record.date,
        day=record.day,
        symbol=record.symbol or None,
        side=record.side.value if record.side else None,
        quantity=record.quantity,
        entry_price=record.entry_price,
        exit_price=record.exit_price,
        stop_loss=record.stop_loss,
        take_profit=record.take_profit,
        pnl=record.pnl,
        open_balance=record.open_balance,
        close_balance=record.close_balance,
        percent_gain=record.percent_gain,
        risk_dollar=record.risk_dollar,
        target_dollar=record.target_dollar,
        rr_achieved=record.rr_achieved,
        target_hit=record.target_hit,
        result=record.result,
        notes=record.notes,
        position_id=record.position_id or None,
        closing_order_id=record.closing_order_id or None,
        instrument_id=record.instrument_id or None,
        closed_at_ms=record.closed_at_ms,
    )


def _account_from_model(m: BrokerAccountModel) -> BrokerAccount:
    return BrokerAccount(
        account_id=m.account_id,
        acc_num=m.acc_num,
        email=m.email,
        encrypted_password=m.encrypted_password,
        server=m.server,
        environment=m.environment,
        access_token=m.access_token,
        refresh_token=m.refresh_token,
        token_expires_at=_as_utc(m.token_expires_at),
        last_synced_at=_as_utc(m.last_synced_at),
        is_connected=bool(m.is_connected),
    )


class JournalRepository:
    """
    SQLAlchemy-backed journal store.

    Every method opens its own session; a method either fully commits or
    leaves the database untouched.
    """

    def __init__(self, db: Database):
        self.db = db

    # ---------------------------------------------------------------- trades

    def read_last_synced_trade(self, account_id: str) -> Optional[LastSyncedTrade]:
        """Close time of the latest broker-imported trade, if any."""
        with self.db.get_session() as session:
            latest = (
                session.query(func.max(TradeModel.date))
                .filter(TradeModel.account_id == account_id, TradeModel.external_trade_id.isnot(None))
                .scalar()
            )
        if latest is None:
            return None
        return LastSyncedTrade(closed_at_ms=datetime_to_ms(_as_utc(latest)))

    def read_existing_external_ids(self, account_id: str) -> Set[str]:
        with self.db.get_session() as session:
            rows = (
                session.query(TradeModel.external_trade_id)
                .filter(TradeModel.account_id == account_id, TradeModel.external_trade_id.isnot(None))
                .all()
            )
        return {row[0] for row in rows}

    def read_ledger_balance(self, account_id: str, default: Decimal) -> Decimal:
        """Close balance of the most recent trade, else default."""
        with self.db.get_session() as session:
            latest = (
                session.query(TradeModel.close_balance)
                .filter(TradeModel.account_id == account_id)
                .order_by(TradeModel.date.desc(), TradeModel.id.desc())
                .first()
            )
        if latest is None:
            return default
        return Decimal(latest[0])

    def upsert_trade(self, account_id: str, record: TradeRecord) -> bool:
        """
        Insert a trade keyed by (account_id, external_trade_id).

        Returns:
            True if inserted, False if the key already existed

        Raises:
            PersistenceError: any storage failure other than a duplicate key
        """
        try:
            with self.db.get_session() as session:
                if record.external_trade_id:
                    existing = (
                        session.query(TradeModel.id)
                        .filter(
                            TradeModel.account_id == account_id,
                            TradeModel.external_trade_id == record.external_trade_id,
                        )
                        .first()
                    )
                    if existing is not None:
                        return False
                session.add(_model_from_trade(account_id, record))
        except IntegrityError:
            # Lost a race with another writer; the row is there
            logger.warning(
                "TRADE_DUPLICATE_ON_INSERT",
                account_id=account_id,
                external_trade_id=record.external_trade_id,
            )
            return False
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to insert trade {record.external_trade_id}: {e}") from e
        return True

    def list_trades(self, account_id: str) -> List[TradeRecord]:
        """All trades for the account, chronological (ties by insertion order)."""
        with self.db.get_session() as session:
            models = (
                session.query(TradeModel)
                .filter(TradeModel.account_id == account_id)
                .order_by(TradeModel.date.asc(), TradeModel.id.asc())
                .all()
            )
            return [_trade_from_model(m) for m in models]

    # -------------------------------------------------------------- settings

    def get_settings(self, account_id: str) -> Optional[JournalSettings]:
        with self.db.get_session() as session:
            m = session.query(JournalSettingsModel).filter_by(account_id=account_id).first()
            if m is None:
                return None
            return JournalSettings(
                starting_balance=Decimal(m.starting_balance),
                risk_percent=Decimal(m.risk_percent),
                risk_reward=Decimal(m.risk_reward),
            )

    def save_settings(self, account_id: str, settings: JournalSettings) -> None:
        with self.db.get_session() as session:
            m = session.query(JournalSettingsModel).filter_by(account_id=account_id).first()
            if m is None:
                m = JournalSettingsModel(account_id=account_id)
                session.add(m)
            m.starting_balance = settings.starting_balance
            m.risk_percent = settings.risk_percent
            m.risk_reward = settings.risk_reward

    # -------------------------------------------------------------- accounts

    def save_account(self, account: BrokerAccount) -> None:
        """Insert or update a broker account by account_id."""
        with self.db.get_session() as session:
            m = session.query(BrokerAccountModel).filter_by(account_id=account.account_id).first()
            if m is None:
                m = BrokerAccountModel(account_id=account.account_id)
                session.add(m)
            m.acc_num = account.acc_num
            m.email = account.email
            m.encrypted_password = account.encrypted_password
            m.server = account.server
            m.environment = account.environment
            m.access_token = account.access_token
            m.refresh_token = account.refresh_token
            m.token_expires_at = account.token_expires_at
            m.last_synced_at = account.last_synced_at
            m.is_connected = account.is_connected
        logger.info("BROKER_ACCOUNT_SAVED", account_id=account.account_id, environment=account.environment)

    def get_account(self, account_id: Optional[str] = None) -> Optional[BrokerAccount]:
        """A connected account by id, or the most recently connected one."""
        with self.db.get_session() as session:
            query = session.query(BrokerAccountModel).filter(BrokerAccountModel.is_connected.is_(True))
            if account_id is not None:
                query = query.filter(BrokerAccountModel.account_id == account_id)
            m = query.order_by(BrokerAccountModel.id.desc()).first()
            return _account_from_model(m) if m else None

    def disconnect_account(self, account_id: str) -> bool:
        """Mark disconnected and forget credentials and tokens. Trades are kept."""
        with self.db.get_session() as session:
            m = session.query(BrokerAccountModel).filter_by(account_id=account_id).first()
            if m is None:
                return False
            m.is_connected = False
            m.encrypted_password = ""
            m.access_token = None
            m.refresh_token = None
            m.token_expires_at = None
        logger.info("BROKER_ACCOUNT_DISCONNECTED", account_id=account_id)
        return True

    def save_tokens(
        self,
        account_id: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: Optional[str],
    ) -> None:
        with self.db.get_session() as session:
            m = session.query(BrokerAccountModel).filter_by(account_id=account_id).first()
            if m is None:
                logger.warning("TOKEN_SAVE_NO_ACCOUNT", account_id=account_id)
                return
            m.access_token = access_token
            m.token_expires_at = expires_at
            if refresh_token is not None:
                m.refresh_token = refresh_token

    def commit_sync_checkpoint(self, account_id: str, synced_at: datetime) -> None:
        with self.db.get_session() as session:
            m = session.query(BrokerAccountModel).filter_by(account_id=account_id).first()
            if m is None:
                logger.warning("SYNC_CHECKPOINT_NO_ACCOUNT", account_id=account_id)
                return
            m.last_synced_at = synced_at
        logger.info("SYNC_CHECKPOINT_COMMITTED", account_id=account_id, last_synced_at=synced_at.isoformat())
