"""
CLI entrypoint for the journal sync engine.

Provides commands for init-db, connect, status, disconnect, sync and report.
"""
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Optional

import typer

from journal_sync.config.config import Config, load_config
from journal_sync.config.dotenv_loader import load_dotenv_files
from journal_sync.domain.models import BrokerAccount, JournalSettings, SyncMode
from journal_sync.exceptions import (
    AccountNotConnectedError,
    AuthenticationError,
    CredentialError,
    OperationalError,
)
from journal_sync.monitoring.logger import get_logger, setup_logging
from journal_sync.storage.db import init_db
from journal_sync.storage.repository import JournalRepository

app = typer.Typer(
    name="journal-sync",
    help="Import closed broker positions into the trading journal",
    add_completion=False,
)

logger = get_logger(__name__)

CONFIG_OPTION = typer.Option(None, "--config", help="Path to config file")


def _bootstrap(config_path: Optional[Path]) -> tuple[Config, JournalRepository]:
    load_dotenv_files()
    config = load_config(config_path)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    try:
        db = init_db(config.data.database_url)
    except ValueError as e:
        typer.echo(f"Database error: {e}", err=True)
        raise typer.Exit(1)
    return config, JournalRepository(db)


def _cipher(config: Config):
    from journal_sync.utils.secret_manager import CredentialCipher

    if not config.security.encryption_key:
        typer.echo("ENCRYPTION_KEY is not set; cannot store or read broker credentials.", err=True)
        raise typer.Exit(1)
    return CredentialCipher(config.security.encryption_key)


def _require_account(repo: JournalRepository, account_id: Optional[str]) -> BrokerAccount:
    account = repo.get_account(account_id)
    if account is None:
        typer.echo("No connected broker account. Run `journal-sync connect` first.", err=True)
        raise typer.Exit(1)
    return account


@app.command(name="init-db")
def init_db_cmd(config_path: Optional[Path] = CONFIG_OPTION):
    """Create the journal tables."""
    _bootstrap(config_path)
    typer.echo("Database ready.")


@app.command()
def connect(
    email: str = typer.Option(..., "--email", help="Broker login email"),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True, help="Broker password"),
    server: str = typer.Option(..., "--server", help="Broker server name"),
    environment: str = typer.Option("live", "--environment", help="live or demo"),
    account_id: Optional[str] = typer.Option(None, "--account-id", help="Account to link (default: first)"),
    starting_balance: Optional[float] = typer.Option(None, "--starting-balance", help="Journal starting balance"),
    risk_percent: Optional[float] = typer.Option(None, "--risk-percent", help="Risk per trade, %"),
    risk_reward: Optional[float] = typer.Option(None, "--risk-reward", help="Target risk:reward"),
    config_path: Optional[Path] = CONFIG_OPTION,
):
    """Authenticate with the broker and store the encrypted credential."""
    from journal_sync.data.tradelocker_client import TradeLockerClient

    if environment not in ("live", "demo"):
        typer.echo("--environment must be live or demo", err=True)
        raise typer.Exit(1)

    config, repo = _bootstrap(config_path)
    cipher = _cipher(config)
    client = TradeLockerClient.from_config(config.broker, environment)
    try:
        token = client.authenticate(email, password, server)
        accounts = client.list_accounts(token.access_token)
    except AuthenticationError as e:
        typer.echo(f"Authentication failed: {e}", err=True)
        raise typer.Exit(1)
    except OperationalError as e:
        typer.echo(f"Broker unreachable: {e}", err=True)
        raise typer.Exit(1)
    finally:
        client.close()

    if account_id is not None:
        accounts = [a for a in accounts if a.account_id == account_id]
    if not accounts:
        typer.echo("No matching trading account found for these credentials.", err=True)
        raise typer.Exit(1)
    summary = accounts[0]

    repo.save_account(
        BrokerAccount(
            account_id=summary.account_id,
            acc_num=summary.account_number,
            email=email,
            encrypted_password=cipher.encrypt(password),
            server=server,
            environment=environment,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            token_expires_at=token.expires_at,
        )
    )

    current = repo.get_settings(summary.account_id)
    if current is None or any(v is not None for v in (starting_balance, risk_percent, risk_reward)):
        base = current or JournalSettings(
            starting_balance=config.sync.default_starting_balance,
            risk_percent=config.sync.default_risk_percent,
            risk_reward=config.sync.default_risk_reward,
        )
        repo.save_settings(
            summary.account_id,
            JournalSettings(
                starting_balance=Decimal(str(starting_balance)) if starting_balance is not None else base.starting_balance,
                risk_percent=Decimal(str(risk_percent)) if risk_percent is not None else base.risk_percent,
                risk_reward=Decimal(str(risk_reward)) if risk_reward is not None else base.risk_reward,
            ),
        )

    typer.echo(f"Connected account {summary.account_id} (#{summary.account_number}, {summary.currency}).")


@app.command()
def status(
    account_id: Optional[str] = typer.Option(None, "--account-id"),
    config_path: Optional[Path] = CONFIG_OPTION,
):
    """Show the connected account and sync state."""
    _, repo = _bootstrap(config_path)
    account = _require_account(repo, account_id)
    trades = repo.list_trades(account.account_id)
    typer.echo(f"Account:       {account.account_id} (#{account.acc_num}, {account.environment})")
    typer.echo(f"Server:        {account.server}")
    typer.echo(f"Last synced:   {account.last_synced_at.isoformat() if account.last_synced_at else 'never'}")
    typer.echo(f"Token expires: {account.token_expires_at.isoformat() if account.token_expires_at else 'n/a'}")
    typer.echo(f"Trades:        {len(trades)}")


@app.command()
def disconnect(
    account_id: Optional[str] = typer.Option(None, "--account-id"),
    config_path: Optional[Path] = CONFIG_OPTION,
):
    """Forget stored credentials. Imported trades are kept."""
    _, repo = _bootstrap(config_path)
    account = _require_account(repo, account_id)
    repo.disconnect_account(account.account_id)
    typer.echo(f"Disconnected account {account.account_id}.")


@app.command()
def sync(
    mode: Optional[SyncMode] = typer.Option(None, "--mode", help="initial or refresh"),
    account_id: Optional[str] = typer.Option(None, "--account-id"),
    config_path: Optional[Path] = CONFIG_OPTION,
):
    """Import closed positions from the broker."""
    from journal_sync.data.tradelocker_client import TradeLockerClient
    from journal_sync.services.sync_service import SyncOrchestrator
    from journal_sync.services.token_manager import TokenLifecycleManager

    config, repo = _bootstrap(config_path)
    account = _require_account(repo, account_id)
    cipher = _cipher(config)
    run_mode = mode or SyncMode(config.sync.default_mode)

    client = TradeLockerClient.from_config(config.broker, account.environment)
    tokens = TokenLifecycleManager(
        client,
        repo,
        cipher,
        expiry_skew_seconds=config.broker.token_expiry_skew_seconds,
    )
    orchestrator = SyncOrchestrator(client, repo, tokens, config.sync)
    try:
        result = orchestrator.run(account, run_mode)
    except CredentialError as e:
        if isinstance(e, AccountNotConnectedError):
            typer.echo(str(e), err=True)
        else:
            typer.echo(f"Reconnect required: {e}", err=True)
        raise typer.Exit(2)
    except OperationalError as e:
        typer.echo(f"Sync failed, try again: {e}", err=True)
        raise typer.Exit(1)
    finally:
        client.close()

    typer.echo(f"Mode:           {result.mode.value}")
    typer.echo(f"Created:        {result.created}")
    typer.echo(f"Skipped:        {result.skipped}")
    if result.failed:
        typer.echo(f"Failed:         {result.failed} (will retry on next sync)")
    typer.echo(f"In window:      {result.positions_in_window}")
    typer.echo(f"Last synced at: {result.last_synced_at.isoformat() if result.last_synced_at else 'n/a'}")
    if result.account_balance is not None:
        typer.echo(f"Broker balance: ${result.account_balance:,.2f}")


@app.command()
def report(
    account_id: Optional[str] = typer.Option(None, "--account-id"),
    months: int = typer.Option(6, "--months", help="Months to project ahead"),
    trades_per_month: int = typer.Option(20, "--trades-per-month"),
    config_path: Optional[Path] = CONFIG_OPTION,
):
    """Print journal statistics and a growth projection."""
    from journal_sync.reporting.analytics import project_growth, trade_stats

    config, repo = _bootstrap(config_path)
    account = _require_account(repo, account_id)
    settings = repo.get_settings(account.account_id) or JournalSettings(
        starting_balance=config.sync.default_starting_balance,
        risk_percent=config.sync.default_risk_percent,
        risk_reward=config.sync.default_risk_reward,
    )
    trades = repo.list_trades(account.account_id)
    stats = trade_stats(trades, settings.starting_balance)

    typer.echo("\n" + "=" * 60)
    typer.echo(f"JOURNAL REPORT: {account.account_id}")
    typer.echo("=" * 60)
    typer.echo(f"Trades:          {stats.total_trades} ({stats.wins}W-{stats.losses}L)")
    typer.echo(f"Win Rate:        {stats.win_rate:.1f}%")
    typer.echo(f"Avg Win:         ${stats.avg_win:,.2f}")
    typer.echo(f"Avg Loss:        ${stats.avg_loss:,.2f}")
    typer.echo(f"Current Balance: ${stats.current_balance:,.2f}")
    typer.echo("-" * 60)
    for row in project_growth(
        stats,
        settings.risk_percent,
        settings.risk_reward,
        trades_per_month=trades_per_month,
        months=months,
        today=date.today(),
    ):
        typer.echo(
            f"{row.month:<9} {row.trades:>3} trades  "
            f"${row.start_balance:>12,.2f} -> ${row.end_balance:>12,.2f}  ({row.return_percent:+.2f}%)"
        )
    typer.echo("=" * 60 + "\n")


def main():
    app()


if __name__ == "__main__":
    main()
