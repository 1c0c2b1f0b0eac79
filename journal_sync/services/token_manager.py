"""
Broker access-token lifecycle.

    VALID ----(expired)----> REFRESHING ----(ok)----> VALID
                                  |
                       (no refresh token / failed)
                                  v
                           REAUTHENTICATING --(ok)--> VALID
                                  |
                       (decrypt failure) -> StaleCredentialsError
                       (credentials rejected) -> ReauthenticationFailedError

Every new token is persisted immediately so later runs reuse it instead of
re-authenticating.
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from journal_sync.domain.models import AccessToken, BrokerAccount
from journal_sync.exceptions import (
    AccountNotConnectedError,
    APIError,
    AuthenticationError,
    ReauthenticationFailedError,
)
from journal_sync.monitoring.logger import get_logger
from journal_sync.utils.secret_manager import CredentialCipher

logger = get_logger(__name__)


class TokenState(str, Enum):
    VALID = "valid"
    REFRESHING = "refreshing"
    REAUTHENTICATING = "reauthenticating"


class TokenLifecycleManager:
    """
    Hands out a usable access token for an account.

    Args:
        client: BrokerAPI implementation
        store: TradeStore implementation (for save_tokens)
        cipher: CredentialCipher for the stored password
        expiry_skew_seconds: treat tokens as expired this many seconds early
        clock: injectable "now" for tests
    """

    def __init__(
        self,
        client,
        store,
        cipher: CredentialCipher,
        *,
        expiry_skew_seconds: int = 0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.client = client
        self.store = store
        self.cipher = cipher
        self.expiry_skew = timedelta(seconds=expiry_skew_seconds)
        self._clock = clock
        self.last_state: Optional[TokenState] = None

    def _is_valid(self, account: BrokerAccount) -> bool:
        if not account.access_token or account.token_expires_at is None:
            return False
        expires_at = account.token_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return self._clock() < expires_at - self.expiry_skew

    def _persist(self, account: BrokerAccount, token: AccessToken) -> None:
        account.access_token = token.access_token
        account.token_expires_at = token.expires_at
        if token.refresh_token is not None:
            account.refresh_token = token.refresh_token
        self.store.save_tokens(account.account_id, token.access_token, token.expires_at, token.refresh_token)

    def get_valid_access_token(self, account: BrokerAccount) -> str:
        """
        Return a non-expired access token, refreshing or re-authenticating.

        Mutates account's token fields to match what was persisted.

        Raises:
            AccountNotConnectedError: account is disconnected
            StaleCredentialsError: stored password cannot be decrypted
            ReauthenticationFailedError: broker rejected the stored credentials
            APIError: broker unreachable during re-authentication
        """
        if not account.is_connected:
            raise AccountNotConnectedError(f"Broker account {account.account_id} is not connected")

        if self._is_valid(account):
            self.last_state = TokenState.VALID
            return account.access_token

        if account.refresh_token:
            self.last_state = TokenState.REFRESHING
            try:
                token = self.client.refresh(account.refresh_token)
            except APIError as e:
                logger.warning(
                    "TOKEN_REFRESH_FAILED",
                    account_id=account.account_id,
                    error=str(e),
                    status_code=e.status_code,
                )
            else:
                self._persist(account, token)
                logger.info("TOKEN_REFRESHED", account_id=account.account_id, expires_at=token.expires_at.isoformat())
                return token.access_token

        self.last_state = TokenState.REAUTHENTICATING
        password = self.cipher.decrypt(account.encrypted_password)
        try:
            token = self.client.authenticate(account.email, password, account.server)
        except AuthenticationError as e:
            logger.error(
                "TOKEN_REAUTHENTICATION_REJECTED",
                account_id=account.account_id,
                status_code=e.status_code,
            )
            raise ReauthenticationFailedError() from e
        self._persist(account, token)
        logger.info("TOKEN_REAUTHENTICATED", account_id=account.account_id, expires_at=token.expires_at.isoformat())
        return token.access_token
