"""
Custom exception hierarchy for the journal sync engine.

Provides clear, specific exceptions for different failure scenarios so a
caller can tell "try again later" apart from "reconnect your account".

Hierarchy:

    TradeSyncError (base)
    ├── OperationalError  : transient/retryable (broker API, network)
    │   └── APIError      : broker returned an error or was unreachable
    │       ├── RateLimitError
    │       └── AuthenticationError
    ├── DataError         : bad input record, drop it and continue
    │   └── MalformedOrderError
    ├── CredentialError   : stored credentials unusable, run aborts
    │   ├── StaleCredentialsError
    │   └── AccountNotConnectedError
    └── PersistenceError  : a single row could not be written
        └── DuplicateTradeError

Rules:
    - OperationalError: surface "sync failed, try again", persisted state untouched
    - DataError: catch, log, drop the record, continue the run
    - CredentialError: fatal for the run, user must reconnect the account
    - DuplicateTradeError: expected race with dedup, swallow
"""


class TradeSyncError(Exception):
    """Base exception for all journal sync errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TradeSyncError):
    """Transient/retryable error: broker API, network, timeouts.

    Treatment: abort the run without touching persisted state; the caller
    reports "sync failed, try again".
    """
    pass


class APIError(OperationalError):
    """Broker API error (non-2xx response or transport failure)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(APIError):
    """Raised when the broker answers HTTP 429."""
    pass


class AuthenticationError(APIError):
    """Raised when the broker rejects credentials or a refresh token."""
    pass


# ============ DATA (bad input, drop record) ============

class DataError(TradeSyncError):
    """Bad data from the order feed.

    Treatment: catch, log, drop this record, continue the run.
    """
    pass


class MalformedOrderError(DataError):
    """Raised when a raw order lacks a usable required field (positionId)."""
    pass


# ============ CREDENTIAL (fatal, reconnect) ============

class CredentialError(TradeSyncError):
    """Stored account credentials cannot be used.

    Treatment: fail the run, do not advance the sync checkpoint, ask the
    user to reconnect the broker account.
    """
    pass


class StaleCredentialsError(CredentialError):
    """Stored password could not be decrypted; reconnect required."""

    def __init__(self, message: str = "Stored credentials are invalid. Please disconnect and reconnect your broker account."):
        super().__init__(message)


class ReauthenticationFailedError(CredentialError):
    """Broker rejected the stored email/password during re-authentication."""

    def __init__(self, message: str = "Broker rejected the stored credentials. Please reconnect your broker account."):
        super().__init__(message)


class AccountNotConnectedError(CredentialError):
    """No connected broker account to sync."""
    pass


# ============ PERSISTENCE ============

class PersistenceError(TradeSyncError):
    """A trade row could not be written."""
    pass


class DuplicateTradeError(PersistenceError):
    """Unique (account_id, external_trade_id) already exists.

    Treatment: swallow; the trade is already in the journal.
    """
    pass
