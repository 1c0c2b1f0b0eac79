"""
TradeLocker REST client.

Synchronous requests-based client for the handful of broker endpoints the
sync engine needs: JWT auth and refresh, account list, order history,
instrument list and quotes.

Authenticated calls send `Authorization: Bearer <token>` plus the `accNum`
header. Trade endpoints wrap their payload in a `{"s": "ok", "d": ...}`
envelope which is unwrapped here; `s != "ok"` is an APIError.
"""
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests

from journal_sync.constants import (
    ALL_ACCOUNTS_ENDPOINT,
    AUTH_REFRESH_ENDPOINT,
    AUTH_TOKEN_ENDPOINT,
    DEFAULT_API_TIMEOUT,
    DEFAULT_TOKEN_TTL_SECONDS,
    INSTRUMENTS_ENDPOINT,
    ORDERS_HISTORY_ENDPOINT,
    QUOTES_ENDPOINT,
    RATE_LIMIT_BACKOFF_SECONDS,
)
from journal_sync.domain.models import AccessToken, AccountSummary
from journal_sync.exceptions import APIError, AuthenticationError, RateLimitError
from journal_sync.monitoring.logger import get_logger
from journal_sync.utils.retry import call_with_retry

logger = get_logger(__name__)


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


def _decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if value in (None, ""):
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def _parse_expiry(payload: Mapping[str, Any], now: datetime) -> datetime:
    """expiresAt/expireDate (epoch s, epoch ms or ISO-8601) or expiresIn seconds; default one hour."""
    raw_at = _first(payload, "expiresAt", "expires_at", "expireDate")
    if raw_at is not None:
        if isinstance(raw_at, (int, float)) or str(raw_at).isdigit():
            number = float(raw_at)
            seconds = number / 1000 if number > 1e11 else number
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        try:
            dt = datetime.fromisoformat(str(raw_at).replace("Z", "+00:00"))
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
        except ValueError:
            logger.warning("TOKEN_EXPIRY_UNPARSEABLE", value=str(raw_at))

    raw_in = _first(payload, "expiresIn", "expires_in")
    try:
        ttl = int(raw_in) if raw_in is not None else DEFAULT_TOKEN_TTL_SECONDS
    except (TypeError, ValueError):
        ttl = DEFAULT_TOKEN_TTL_SECONDS
    return now + timedelta(seconds=ttl)


def parse_token_response(payload: Any, now: Optional[datetime] = None) -> AccessToken:
    """
    Build an AccessToken from an auth/refresh response.

    Raises:
        AuthenticationError: no access token in the response
    """
    now = now or datetime.now(timezone.utc)
    if not isinstance(payload, Mapping):
        raise AuthenticationError("Unexpected token response shape")
    access_token = _first(payload, "accessToken", "access_token", "token")
    if not access_token:
        raise AuthenticationError("No access token received from broker")
    return AccessToken(
        access_token=str(access_token),
        expires_at=_parse_expiry(payload, now),
        refresh_token=_first(payload, "refreshToken", "refresh_token"),
    )


class TradeLockerClient:
    """
    TradeLocker REST API client.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_API_TIMEOUT,
        rate_limit_backoff: float = RATE_LIMIT_BACKOFF_SECONDS,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            base_url: e.g. https://live.tradelocker.com/backend-api
            timeout: Per-request timeout in seconds
            rate_limit_backoff: Wait before the single retry on HTTP 429
            session: Optional requests.Session (injected in tests)
            sleep: Optional sleep function (injected in tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.rate_limit_backoff = rate_limit_backoff
        self.session = session or requests.Session()
        self._sleep = sleep

    @classmethod
    def from_config(cls, broker_config, environment: Optional[str] = None) -> "TradeLockerClient":
        return cls(
            broker_config.base_url_for(environment),
            timeout=broker_config.request_timeout_seconds,
            rate_limit_backoff=broker_config.rate_limit_backoff_seconds,
        )

    def close(self) -> None:
        self.session.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self, access_token: Optional[str], acc_num: Optional[int]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        if acc_num is not None:
            headers["accNum"] = str(acc_num)
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: Optional[str] = None,
        acc_num: Optional[int] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                headers=self._headers(access_token, acc_num),
                params=params,
                json=json_body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("BROKER_REQUEST_FAILED", method=method, path=path, error=str(e))
            raise APIError(f"Broker request failed: {e}") from e

        status = response.status_code
        if status == 429:
            raise RateLimitError(f"Rate limited on {path}", status_code=status)
        if status in (401, 403):
            raise AuthenticationError(f"Broker rejected credentials on {path}", status_code=status)
        if not 200 <= status < 300:
            logger.error("BROKER_API_ERROR", method=method, path=path, status=status, body=response.text[:500])
            raise APIError(f"Broker API error {status} on {path}", status_code=status)

        try:
            payload = response.json()
        except ValueError as e:
            raise APIError(f"Invalid JSON from broker on {path}", status_code=status) from e

        if isinstance(payload, Mapping) and "s" in payload:
            if payload.get("s") != "ok":
                message = payload.get("errmsg") or payload.get("message") or "unknown error"
                raise APIError(f"Broker returned error on {path}: {message}", status_code=status)
            return payload.get("d")
        return payload

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str, server: str) -> AccessToken:
        """Password grant. Raises AuthenticationError on rejected credentials."""
        try:
            payload = self._request(
                "POST",
                AUTH_TOKEN_ENDPOINT,
                json_body={"email": email, "password": password, "server": server},
            )
        except APIError as e:
            if isinstance(e, AuthenticationError) or e.status_code == 400:
                raise AuthenticationError(f"Authentication failed: {e}", status_code=e.status_code) from e
            raise
        token = parse_token_response(payload)
        logger.info("BROKER_AUTHENTICATED", server=server, expires_at=token.expires_at.isoformat())
        return token

    def refresh(self, refresh_token: str) -> AccessToken:
        """Exchange a refresh token for a new access token."""
        try:
            payload = self._request("POST", AUTH_REFRESH_ENDPOINT, json_body={"refreshToken": refresh_token})
        except APIError as e:
            if isinstance(e, AuthenticationError) or e.status_code == 400:
                raise AuthenticationError(f"Token refresh failed: {e}", status_code=e.status_code) from e
            raise
        token = parse_token_response(payload)
        if token.refresh_token is None:
            token = AccessToken(token.access_token, token.expires_at, refresh_token)
        return token

    # ------------------------------------------------------------------
    # Accounts / trade data
    # ------------------------------------------------------------------

    def list_accounts(self, access_token: str) -> List[AccountSummary]:
        payload = self._request("GET", ALL_ACCOUNTS_ENDPOINT, access_token=access_token)
        items = payload.get("accounts", []) if isinstance(payload, Mapping) else payload or []
        accounts = []
        for item in items:
            if not isinstance(item, Mapping):
                continue
            account_id = _first(item, "id", "accountId")
            acc_num = _first(item, "accNum", "accountNumber")
            if account_id is None or acc_num is None:
                continue
            accounts.append(
                AccountSummary(
                    account_id=str(account_id),
                    account_number=int(acc_num),
                    balance=_decimal(_first(item, "accountBalance", "balance"), Decimal("0")),
                    equity=_decimal(_first(item, "equity", "accountEquity"), Decimal("0")),
                    currency=str(_first(item, "currency") or "USD"),
                )
            )
        return accounts

    def get_orders_history(
        self,
        access_token: str,
        account_id: str,
        acc_num: int,
        start_time_ms: Optional[int] = None,
    ) -> List[Any]:
        """
        Raw order records for the account, optionally from start_time_ms.

        HTTP 429 is retried once after the configured backoff. If the retry is
        throttled too, the call yields no orders rather than failing the run.
        Any other API error propagates.
        """
        path = ORDERS_HISTORY_ENDPOINT.format(account_id=account_id)
        params = {"startTime": start_time_ms} if start_time_ms is not None else None

        try:
            payload = call_with_retry(
                lambda: self._request("GET", path, access_token=access_token, acc_num=acc_num, params=params),
                max_retries=1,
                delay=self.rate_limit_backoff,
                sleep=self._sleep,
                operation="orders_history",
            )
        except RateLimitError:
            logger.warning("ORDERS_HISTORY_RATE_LIMITED", account_id=account_id)
            return []

        if isinstance(payload, Mapping):
            orders = payload.get("ordersHistory") or payload.get("orders") or []
        else:
            orders = payload or []
        logger.info("ORDERS_HISTORY_FETCHED", account_id=account_id, count=len(orders), start_time_ms=start_time_ms)
        return list(orders)

    def get_instruments(self, access_token: str, account_id: str, acc_num: int) -> List[Dict[str, Any]]:
        path = INSTRUMENTS_ENDPOINT.format(account_id=account_id)
        payload = self._request("GET", path, access_token=access_token, acc_num=acc_num)
        if isinstance(payload, Mapping):
            return list(payload.get("instruments") or [])
        return list(payload or [])

    def get_quote(
        self,
        access_token: str,
        instrument_id: str,
        route_id: str,
        acc_num: int,
    ) -> Optional[Dict[str, Decimal]]:
        """Live {"bid", "ask"} for an instrument on its INFO route, or None."""
        payload = self._request(
            "GET",
            QUOTES_ENDPOINT,
            access_token=access_token,
            acc_num=acc_num,
            params={"tradableInstrumentId": instrument_id, "routeId": route_id},
        )
        if not isinstance(payload, Mapping):
            return None
        bid = _decimal(_first(payload, "bp", "bid"))
        ask = _decimal(_first(payload, "ap", "ask"))
        if bid is None or ask is None:
            return None
        return {"bid": bid, "ask": ask}
