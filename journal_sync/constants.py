"""
System-wide constants for the journal sync engine.

Centralizes magic numbers and wire-level values used across modules.
"""

# API Configuration
TRADELOCKER_BASE_URLS = {
    "live": "https://live.tradelocker.com/backend-api",
    "demo": "https://demo.tradelocker.com/backend-api",
}

# API Endpoints
AUTH_TOKEN_ENDPOINT = "/auth/jwt/token"
AUTH_REFRESH_ENDPOINT = "/auth/jwt/refresh"
ALL_ACCOUNTS_ENDPOINT = "/auth/jwt/all-accounts"
ORDERS_HISTORY_ENDPOINT = "/trade/accounts/{account_id}/ordersHistory"
INSTRUMENTS_ENDPOINT = "/trade/accounts/{account_id}/instruments"
QUOTES_ENDPOINT = "/trade/quotes"

# Timeouts and Retries
DEFAULT_API_TIMEOUT = 30  # seconds
RATE_LIMIT_BACKOFF_SECONDS = 2.0
DEFAULT_TOKEN_TTL_SECONDS = 3600

# Sync
INITIAL_SYNC_LIMIT = 100

# Journal defaults
DEFAULT_STARTING_BALANCE = "1000"
DEFAULT_RISK_PERCENT = "2"
DEFAULT_RISK_REWARD = "3"

# Contract sizes
METAL_CONTRACT_SIZE = 100
INDEX_CONTRACT_SIZE = 100
FOREX_CONTRACT_SIZE = 100_000
