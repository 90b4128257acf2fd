"""Centralized constants for cardify.

All magic numbers and configuration defaults live here so every layer
imports from a single source of truth.
"""

# ---------- SM-2 ----------
DEFAULT_EASE_FACTOR = 2.5
MIN_EASE_FACTOR = 1.3
MIN_QUALITY = 0
MAX_QUALITY = 5
PASSING_QUALITY = 3
FIRST_INTERVAL_DAYS = 1
SECOND_INTERVAL_DAYS = 3
RELEARN_DELAY_MINUTES = 10

# ---------- Review sessions ----------
DEFAULT_REVIEW_LIMIT = 20
MAX_REVIEW_LIMIT = 100
WEEK_HORIZON_DAYS = 7

# ---------- Validation ----------
TITLE_MIN_LENGTH = 1
TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500

# ---------- Remote API / HTTP ----------
DEFAULT_API_BASE_URL = "http://localhost:5000/api"
REQUEST_TIMEOUT = 30.0

# ---------- Sync ----------
TABLE_DECKS = "decks"
TABLE_CARDS = "cards"
SYNC_TABLE_ORDER = (TABLE_DECKS, TABLE_CARDS)
SYNC_INTERVAL_SECONDS = 300
MAX_SYNC_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_MAX_DELAY = 300.0  # seconds
SYNC_CONCURRENCY = 4

# ---------- Settings keys ----------
SETTING_AUTH_TOKEN = "auth_token"
SETTING_LAST_SYNC_AT = "last_sync_at"
