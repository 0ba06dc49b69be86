"""
Centralized engine constants.

This file acts as the single point of truth for the sync engine's limits,
batch sizes and business rules shared by both marketplace strategies.
"""

from datetime import datetime, timezone

# ==============================================================================
# PLATFORMS
# ==============================================================================

PLATFORM_MELI = "meli"
PLATFORM_SHOPEE = "shopee"
SUPPORTED_PLATFORMS = (PLATFORM_MELI, PLATFORM_SHOPEE)

# Labels persisted on each sale record
PLATFORM_LABELS = {
    PLATFORM_MELI: "Mercado Livre",
    PLATFORM_SHOPEE: "Shopee",
}
PLATFORM_CHANNELS = {
    PLATFORM_MELI: "ML",
    PLATFORM_SHOPEE: "SP",
}

# ==============================================================================
# PAGINATION & WINDOWING
# ==============================================================================

# Orders per search page
PAGE_LIMIT = 50

# Remote API refuses offset + limit beyond this value
API_OFFSET_LIMIT = 10000

# Self-imposed ceiling, 50 below the hard offset limit
MAX_OFFSET = 9950

# Most recent orders fetched before any history walk
SAFE_BATCH_SIZE = 100

# Window split spans (days) depending on how dense the window is
DENSE_WINDOW_THRESHOLD = 50000
DENSE_SPLIT_DAYS = 7
DEFAULT_SPLIT_DAYS = 14

# Windows narrower than this are never split again
MIN_SPLIT_SPAN_SECONDS = 3600

# ==============================================================================
# TIME BUDGET
# ==============================================================================

# History walk only starts with at least this much time left
HISTORY_MIN_REMAINING_SECONDS = 10

# History walk stops this long before the budget runs out
HISTORY_STOP_MARGIN_SECONDS = 5

# Historical lower bounds
FULL_SYNC_LOWER_BOUND = datetime(2000, 1, 1, tzinfo=timezone.utc)
INCREMENTAL_LOWER_BOUND = datetime(2010, 1, 1, tzinfo=timezone.utc)

# ==============================================================================
# ENRICHMENT & PERSISTENCE
# ==============================================================================

# Concurrent shipment lookups per batch
SHIPMENT_BATCH_SIZE = 10

# Records per atomic update unit
SAVE_BATCH_SIZE = 50

# ==============================================================================
# RETRY POLICY
# ==============================================================================

RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 1.0
RETRY_MAX_JITTER_SECONDS = 1.0
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
AUTH_STATUSES = frozenset({401, 403})

# HTTP client timeout for marketplace calls
HTTP_TIMEOUT_SECONDS = 30.0

# ==============================================================================
# SHOPEE
# ==============================================================================

SHOPEE_WINDOW_DAYS = 15
SHOPEE_PAGE_SIZE = 100
SHOPEE_DETAIL_BATCH_SIZE = 50
SHOPEE_ESCROW_BATCH_SIZE = 50
SHOPEE_FIRST_SYNC_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
SHOPEE_MAX_ORDERS_PER_ACCOUNT = 10000
SHOPEE_INVALID_TOKEN_ERRORS = ("invalid_access_token", "invalid_acceess_token")

# ==============================================================================
# FREIGHT RULES
# ==============================================================================

# Orders below this unit price ship at buyer's expense (non-FLEX)
FREE_SHIPPING_THRESHOLD = 79

# Rule value meaning "do not override freight"
FREIGHT_NO_OVERRIDE_SENTINEL = 999

LOGISTIC_TYPE_NAMES = {
    "xd_drop_off": "Agência",
    "self_service": "FLEX",
    "cross_docking": "Coleta",
}

FREIGHT_ADJUSTMENT_LABELS = {
    "self_service": "FLEX",
    "drop_off": "Correios",
    "xd_drop_off": "Agência",
    "fulfillment": "FULL",
    "cross_docking": "Coleta",
}

# ==============================================================================
# ACCOUNTS & PROGRESS
# ==============================================================================

# Refresh tokens this many seconds before they expire
TOKEN_REFRESH_BUFFER_SECONDS = 300

# Delay before closing progress streams after a final sync
PROGRESS_CLOSE_DELAY_SECONDS = 2.0

# Buffered events per progress subscriber
PROGRESS_QUEUE_SIZE = 500

# Sales check window
SALES_CHECK_DAYS = 7

# ==============================================================================
# FIELD LIMITS
# ==============================================================================

TITLE_MAX_LENGTH = 500
IDENTIFIER_MAX_LENGTH = 255
LABEL_MAX_LENGTH = 100

DEFAULT_BUYER_NAME = "Comprador"
DEFAULT_TITLE = "Pedido"
