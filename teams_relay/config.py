"""
teams_relay/config.py — tunables read from the environment.

Values are read once at import time. Entry points (main.py, api/main.py) call
load_dotenv() before importing anything from teams_relay, so a local .env
file works the same as exported variables.
"""
import os

# ─── Teams web ────────────────────────────────────────────────────────────────

TEAMS_URL    = "https://teams.microsoft.com"
TEAMS_ORIGIN = "https://teams.microsoft.com"
TEAMS_DOMAIN = "teams.microsoft.com"

DEFAULT_REGION = os.getenv("TEAMS_DEFAULT_REGION", "amer")

# ─── Login ────────────────────────────────────────────────────────────────────

LOGIN_EMAIL             = os.getenv("TEAMS_LOGIN_EMAIL", "")
LOGIN_TIMEOUT_SECONDS   = float(os.getenv("LOGIN_TIMEOUT_SECONDS", "300"))
AUTH_CHECK_INTERVAL     = 2.0    # seconds between page polls while waiting
NAVIGATION_SETTLE_DELAY = 2.0    # redirects after goto()
TOKEN_SETTLE_DELAY      = 5.0    # let MSAL finish writing to localStorage
HEADLESS_SEARCH         = os.getenv("TEAMS_HEADLESS_SEARCH", "true").lower() in ("1", "true", "yes")

# ─── Session ──────────────────────────────────────────────────────────────────

SESSION_EXPIRY_HOURS = float(os.getenv("SESSION_EXPIRY_HOURS", "12"))

# ─── HTTP ─────────────────────────────────────────────────────────────────────

HTTP_TIMEOUT_SECONDS  = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
MAX_RETRIES           = int(os.getenv("MAX_RETRIES", "3"))
RETRY_BASE_DELAY      = 1.0
RETRY_MAX_DELAY       = 10.0
SEARCH_RESULT_TIMEOUT = 10.0     # browser-driven search response wait

# ─── Paging ───────────────────────────────────────────────────────────────────

DEFAULT_PAGE_SIZE     = 25
MAX_PAGE_SIZE         = 100
DEFAULT_THREAD_LIMIT  = 50
MAX_THREAD_LIMIT      = 200
DEFAULT_PEOPLE_LIMIT  = 10
MAX_PEOPLE_LIMIT      = 50
DEFAULT_CHANNEL_LIMIT = 10
MAX_CHANNEL_LIMIT     = 50

# ─── Conversations ────────────────────────────────────────────────────────────

SELF_CHAT_ID = "48:notes"
