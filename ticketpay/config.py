import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./ticketpay.db")

# 'local' | 'redis'
CHANGEFEED_BACKEND = os.getenv("CHANGEFEED_BACKEND", "local").lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")

# 'mock' | 'umeskia'
GATEWAY_BACKEND = os.getenv("GATEWAY_BACKEND", "mock").lower()
GATEWAY_TIMEOUT = float(os.getenv("GATEWAY_TIMEOUT", "10"))
MPESA_API_URL = os.environ.get(
    "MPESA_API_URL",
    "https://api.umeskiasoftwares.com/api/v1/intiatestk"
)
MPESA_STATUS_URL = os.environ.get(
    "MPESA_STATUS_URL",
    "https://api.umeskiasoftwares.com/api/v1/transactionstatus"
)
MPESA_API_KEY = os.environ.get("MPESA_API_KEY", "")
MPESA_UMS_EMAIL = os.environ.get("MPESA_UMS_EMAIL", "")
MPESA_ACCOUNT_ID = os.environ.get("MPESA_ACCOUNT_ID", "")

MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)

MAILGUN_API_KEY = os.environ.get("MAILGUN_API_KEY", "")
MAILGUN_DOMAIN = os.environ.get("MAILGUN_DOMAIN", "")
MAILGUN_URL = os.environ.get("MAILGUN_URL", "https://api.mailgun.net")
MAIL_FROM = os.environ.get(
    "MAIL_FROM", f"RNR Pay <tickets@{MAILGUN_DOMAIN or 'localhost'}>"
)

TICKET_STATUS_URL = os.environ.get(
    "TICKET_STATUS_URL",
    "https://rnrsocialhub.com/ticket-status?ticketId={ticket_id}"
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# client-side timings (seconds)
MANUAL_ACTIONS_DELAY = float(os.getenv("MANUAL_ACTIONS_DELAY", "20"))
REDIRECT_DELAY = float(os.getenv("REDIRECT_DELAY", "3"))

# postgres pool; the DB gate defaults to the pool size
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", str(DB_POOL_SIZE)))
