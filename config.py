import os
from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "email_delivery")
DATABASE_TIMEOUT_MS = int(os.getenv("DATABASE_TIMEOUT_MS", "5000"))

# Schedules are evaluated in the program's own timezone; this is the fallback
# for programs created without one. America/New_York auto-handles EST/EDT.
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "America/New_York")

# Public site, used to build per-recipient unsubscribe links for broadcasts
SITE_URL = os.getenv("SITE_URL", "http://localhost:3000").rstrip("/")

# Sender identity
EMAIL_FROM = os.getenv("EMAIL_FROM", "noreply@example.com")
FROM_NAME = os.getenv("FROM_NAME", "")
REPLY_TO = os.getenv("REPLY_TO", "")

# Send gateway: "smtp" (aiosmtplib) or "resend" (HTTP batch API)
SEND_GATEWAY = os.getenv("SEND_GATEWAY", "smtp").lower()

SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_START_TLS = os.getenv("SMTP_START_TLS", "true").lower() == "true"

RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com").rstrip("/")

# Provider limits
# Resend (and most ESPs) cap a batch call at 100 recipients
SEND_BATCH_SIZE = int(os.getenv("SEND_BATCH_SIZE", "100"))
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))
# Shared across every worker in the process, not per worker
GATEWAY_MAX_CONCURRENCY = int(os.getenv("GATEWAY_MAX_CONCURRENCY", "2"))
GATEWAY_MIN_INTERVAL_SECONDS = float(os.getenv("GATEWAY_MIN_INTERVAL_SECONDS", "0"))

# Scheduler invocation
# 1 = process due items one after another
SCHEDULER_CONCURRENCY = int(os.getenv("SCHEDULER_CONCURRENCY", "1"))
# Items not started before the deadline stay due for the next invocation (0 = no deadline)
INVOCATION_DEADLINE_SECONDS = float(os.getenv("INVOCATION_DEADLINE_SECONDS", "50"))
# A claim older than this is considered abandoned (crashed worker)
CLAIM_STALE_MINUTES = int(os.getenv("CLAIM_STALE_MINUTES", "15"))
# Cadence of `main.py loop`
SCHEDULER_INTERVAL_SECONDS = int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "60"))
HEARTBEAT_INTERVAL_SECONDS = int(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "300"))

# Number of recipient addresses kept on a run for auditing
AUDIENCE_SNAPSHOT_SIZE = int(os.getenv("AUDIENCE_SNAPSHOT_SIZE", "10"))

# Alerting (Slack / Discord / Telegram webhook)
ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
ALERT_CHANNEL = os.getenv("ALERT_CHANNEL", "slack").lower()
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")
