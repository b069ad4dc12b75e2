import os
from dotenv import load_dotenv
from typing import List, Dict

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")
LOG_JSON = os.getenv("LOG_JSON", "false").lower() == "true"

# Scheduler
# One tick claims up to CLAIM_BATCH_SIZE due executions and fans them out to
# at most MAX_CONCURRENT_DISPATCHES concurrent dispatchers.
TICK_INTERVAL_SECONDS = int(os.getenv("TICK_INTERVAL_SECONDS", "60"))
CLAIM_BATCH_SIZE = int(os.getenv("CLAIM_BATCH_SIZE", "50"))
MAX_CONCURRENT_DISPATCHES = int(os.getenv("MAX_CONCURRENT_DISPATCHES", "20"))
# Hard cap on simultaneous sends for one tenant + platform pair
MAX_INFLIGHT_PER_TENANT_PLATFORM = int(os.getenv("MAX_INFLIGHT_PER_TENANT_PLATFORM", "2"))
# Claims older than this are assumed orphaned by a crashed process
STALE_CLAIM_MINUTES = int(os.getenv("STALE_CLAIM_MINUTES", "30"))
# Daily counter buckets older than this are swept (weekly window needs 7)
COUNTER_RETENTION_DAYS = int(os.getenv("COUNTER_RETENTION_DAYS", "8"))

# Gateway calls
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))

# Retry policy for transient gateway errors (1 min base, 1 hour cap, 5 attempts)
RETRY_BASE_SECONDS = int(os.getenv("RETRY_BASE_SECONDS", "60"))
RETRY_MAX_SECONDS = int(os.getenv("RETRY_MAX_SECONDS", "3600"))
MAX_SEND_ATTEMPTS = int(os.getenv("MAX_SEND_ATTEMPTS", "5"))

# Minimum gap between two actions of the same kind on one account
ENFORCE_ACTION_COOLDOWN = os.getenv("ENFORCE_ACTION_COOLDOWN", "true").lower() == "true"

# Tenant hard caps (defaults; a tenant document may override any of them)
TENANT_MAX_IN_FLIGHT = int(os.getenv("TENANT_MAX_IN_FLIGHT", "10"))
TENANT_MAX_CAMPAIGNS = int(os.getenv("TENANT_MAX_CAMPAIGNS", "10"))
TENANT_MAX_CONTACTS_PER_CAMPAIGN = int(os.getenv("TENANT_MAX_CONTACTS_PER_CAMPAIGN", "500"))
TENANT_MAX_EXECUTIONS_PER_DAY = int(os.getenv("TENANT_MAX_EXECUTIONS_PER_DAY", "1000"))

# REST messaging gateway (LinkedIn, WhatsApp, Messenger, Telegram)
GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://api.unipile.com/api/v1")
GATEWAY_API_KEY = os.getenv("GATEWAY_API_KEY", "")


# SMTP gateway - multiple sending accounts
def parse_smtp_accounts() -> List[Dict[str, str]]:
    """Parse SMTP sending accounts from environment"""
    emails = os.getenv("SMTP_ACCOUNTS", "").split(",")
    passwords = os.getenv("SMTP_PASSWORDS", "").split(",")
    names = os.getenv("SMTP_SENDER_NAMES", "").split(",")

    accounts = []
    for i, email in enumerate(emails):
        email = email.strip()
        if email:
            accounts.append({
                "email": email,
                "password": passwords[i].strip() if i < len(passwords) else passwords[0].strip(),
                "sender_name": names[i].strip() if i < len(names) else names[0].strip()
            })
    return accounts

SMTP_ACCOUNTS = parse_smtp_accounts()
SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
REPLY_TO = os.getenv("REPLY_TO", "")

# Sending hours for steps flagged business_hours (US Eastern by default)
TARGET_TIMEZONE = os.getenv("TARGET_TIMEZONE", "America/New_York")
SENDING_HOUR_START = int(os.getenv("SENDING_HOUR_START", "9"))
SENDING_HOUR_END = int(os.getenv("SENDING_HOUR_END", "17"))
SEND_ON_WEEKENDS = os.getenv("SEND_ON_WEEKENDS", "false").lower() == "true"

# Alerts
ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
ALERT_CHANNEL = os.getenv("ALERT_CHANNEL", "slack").lower()
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")
DAILY_SUMMARY_ENABLED = os.getenv("DAILY_SUMMARY_ENABLED", "true").lower() == "true"
