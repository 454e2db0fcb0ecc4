import os
from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017/outreach")

# LLM Provider (Groq or OpenAI)
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "groq").lower()  # "groq" or "openai"

# Groq
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")

# OpenAI
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")

LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.7"))

# Outbound SMTP
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.resend.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "resend")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
SMTP_TIMEOUT = int(os.getenv("SMTP_TIMEOUT", "60"))

# Sender identity
FROM_EMAIL = os.getenv("FROM_EMAIL", "outreach@mail.followly.pro")
DEFAULT_FROM_NAME = os.getenv("DEFAULT_FROM_NAME", "Followly")

# Replies come back to cl-<campaign lead id>@REPLY_TO_DOMAIN
# Leave empty to send without a per-lead Reply-To header
REPLY_TO_DOMAIN = os.getenv("REPLY_TO_DOMAIN", "")

# Inbound webhooks (Resend / Svix signatures)
RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
RESEND_API_BASE_URL = os.getenv("RESEND_API_BASE_URL", "https://api.resend.com")
RESEND_WEBHOOK_SECRET = os.getenv("RESEND_WEBHOOK_SECRET", "")
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))

# Worker pools
DRAFT_WORKER_CONCURRENCY = int(os.getenv("DRAFT_WORKER_CONCURRENCY", "3"))
SEND_WORKER_CONCURRENCY = int(os.getenv("SEND_WORKER_CONCURRENCY", "5"))

# Retry policy, applied to every queue: 3 total runs, 5s -> 10s between them
JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
JOB_BACKOFF_SECONDS = float(os.getenv("JOB_BACKOFF_SECONDS", "5"))

QUEUE_POLL_INTERVAL_SECONDS = float(os.getenv("QUEUE_POLL_INTERVAL_SECONDS", "2"))
STALE_JOB_TIMEOUT_MINUTES = int(os.getenv("STALE_JOB_TIMEOUT_MINUTES", "30"))
STALE_SWEEP_INTERVAL_SECONDS = float(os.getenv("STALE_SWEEP_INTERVAL_SECONDS", "60"))

# Pause after each real initial send
SEND_THROTTLE_SECONDS = float(os.getenv("SEND_THROTTLE_SECONDS", "1.5"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE")
LOG_JSON = os.getenv("LOG_JSON", "false").lower() == "true"  # one JSON object per line, for log shippers

# Allowlist mode: only recipients in the owner's company allowlist get a
# real send; everyone else is audited but not contacted
ALLOWLIST_MODE = os.getenv("ALLOWLIST_MODE", "true").lower() == "true"
