# Shared configuration for the civic issue engine, HTTP app and seed script

import os
from pathlib import Path
from datetime import datetime, timezone

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
# Try multiple .env locations: next to this package, one level up, then cwd
_package_dir = Path(__file__).resolve().parent
for _env_path in [_package_dir / ".env", _package_dir.parent / ".env", Path.cwd() / ".env"]:
    if _env_path.is_file():
        load_dotenv(_env_path, override=True)
        break
else:
    load_dotenv(override=True)

# ---------------------------------------------------------------------------
# Connection strings and model names
# ---------------------------------------------------------------------------
MONGODB_URL             = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DATABASE        = os.getenv("MONGODB_DATABASE", "civicgrid")
OPENAI_API_KEY          = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL            = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TRANSCRIBE_MODEL = os.getenv("OPENAI_TRANSCRIBE_MODEL", "whisper-1")

# ---------------------------------------------------------------------------
# Oracle and store tuning
# ---------------------------------------------------------------------------
ORACLE_TIMEOUT_SECONDS     = float(os.getenv("ORACLE_TIMEOUT_SECONDS", "45"))
ORACLE_MAX_RETRIES         = int(os.getenv("ORACLE_MAX_RETRIES", "3"))
STORE_MAX_ATTEMPTS         = int(os.getenv("STORE_MAX_ATTEMPTS", "5"))
STORE_BACKOFF_BASE_SECONDS = float(os.getenv("STORE_BACKOFF_BASE_SECONDS", "0.05"))

# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
JWT_SECRET       = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM    = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "12"))

# ---------------------------------------------------------------------------
# Telephony
# ---------------------------------------------------------------------------
TWILIO_ACCOUNT_SID       = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN        = os.getenv("TWILIO_AUTH_TOKEN")
RECORDING_SETTLE_SECONDS = float(os.getenv("RECORDING_SETTLE_SECONDS", "3"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)
