from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv


MAX_RETRIES = 3
CHUNK_SIZE = 500
DEBOUNCE_SECONDS = 30
FAST_RETRY_SECONDS = 5

ROLLING_WINDOW_DAYS = 30
ARCHIVE_RETENTION_WEEKS = 12
HISTORY_RETENTION_DAYS = 90
MAX_UNMAPPED = 1000
UNMAPPED_ALERT_THROTTLE_HOURS = 24

BACKFILL_BATCHES = 9
BACKFILL_BATCH_DAYS = 10
BACKFILL_DELAY_SECONDS = 2.0
BACKFILL_RESUME_AFTER_SECONDS = 3600

QUOTA_ADMIT_THRESHOLD_PCT = 95.0
QUOTA_LIMITS = {
    "free": 50,
    "standard": 500,
    "premium": 2500,
}

DEFAULT_API_ENDPOINT = "https://api.cirruslyweather.com/index.php"
DEFAULT_TIMEOUT_SEC = 45.0
ANALYTICS_TIMEOUT_SEC = 90.0


def _truthy(v: str | None) -> bool:
    if v is None:
        return False
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    db_path: Path
    timezone: str
    api_endpoint: str
    api_key: str | None
    merchant_id: str
    service_account_json: str | None
    plan_tier: str
    content_language: str
    target_country: str
    currency: str
    fixture_dir: Path
    web_host: str
    web_port: int
    log_level: str
    telegram_bot_token: str | None
    telegram_chat_id: int | None
    notify_unmapped: bool
    notify_import: bool

    @staticmethod
    def load() -> "Settings":
        load_dotenv()

        db_path = Path(os.getenv("MSYNC_DB_PATH", "./data/merchantsync.sqlite3"))
        timezone = os.getenv("MSYNC_TIMEZONE", "UTC").strip() or "UTC"
        api_endpoint = os.getenv("MSYNC_API_ENDPOINT", DEFAULT_API_ENDPOINT).strip() or DEFAULT_API_ENDPOINT

        # Key is matched byte-for-byte by the remote side; only trim whitespace.
        api_key = (os.getenv("MSYNC_API_KEY") or "").strip() or None
        merchant_id = (os.getenv("MSYNC_MERCHANT_ID") or "").strip()
        service_account_json = _read_service_account(os.getenv("MSYNC_SERVICE_ACCOUNT_JSON"))

        plan_tier = os.getenv("MSYNC_PLAN_TIER", "free").strip().lower()
        if plan_tier not in QUOTA_LIMITS:
            plan_tier = "free"

        chat_id_raw = os.getenv("TELEGRAM_CHAT_ID") or None
        chat_id = int(chat_id_raw) if chat_id_raw else None

        return Settings(
            db_path=db_path,
            timezone=timezone,
            api_endpoint=api_endpoint,
            api_key=api_key,
            merchant_id=merchant_id,
            service_account_json=service_account_json,
            plan_tier=plan_tier,
            content_language=os.getenv("MSYNC_CONTENT_LANGUAGE", "en").strip() or "en",
            target_country=os.getenv("MSYNC_TARGET_COUNTRY", "US").strip() or "US",
            currency=os.getenv("MSYNC_CURRENCY", "USD").strip() or "USD",
            fixture_dir=Path(os.getenv("MSYNC_FIXTURE_DIR", "./fixtures/catalog")),
            web_host=os.getenv("MSYNC_WEB_HOST", "127.0.0.1"),
            web_port=int(os.getenv("MSYNC_WEB_PORT", "8020")),
            log_level=os.getenv("MSYNC_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            telegram_chat_id=chat_id,
            notify_unmapped=_truthy(os.getenv("MSYNC_NOTIFY_UNMAPPED", "1")),
            notify_import=_truthy(os.getenv("MSYNC_NOTIFY_IMPORT", "1")),
        )


def _read_service_account(raw: str | None) -> str | None:
    """Accept either a path to the JSON key file or the JSON itself."""
    if not raw or not raw.strip():
        return None
    value = raw.strip()
    if value.startswith("{"):
        return value
    path = Path(value)
    if path.is_file():
        return path.read_text(encoding="utf-8")
    return None
