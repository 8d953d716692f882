import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        token_max_age_secs: int,
        redis_url: str,
        cache_enabled: bool,
        rate_limit_enabled: bool,
        upload_dir: Path,
        max_upload_bytes: int,
        smtp_host: Optional[str],
        smtp_port: int,
        smtp_user: Optional[str],
        smtp_password: Optional[str],
        email_from: str,
        frontend_url: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_secs = token_max_age_secs
        self.redis_url = redis_url
        self.cache_enabled = cache_enabled
        self.rate_limit_enabled = rate_limit_enabled
        self.upload_dir = upload_dir
        self.max_upload_bytes = max_upload_bytes
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.email_from = email_from
        self.frontend_url = frontend_url


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("EXPENSES_TIMEZONE", "UTC")
    secret_key = os.getenv(
        "EXPENSES_SECRET_KEY",
        "4f0d8e5b9a1c27e6b3d94a7f0c5e82d16a3b9f47e2c08d5a71b6e39f4c2d80a5",
    )
    token_max_age_secs = int(os.getenv("EXPENSES_TOKEN_MAX_AGE_SECS", str(7 * 86400)))
    redis_url = os.getenv("EXPENSES_REDIS_URL", "redis://localhost:6379/0")
    cache_enabled = _env_flag("EXPENSES_CACHE_ENABLED", "false")
    rate_limit_enabled = _env_flag("EXPENSES_RATE_LIMIT_ENABLED", "true")
    upload_dir = Path(os.getenv("EXPENSES_UPLOAD_DIR", str(data_dir / "uploads")))
    max_upload_bytes = int(os.getenv("EXPENSES_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
    smtp_host = os.getenv("EXPENSES_SMTP_HOST") or None
    smtp_port = int(os.getenv("EXPENSES_SMTP_PORT", "587"))
    smtp_user = os.getenv("EXPENSES_SMTP_USER") or None
    smtp_password = os.getenv("EXPENSES_SMTP_PASSWORD") or None
    email_from = os.getenv("EXPENSES_EMAIL_FROM", "Expense Tracker <noreply@localhost>")
    frontend_url = os.getenv("EXPENSES_FRONTEND_URL", "http://localhost:3000")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        token_max_age_secs=token_max_age_secs,
        redis_url=redis_url,
        cache_enabled=cache_enabled,
        rate_limit_enabled=rate_limit_enabled,
        upload_dir=upload_dir,
        max_upload_bytes=max_upload_bytes,
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        smtp_user=smtp_user,
        smtp_password=smtp_password,
        email_from=email_from,
        frontend_url=frontend_url,
    )
