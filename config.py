import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        bootstrap_admin_email: str,
        profile_timeout_secs: float,
        sign_out_timeout_secs: float,
        session_key_prefix: str,
        access_token_ttl_secs: int,
        profile_retry_attempts: int,
        profile_retry_delay_secs: float,
        max_failed_sign_ins: int,
        sign_in_window_secs: int,
        session_idle_secs: int,
        avatar_dir: Path,
        avatar_url_prefix: str,
        currency: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.bootstrap_admin_email = bootstrap_admin_email
        self.profile_timeout_secs = profile_timeout_secs
        self.sign_out_timeout_secs = sign_out_timeout_secs
        self.session_key_prefix = session_key_prefix
        self.access_token_ttl_secs = access_token_ttl_secs
        self.profile_retry_attempts = profile_retry_attempts
        self.profile_retry_delay_secs = profile_retry_delay_secs
        self.max_failed_sign_ins = max_failed_sign_ins
        self.sign_in_window_secs = sign_in_window_secs
        self.session_idle_secs = session_idle_secs
        self.avatar_dir = avatar_dir
        self.avatar_url_prefix = avatar_url_prefix
        self.currency = currency


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "Asia/Jakarta")
    secret_key = os.getenv(
        "FINANCE_SECRET_KEY",
        "0f6c2a9de14b7735c8a1f0d2b96e4c5a7d3e8f1b2c4a6d8e0f1a3b5c7d9e1f20",
    )
    bootstrap_admin_email = os.getenv(
        "FINANCE_BOOTSTRAP_ADMIN_EMAIL", "admin@financeapp.com"
    )
    avatar_dir = Path(os.getenv("FINANCE_AVATAR_DIR", str(data_dir / "avatars")))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        bootstrap_admin_email=bootstrap_admin_email.strip().lower(),
        profile_timeout_secs=float(os.getenv("FINANCE_PROFILE_TIMEOUT_SECS", "8")),
        sign_out_timeout_secs=float(os.getenv("FINANCE_SIGN_OUT_TIMEOUT_SECS", "5")),
        session_key_prefix=os.getenv("FINANCE_SESSION_KEY_PREFIX", "sb-finance"),
        access_token_ttl_secs=int(os.getenv("FINANCE_ACCESS_TOKEN_TTL_SECS", "3600")),
        profile_retry_attempts=int(os.getenv("FINANCE_PROFILE_RETRY_ATTEMPTS", "3")),
        profile_retry_delay_secs=float(
            os.getenv("FINANCE_PROFILE_RETRY_DELAY_SECS", "0.5")
        ),
        max_failed_sign_ins=int(os.getenv("FINANCE_MAX_FAILED_SIGN_INS", "5")),
        sign_in_window_secs=int(os.getenv("FINANCE_SIGN_IN_WINDOW_SECS", "300")),
        session_idle_secs=int(os.getenv("FINANCE_SESSION_IDLE_SECS", "7200")),
        avatar_dir=avatar_dir,
        avatar_url_prefix=os.getenv("FINANCE_AVATAR_URL_PREFIX", "/avatars"),
        currency=os.getenv("FINANCE_CURRENCY", "IDR"),
    )
