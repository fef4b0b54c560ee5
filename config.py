import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        budget_alert_threshold_pct: float,
        conflict_max_attempts: int,
        dispatch_max_attempts: int,
        dispatch_backoff_secs: float,
        dispatch_workers: int,
        throttle_limit: int,
        throttle_period_secs: float,
        insight_max_attempts: int,
        insight_backoff_secs: float,
        email_max_attempts: int,
        gemini_api_key: Optional[str],
        gemini_model: str,
        smtp_host: str,
        smtp_port: int,
        smtp_username: Optional[str],
        smtp_password: Optional[str],
        mail_from: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.budget_alert_threshold_pct = budget_alert_threshold_pct
        self.conflict_max_attempts = conflict_max_attempts
        self.dispatch_max_attempts = dispatch_max_attempts
        self.dispatch_backoff_secs = dispatch_backoff_secs
        self.dispatch_workers = dispatch_workers
        self.throttle_limit = throttle_limit
        self.throttle_period_secs = throttle_period_secs
        self.insight_max_attempts = insight_max_attempts
        self.insight_backoff_secs = insight_backoff_secs
        self.email_max_attempts = email_max_attempts
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.mail_from = mail_from


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        budget_alert_threshold_pct=float(
            os.getenv("LEDGER_BUDGET_ALERT_THRESHOLD_PCT", "80")
        ),
        conflict_max_attempts=int(os.getenv("LEDGER_CONFLICT_MAX_ATTEMPTS", "3")),
        dispatch_max_attempts=int(os.getenv("LEDGER_DISPATCH_MAX_ATTEMPTS", "4")),
        dispatch_backoff_secs=float(os.getenv("LEDGER_DISPATCH_BACKOFF_SECS", "1")),
        dispatch_workers=int(os.getenv("LEDGER_DISPATCH_WORKERS", "4")),
        throttle_limit=int(os.getenv("LEDGER_THROTTLE_LIMIT", "10")),
        throttle_period_secs=float(os.getenv("LEDGER_THROTTLE_PERIOD_SECS", "60")),
        insight_max_attempts=int(os.getenv("LEDGER_INSIGHT_MAX_ATTEMPTS", "3")),
        insight_backoff_secs=float(os.getenv("LEDGER_INSIGHT_BACKOFF_SECS", "1")),
        email_max_attempts=int(os.getenv("LEDGER_EMAIL_MAX_ATTEMPTS", "3")),
        gemini_api_key=os.getenv("LEDGER_GEMINI_API_KEY"),
        gemini_model=os.getenv("LEDGER_GEMINI_MODEL", "gemini-1.5-flash"),
        smtp_host=os.getenv("LEDGER_SMTP_HOST", "localhost"),
        smtp_port=int(os.getenv("LEDGER_SMTP_PORT", "25")),
        smtp_username=os.getenv("LEDGER_SMTP_USERNAME"),
        smtp_password=os.getenv("LEDGER_SMTP_PASSWORD"),
        mail_from=os.getenv("LEDGER_MAIL_FROM", "reports@localhost"),
    )
