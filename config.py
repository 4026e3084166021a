import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_delivery_hour: int,
        report_poll_minutes: int,
        report_run_budget_secs: float,
        claim_timeout_minutes: int,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        smtp_sender: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_delivery_hour = default_delivery_hour
        self.report_poll_minutes = report_poll_minutes
        self.report_run_budget_secs = report_run_budget_secs
        self.claim_timeout_minutes = claim_timeout_minutes
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_sender = smtp_sender


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FAMILY_FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "family_finance.db"
    database_url = os.getenv("FAMILY_FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FAMILY_FINANCE_TIMEZONE", "Europe/Berlin")
    default_delivery_hour = int(os.getenv("FAMILY_FINANCE_DEFAULT_DELIVERY_HOUR", "9"))
    report_poll_minutes = int(os.getenv("FAMILY_FINANCE_REPORT_POLL_MINUTES", "5"))
    report_run_budget_secs = float(
        os.getenv("FAMILY_FINANCE_REPORT_RUN_BUDGET_SECS", "240")
    )
    claim_timeout_minutes = int(os.getenv("FAMILY_FINANCE_CLAIM_TIMEOUT_MINUTES", "30"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_delivery_hour=default_delivery_hour,
        report_poll_minutes=report_poll_minutes,
        report_run_budget_secs=report_run_budget_secs,
        claim_timeout_minutes=claim_timeout_minutes,
        smtp_host=os.getenv("FAMILY_FINANCE_SMTP_HOST", ""),
        smtp_port=int(os.getenv("FAMILY_FINANCE_SMTP_PORT", "587")),
        smtp_user=os.getenv("FAMILY_FINANCE_SMTP_USER", ""),
        smtp_password=os.getenv("FAMILY_FINANCE_SMTP_PASSWORD", ""),
        smtp_sender=os.getenv("FAMILY_FINANCE_SMTP_SENDER", "reports@localhost"),
    )
