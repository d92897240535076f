import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        cron_secret: str,
        fcm_project_id: str,
        fcm_access_token: str,
        fcm_timeout_secs: float,
        default_user_id: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.cron_secret = cron_secret
        self.fcm_project_id = fcm_project_id
        self.fcm_access_token = fcm_access_token
        self.fcm_timeout_secs = fcm_timeout_secs
        self.default_user_id = default_user_id
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() not in {"0", "false", "no", "off"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo")
    csrf_secret = os.getenv(
        "LEDGER_CSRF_SECRET",
        "5b1f0c7e2d9a48e6b3c1f7a90d2e64c8a1f3b5d7e9c2a4f6b8d0e1c3a5f7b9d1",
    )
    cron_secret = os.getenv("LEDGER_CRON_SECRET", "")
    fcm_project_id = os.getenv("LEDGER_FCM_PROJECT_ID", "")
    fcm_access_token = os.getenv("LEDGER_FCM_ACCESS_TOKEN", "")
    fcm_timeout_secs = float(os.getenv("LEDGER_FCM_TIMEOUT_SECS", "10"))
    default_user_id = int(os.getenv("LEDGER_DEFAULT_USER_ID", "1"))
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", "1")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        cron_secret=cron_secret,
        fcm_project_id=fcm_project_id,
        fcm_access_token=fcm_access_token,
        fcm_timeout_secs=fcm_timeout_secs,
        default_user_id=default_user_id,
        scheduler_enabled=scheduler_enabled,
    )
