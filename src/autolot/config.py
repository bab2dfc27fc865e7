from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml

class AppSettings(BaseSettings):
    name: str = "AutoLot"
    version: str = "1.0.0"

class PathSettings(BaseSettings):
    upload_dir: Path = Path("./data/uploads")
    db_path: Path = Path("./data/autolot.db")


class ImportSettings(BaseSettings):
    # Background run pool; one slot per concurrently running config.
    max_workers: int = 4
    preview_sample_size: int = 10
    max_preview_rows: int = 200
    # Field-level issues kept on a run summary when max_errors is 0.
    min_error_list: int = 1


class ConnectorSettings(BaseSettings):
    timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_seconds: float = 1.0
    # Unknown SFTP host keys are rejected unless this is enabled.
    sftp_auto_add_host_keys: bool = False
    sftp_known_hosts: Optional[Path] = None


class SchedulerSettings(BaseSettings):
    enabled: bool = True
    tick_seconds: int = 60
    misfire_grace_seconds: int = 30
    # Wall-clock zone for time_hour / time_minute of schedules.
    timezone: str = "UTC"

class SecuritySettings(BaseSettings):
    """
    Optional auth and request guardrails.
    """
    api_token: Optional[str] = None  # Bearer token or X-API-Key
    max_upload_mb: int = 50  # Hard cap for feed uploads (Content-Length guard)
    max_json_kb: int = 512  # Cap for JSON bodies such as configs and settings rows
    # Key for connection passwords at rest; any string, derived into a Fernet key.
    secret_key: str = "change-me"

class LoggingSettings(BaseSettings):
    log_requests: bool = True
    level: str = "INFO"

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_nested_delimiter="__", env_file=".env", extra="ignore")
    app: AppSettings = AppSettings()
    paths: PathSettings = PathSettings()
    imports: ImportSettings = ImportSettings()
    connectors: ConnectorSettings = ConnectorSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    security: SecuritySettings = SecuritySettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        # Load from default path if exists
        default_path = Path("config/settings.yaml")
        path = config_path or (default_path if default_path.exists() else None)

        if not path:
            return cls()

        with open(path, "r") as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

settings = Settings.load()
