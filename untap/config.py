from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings

ROOT_DIR = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Storage
    db_path: Path = ROOT_DIR / "data" / "untap.db"
    services_path: Path = ROOT_DIR / "services.yaml"
    seed_on_startup: bool = True

    # Worker
    worker_interval_ms: int = 60_000
    worker_autostart: bool = False
    worker_max_concurrency: int = 4
    probe_grace_ms: int = 2_000  # allowed overhead on top of a service timeout

    # Incident hysteresis
    incident_window_minutes: int = 5
    incident_min_samples: int = 5
    incident_threshold_open: float = 0.6
    incident_threshold_close: float = 0.2

    # Live status lookback
    status_window_minutes: int = 5

    # Probes
    http_user_agent: str = "untap-monitor/1.0"
    http_max_body_bytes: int = 1_048_576

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"

    # Notifications (optional, Slack and/or Telegram)
    slack_webhook_url: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    notify_timeout_s: float = 10.0


settings = Settings()
