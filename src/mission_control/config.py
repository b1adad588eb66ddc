"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".mission_control" / "mc.db")
    gateway_url: str = "ws://127.0.0.1:18789"
    gateway_token: str | None = None
    gateway_timeout: float = 10.0
    api_token: str | None = None
    webhook_secret: str | None = None
    base_url: str = "http://localhost:8787"
    projects_path: str = field(default_factory=lambda: str(Path.home() / "projects"))
    planning_poll_attempts: int = 30
    planning_poll_interval: float = 0.5
    planning_background: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("MC_DB_PATH"):
            config.db_path = Path(db)

        if url := os.environ.get("MC_GATEWAY_URL"):
            config.gateway_url = url

        config.gateway_token = os.environ.get("MC_GATEWAY_TOKEN") or None

        if timeout := os.environ.get("MC_GATEWAY_TIMEOUT"):
            config.gateway_timeout = float(timeout)

        config.api_token = os.environ.get("MC_API_TOKEN") or None
        config.webhook_secret = os.environ.get("WEBHOOK_SECRET") or None

        if base := os.environ.get("MC_URL"):
            config.base_url = base.rstrip("/")

        if projects := os.environ.get("MC_PROJECTS_PATH"):
            config.projects_path = projects.rstrip("/")

        if attempts := os.environ.get("MC_PLANNING_POLL_ATTEMPTS"):
            config.planning_poll_attempts = int(attempts)

        if interval := os.environ.get("MC_PLANNING_POLL_INTERVAL"):
            config.planning_poll_interval = float(interval)

        if background := os.environ.get("MC_PLANNING_BACKGROUND"):
            config.planning_background = background.lower() in ("1", "true", "yes", "on")

        if level := os.environ.get("MC_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
