"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".squad_ledger" / "ledger.db")
    log_level: str = "WARNING"
    enforce_policy: bool = True
    default_project_mode: str = "local"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("SQ_DB_PATH"):
            config.db_path = Path(db)

        if level := os.environ.get("SQ_LOG_LEVEL"):
            config.log_level = level.upper()

        if enforce := os.environ.get("SQ_ENFORCE_POLICY"):
            config.enforce_policy = enforce.strip().lower() not in _FALSE_VALUES

        if mode := os.environ.get("SQ_DEFAULT_MODE"):
            config.default_project_mode = mode

        return config


def get_config() -> Config:
    return Config.from_env()
