"""Gigbook configuration management."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

import yaml


@dataclass
class Config:
    """Gigbook configuration."""

    workspace_path: Path = field(default_factory=lambda: Path.home() / ".gigbook")
    database_name: str = "gigbook.db"
    log_level: str = "INFO"
    wal_mode: bool = True

    # Progress blend: elapsed time vs completed deliverables
    progress_time_weight: float = 0.4
    progress_deliverable_weight: float = 0.6

    # Commit retry budget
    max_commit_attempts: int = 5
    retry_backoff_base: float = 0.05
    retry_backoff_max: float = 1.0
    lock_timeout: float = 5.0

    # Attempts at drawing a fresh proposal number / project code / contract number
    identifier_attempts: int = 5

    default_ledger_category: str = "other"

    @classmethod
    def load(cls, workspace_path: Path | None = None) -> Config:
        """Load config from YAML file, env vars, then defaults."""
        config = cls()

        if workspace_path:
            config.workspace_path = workspace_path

        env_path = os.environ.get("GIGBOOK_WORKSPACE")
        if env_path:
            config.workspace_path = Path(env_path)

        env_log = os.environ.get("GIGBOOK_LOG_LEVEL")
        if env_log:
            config.log_level = env_log

        config_file = config.workspace_path / "config.yaml"
        if config_file.exists():
            with open(config_file) as f:
                data = yaml.safe_load(f) or {}
            for key, value in data.items():
                if hasattr(config, key):
                    expected_type = type(getattr(config, key))
                    if expected_type is Path or isinstance(getattr(config, key), Path):
                        setattr(config, key, Path(value))
                    elif expected_type is bool:
                        setattr(config, key, _as_bool(value))
                    else:
                        setattr(config, key, expected_type(value))

        config.validate()
        return config

    def validate(self) -> None:
        if self.progress_time_weight < 0 or self.progress_deliverable_weight < 0:
            raise ValueError("progress weights must not be negative")
        if self.progress_time_weight + self.progress_deliverable_weight <= 0:
            raise ValueError("progress weights must not both be zero")
        if self.max_commit_attempts < 1:
            raise ValueError("max_commit_attempts must be at least 1")
        if self.identifier_attempts < 1:
            raise ValueError("identifier_attempts must be at least 1")

    @property
    def db_path(self) -> Path:
        return self.workspace_path / self.database_name

    @property
    def progress_weights(self) -> tuple[Decimal, Decimal]:
        """(time, deliverables) weights as exact decimals."""
        return (
            Decimal(str(self.progress_time_weight)),
            Decimal(str(self.progress_deliverable_weight)),
        )

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff before retry number ``attempt`` (1-based)."""
        return min(self.retry_backoff_max, self.retry_backoff_base * (2 ** (attempt - 1)))

    def save(self) -> None:
        """Save current config to YAML."""
        self.workspace_path.mkdir(parents=True, exist_ok=True)
        config_file = self.workspace_path / "config.yaml"
        data = {
            "database_name": self.database_name,
            "log_level": self.log_level,
            "wal_mode": self.wal_mode,
            "progress_time_weight": self.progress_time_weight,
            "progress_deliverable_weight": self.progress_deliverable_weight,
            "max_commit_attempts": self.max_commit_attempts,
            "retry_backoff_base": self.retry_backoff_base,
            "retry_backoff_max": self.retry_backoff_max,
            "lock_timeout": self.lock_timeout,
            "identifier_attempts": self.identifier_attempts,
            "default_ledger_category": self.default_ledger_category,
        }
        with open(config_file, "w") as f:
            yaml.dump(data, f, default_flow_style=False)


def _as_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)
