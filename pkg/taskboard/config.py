# Taskboard: configuration
# Override paths and endpoints via config.yaml or environment variables.

import os
import yaml
from datetime import time, timedelta, timezone, tzinfo
from pathlib import Path
from dataclasses import dataclass, fields
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigError

CONFIG_PATH = Path.home() / ".config" / "taskboard" / "config.yaml"


def _parse_clock(value, name: str) -> time:
    try:
        if isinstance(value, int):
            # YAML 1.1 reads an unquoted 17:00 as sexagesimal minutes (1020)
            return time(value // 60, value % 60)
        hours, minutes = str(value).split(":")
        return time(int(hours), int(minutes))
    except ValueError:
        raise ConfigError(f"{name} must be HH:MM, got {value!r}")


@dataclass
class Config:
    """Runtime configuration for the task board server and clients."""

    # Storage
    db_path: str = "~/.local/share/taskboard/taskboard.db"
    position_cache_path: str = "~/.local/share/taskboard/positions.json"

    # Scheduling
    timezone: str = "UTC"
    work_day_start: str = "09:00"
    work_day_end: str = "17:00"
    position_ttl_hours: float = 24.0

    # Persistence retries
    retry_attempts: int = 3
    retry_base_delay: float = 1.0  # seconds, doubled per retry

    # Language model (OpenAI-compatible /chat/completions)
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4-turbo"
    llm_api_key_env: str = "TASKBOARD_LLM_API_KEY"
    llm_timeout: float = 60.0
    llm_temperature: float = 0.7

    # HTTP server
    max_upload_bytes: int = 10 * 1024 * 1024
    host: str = "127.0.0.1"
    port: int = 8089

    def resolve_paths(self):
        """Expand ~ in paths and apply environment overrides."""
        self.db_path = os.environ.get("TASKBOARD_DB") or self.db_path
        self.db_path = str(Path(self.db_path).expanduser())
        self.position_cache_path = str(Path(self.position_cache_path).expanduser())

    def validate(self):
        start, end = self.working_hours()
        if start >= end:
            raise ConfigError("work_day_start must be before work_day_end")
        if self.retry_attempts < 1:
            raise ConfigError("retry_attempts must be >= 1")
        if self.position_ttl_hours <= 0:
            raise ConfigError("position_ttl_hours must be > 0")
        self.tz()

    def working_hours(self) -> Tuple[time, time]:
        return (
            _parse_clock(self.work_day_start, "work_day_start"),
            _parse_clock(self.work_day_end, "work_day_end"),
        )

    def tz(self) -> tzinfo:
        if str(self.timezone).upper() == "UTC":
            return timezone.utc
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigError(f"Unknown timezone: {self.timezone!r}")

    @property
    def position_ttl(self) -> timedelta:
        return timedelta(hours=self.position_ttl_hours)

    @property
    def llm_api_key(self) -> str:
        return os.environ.get(self.llm_api_key_env, "")

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults. Unknown keys are ignored."""
        path = path or os.environ.get("TASKBOARD_CONFIG")
        cfg_path = Path(path).expanduser() if path else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse {cfg_path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
            known = {f.name for f in fields(cls)}
            cfg = cls(**{k: v for k, v in data.items() if k in known})
        else:
            cfg = cls()
        cfg.resolve_paths()
        cfg.validate()
        return cfg
