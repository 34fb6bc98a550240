"""
Runtime settings for task mode.

Values come from the environment (entry points call load_dotenv() first,
so a local .env file works too).
"""

import os
from dataclasses import dataclass


GROUPING_STYLES = ("international", "indian")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass
class Settings:
    """Configuration for streaming, recovery and export."""
    api_url: str = "http://localhost:3000/api/task"
    timeout: float = 300.0  # large reports stream for minutes
    throttle_ms: float = 100.0
    progress_ceiling: float = 95.0
    number_grouping: str = "international"
    strict_repair: bool = False
    log_level: str = "INFO"

    def __post_init__(self):
        if self.number_grouping not in GROUPING_STYLES:
            raise ValueError(
                f"number_grouping must be one of {', '.join(GROUPING_STYLES)}, "
                f"got {self.number_grouping!r}"
            )
        if not 0 < self.progress_ceiling < 100:
            raise ValueError("progress_ceiling must be between 0 and 100")

    @property
    def throttle_seconds(self) -> float:
        return self.throttle_ms / 1000.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            api_url=os.getenv("TASKMODE_API_URL", cls.api_url),
            timeout=_env_float("TASKMODE_TIMEOUT", cls.timeout),
            throttle_ms=_env_float("TASKMODE_THROTTLE_MS", cls.throttle_ms),
            progress_ceiling=_env_float("TASKMODE_PROGRESS_CEILING", cls.progress_ceiling),
            number_grouping=os.getenv("TASKMODE_NUMBER_GROUPING", cls.number_grouping).strip().lower(),
            strict_repair=_env_bool("TASKMODE_STRICT_REPAIR", cls.strict_repair),
            log_level=os.getenv("TASKMODE_LOG_LEVEL", cls.log_level).upper(),
        )
