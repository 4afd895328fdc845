"""Environment-driven settings for the MaBourse sync backend."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    return os.environ.get(name, str(default)).lower() == "true"


@dataclass(frozen=True)
class Settings:
    environment: str
    data_dir: Path
    sync_timeout_seconds: float
    forecast_months: int
    demo_mode: bool

    @classmethod
    def from_env(cls) -> "Settings":
        default_dir = Path(__file__).resolve().parents[2] / "data"
        return cls(
            environment=os.environ.get("ENVIRONMENT", "development"),
            data_dir=Path(os.environ.get("MABOURSE_DATA_DIR", str(default_dir))),
            sync_timeout_seconds=float(os.environ.get("SYNC_TIMEOUT_SECONDS", "30")),
            forecast_months=int(os.environ.get("FORECAST_MONTHS", "6")),
            demo_mode=_env_bool("DEMO_MODE", True),
        )


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once; call get_settings.cache_clear() to reload."""
    return Settings.from_env()
