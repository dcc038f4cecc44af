import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def env_str(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


def env_bool(key: str, default: str = "false") -> bool:
    return os.getenv(key, default).strip().lower() == "true"


def env_int(key: str, default: str) -> int:
    try:
        return int(os.getenv(key, default))
    except ValueError:
        return int(default)


def env_float(key: str, default: str) -> float:
    try:
        return float(os.getenv(key, default))
    except ValueError:
        return float(default)


def configure_logging() -> None:
    level = env_str("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dataclass
class SchedulerSettings:
    tick_interval: float = 60.0
    default_time_zone: str = "UTC"

    @classmethod
    def from_env(cls) -> "SchedulerSettings":
        tick = env_float("TICK_INTERVAL_SECONDS", "60")
        if tick <= 0:
            tick = 60.0
        return cls(
            tick_interval=tick,
            default_time_zone=env_str("DEFAULT_TIME_ZONE", "UTC") or "UTC",
        )
