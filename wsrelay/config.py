import enum
import os
from dataclasses import dataclass


class OverflowPolicy(str, enum.Enum):
    """What a full outbound queue does with the next message."""

    DROP_OLDEST = "drop-oldest"
    DISCONNECT = "disconnect"


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_policy(name: str, default: OverflowPolicy) -> OverflowPolicy:
    try:
        return OverflowPolicy(os.getenv(name, default.value))
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    host: str = _env("RELAY_HOST", "0.0.0.0")
    port: int = _env_int("RELAY_PORT", 8765)
    # Empty means connections are accepted on any request path.
    path: str = _env("RELAY_PATH", "")

    queue_size: int = _env_int("RELAY_QUEUE_SIZE", 256)
    overflow_policy: OverflowPolicy = _env_policy("RELAY_OVERFLOW_POLICY", OverflowPolicy.DISCONNECT)
    drain_timeout: float = _env_float("RELAY_DRAIN_TIMEOUT", 5.0)
    max_connections: int = _env_int("RELAY_MAX_CONNECTIONS", 1000)

    log_level: str = _env("RELAY_LOG_LEVEL", "INFO")


settings = Settings()
