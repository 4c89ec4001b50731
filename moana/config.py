import os
from dataclasses import dataclass
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return int(raw)
    except Exception:
        return default


def _float_env(name: str, default: float) -> float:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return float(raw)
    except Exception:
        return default


def _str_env(name: str, default: str) -> str:
    return str(os.getenv(name, default)).strip() or default


WORKDIR = _str_env("MOANA_WORKDIR", ".")
DATABASE_URL = _str_env("MOANA_DATABASE_URL", f"sqlite:///{Path(WORKDIR) / 'moana.db'}")
API_PORT = _int_env("MOANA_API_PORT", 8011)
API_PREFIX = "/api/v1"
BIND_HOST = _str_env("MOANA_BIND_HOST", "0.0.0.0")
AGENT_PORT = _int_env("MOANA_AGENT_PORT", 8012)

# Brick daemons listen on the IANA dynamic range, same as glusterd
BRICK_BASE_PORT = _int_env("MOANA_BRICK_BASE_PORT", 49152)
BRICK_MAX_PORT = _int_env("MOANA_BRICK_MAX_PORT", 65535)

TASK_MAX_ATTEMPTS = _int_env("MOANA_TASK_MAX_ATTEMPTS", 3)
TASK_RETRY_BACKOFF_SECONDS = _float_env("MOANA_TASK_RETRY_BACKOFF_SECONDS", 1.0)
AGENT_ACK_TIMEOUT_SECONDS = _float_env("MOANA_AGENT_ACK_TIMEOUT_SECONDS", 30.0)

BRICK_DAEMON = _str_env("MOANA_BRICK_DAEMON", "glusterfsd")


@dataclass
class Settings:
    """Snapshot of the process configuration, injectable for tests."""
    workdir: str = WORKDIR
    database_url: str = DATABASE_URL
    agent_port: int = AGENT_PORT
    brick_base_port: int = BRICK_BASE_PORT
    brick_max_port: int = BRICK_MAX_PORT
    task_max_attempts: int = TASK_MAX_ATTEMPTS
    task_retry_backoff_seconds: float = TASK_RETRY_BACKOFF_SECONDS
    agent_ack_timeout_seconds: float = AGENT_ACK_TIMEOUT_SECONDS

    @property
    def volfile_dir(self) -> Path:
        return Path(self.workdir) / "volfiles"

    @property
    def launch_config_dir(self) -> Path:
        return Path(self.workdir) / "bricks"
