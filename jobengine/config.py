"""
Configuration module for the job engine
"""

import os
import threading
from pathlib import Path
from typing import Dict, List, Optional


def env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable"""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def env_list(key: str, default: str = "") -> List[str]:
    """Get a comma separated list from environment variable"""
    return [item.strip() for item in os.getenv(key, default).split(",") if item.strip()]


def _read_version_from_repo(default: str = "dev") -> str:
    try:
        # repo root: jobengine/.. (two parents up)
        version_file = Path(__file__).resolve().parents[1] / "VERSION"
        v = version_file.read_text(encoding="utf-8").strip()
        if v:
            return v
    except OSError:
        pass
    return os.getenv("APP_VERSION", default)


API_VERSION = _read_version_from_repo()

# API configuration
API_PREFIX = "/v1"
APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = int(os.getenv("APP_PORT", "8484"))

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")
LOG_EXCLUDE_PATHS = set(env_list("LOG_EXCLUDE_PATHS", "/v1/healthz,/v1/metrics/prometheus"))

# Workspace the backing commands run in
JOB_WORKDIR = os.getenv("JOB_WORKDIR", os.getcwd())
JOB_ENVIRONMENT = os.getenv("JOB_ENVIRONMENT", "")
INFRA_STAGE = os.getenv("INFRA_STAGE", "dev")
JOB_RECIPES_FILE = os.getenv("JOB_RECIPES_FILE", "")

# Deploy protection
PROTECTED_ENVIRONMENTS = env_list("PROTECTED_ENVIRONMENTS", "prod,production")

# target -> stack name overrides, "a=b,c=d"
STACK_ALIASES: Dict[str, str] = dict(
    pair.split("=", 1)
    for pair in env_list("STACK_ALIASES", "static-backend=backend,beanstalk-backend=backend-beanstalk")
    if "=" in pair
)

# Execution policy
MAX_ACTIVE_JOBS = int(os.getenv("MAX_ACTIVE_JOBS", "0"))  # 0 = unlimited
CANCEL_GRACE_SEC = float(os.getenv("CANCEL_GRACE_SEC", "5"))
APPROVAL_TIMEOUT_SEC = float(os.getenv("APPROVAL_TIMEOUT_SEC", "0"))  # 0 = wait forever
STREAM_DRAIN_TIMEOUT_SEC = float(os.getenv("STREAM_DRAIN_TIMEOUT_SEC", "2"))
SSE_KEEPALIVE_SEC = float(os.getenv("SSE_KEEPALIVE_SEC", "15"))

# Job history
JOB_ARCHIVE_ENABLED = env_bool("JOB_ARCHIVE_ENABLED", True)
JOB_DB_URL = os.getenv("JOB_DB_URL", "sqlite:///./jobs.db")
JOB_HISTORY_LIMIT = int(os.getenv("JOB_HISTORY_LIMIT", "50"))


class RuntimeConfig:
    """Runtime configuration for values the UI can switch without a restart"""

    def __init__(self, environment: Optional[str] = None, protected: Optional[List[str]] = None):
        self._lock = threading.Lock()
        self._environment = environment if environment is not None else JOB_ENVIRONMENT
        self._protected = list(protected if protected is not None else PROTECTED_ENVIRONMENTS)

    @property
    def environment(self) -> Optional[str]:
        with self._lock:
            return self._environment or None

    @property
    def protected_environments(self) -> List[str]:
        with self._lock:
            return list(self._protected)

    def set_environment(self, environment: Optional[str]):
        """Select the environment deploys target by default"""
        with self._lock:
            self._environment = (environment or "").strip()

    def set_protected_environments(self, names: List[str]):
        with self._lock:
            self._protected = [n.strip() for n in names if n and n.strip()]

    def is_protected(self, environment: Optional[str]) -> bool:
        """Case-insensitive match against the protected list"""
        if not environment:
            return False
        env = environment.lower()
        return any(env == p.lower() for p in self.protected_environments)

    def get_all(self) -> dict:
        environment = self.environment
        return {
            "environment": environment,
            "protected_environments": self.protected_environments,
            "is_protected": self.is_protected(environment),
        }
