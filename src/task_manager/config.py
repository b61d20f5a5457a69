"""Task manager configuration.

Loads from an optional YAML file with environment variable overrides.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DAY_SECONDS = 60 * 60 * 24


@dataclass
class ManagerConfig:
    """Configuration for one worker's task manager."""

    host: str = "0.0.0.0"
    port: int = 3000
    db_path: str = ".task-manager/tasks.db"
    admin_api_key: str = ""  # empty disables the admin key guard
    worker_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    task_timeout: float = 7 * 60.0  # running task without update is considered abandoned
    lease_time: float = 8 * 60.0  # lease length for one lifecycle transition
    intake_interval: float = 60.0
    drift_interval: float = 120.0
    local_status_interval: float = 30.0
    max_jitter: float = 10.0
    proxy_usage_interval: float = 7 * DAY_SECONDS
    http_proxy_max_users: int = 2
    watcher_enabled: bool = True

    CONFIG_FILE: Path = field(
        default_factory=lambda: Path.home() / ".task-manager" / "config.yaml",
        repr=False,
    )

    @property
    def local_status_passes_per_day(self) -> float:
        return DAY_SECONDS / self.local_status_interval

    @classmethod
    def load(cls, config_path: Path | None = None) -> ManagerConfig:
        """Load config from file and environment variables.

        Priority (highest wins):
          1. Environment variables (TASK_MANAGER_DB_PATH, TASK_MANAGER_ADMIN_API_KEY, etc.)
          2. Config file (~/.task-manager/config.yaml or custom path)
          3. Defaults
        """
        config = cls()
        file_path = config_path or config.CONFIG_FILE

        if file_path.exists():
            try:
                with open(file_path) as f:
                    data = yaml.safe_load(f) or {}

                config.host = data.get("host", config.host)
                config.port = int(data.get("port", config.port))
                config.db_path = data.get("db_path", config.db_path)
                config.admin_api_key = data.get("admin_api_key", config.admin_api_key)
                config.task_timeout = float(data.get("task_timeout", config.task_timeout))
                config.lease_time = float(data.get("lease_time", config.lease_time))
                config.intake_interval = float(
                    data.get("intake_interval", config.intake_interval)
                )
                config.drift_interval = float(data.get("drift_interval", config.drift_interval))
                config.local_status_interval = float(
                    data.get("local_status_interval", config.local_status_interval)
                )
                config.max_jitter = float(data.get("max_jitter", config.max_jitter))
                config.http_proxy_max_users = int(
                    data.get("http_proxy_max_users", config.http_proxy_max_users)
                )
                config.watcher_enabled = bool(data.get("watcher_enabled", config.watcher_enabled))
            except (yaml.YAMLError, OSError, ValueError):
                logger.warning("Ignoring unreadable config file %s", file_path)

        config.host = os.environ.get("TASK_MANAGER_HOST", config.host)
        config.db_path = os.environ.get("TASK_MANAGER_DB_PATH", config.db_path)
        config.admin_api_key = os.environ.get("TASK_MANAGER_ADMIN_API_KEY", config.admin_api_key)
        config.worker_id = os.environ.get("TASK_MANAGER_WORKER_ID", config.worker_id)

        if env_port := os.environ.get("TASK_MANAGER_HTTP_SERVICE_PORT"):
            config.port = int(env_port)
        if env_timeout := os.environ.get("TASK_MANAGER_TASK_TIMEOUT"):
            config.task_timeout = float(env_timeout)
        if env_lease := os.environ.get("TASK_MANAGER_LEASE_TIME"):
            config.lease_time = float(env_lease)
        if env_jitter := os.environ.get("TASK_MANAGER_MAX_JITTER"):
            config.max_jitter = float(env_jitter)
        if env_watcher := os.environ.get("TASK_MANAGER_WATCHER_ENABLED"):
            config.watcher_enabled = env_watcher.lower() not in ("0", "false", "no")

        if not config.admin_api_key:
            logger.warning(
                "TASK_MANAGER_ADMIN_API_KEY not set -- the control-plane API is unauthenticated."
            )

        return config
