# Task board: configuration
# Defaults, overridden by board.yaml, then by TASKBOARD_* environment variables.

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent / "board.yaml"

# env var -> (field, type)
ENV_OVERRIDES = {
    "TASKBOARD_DB": ("db_path", str),
    "TASKBOARD_HOST": ("host", str),
    "TASKBOARD_PORT": ("port", int),
    "TASKBOARD_LOG_LEVEL": ("log_level", str),
    "TASKBOARD_API_URL": ("api_url", str),
}


@dataclass
class BoardConfig:
    """Runtime configuration for the board server and client."""

    # Storage
    db_path: str = "~/.local/share/taskboard/board.db"

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "INFO"

    # Client side
    api_url: str = "http://127.0.0.1:3000"
    request_timeout: float = 5.0

    # Activity log
    event_log_limit: int = 50

    def resolve_paths(self):
        """Expand ~ in paths."""
        self.db_path = str(Path(self.db_path).expanduser())

    def apply_env(self, environ=None):
        environ = os.environ if environ is None else environ
        for var, (name, cast) in ENV_OVERRIDES.items():
            if environ.get(var):
                setattr(self, name, cast(environ[var]))

    @classmethod
    def load(cls, path: Optional[str] = None, environ=None) -> "BoardConfig":
        """Load config from YAML, falling back to defaults for anything missing."""
        cfg_path = Path(path) if path else CONFIG_PATH
        known = {f.name for f in fields(cls)}
        cfg = cls()
        if cfg_path.exists():
            with open(cfg_path, "r") as f:
                data = yaml.safe_load(f) or {}
            ignored = set(data) - known
            if ignored:
                logger.warning(f"Ignoring unknown config keys in {cfg_path}: {sorted(ignored)}")
            cfg = cls(**{k: v for k, v in data.items() if k in known})
        elif path:
            logger.warning(f"Config file {cfg_path} not found, using defaults")
        cfg.apply_env(environ)
        cfg.resolve_paths()
        return cfg
