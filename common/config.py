"""
Application configuration.

Values come from ``config.json`` in the config directory; environment
variables (optionally from a ``.env`` file) take precedence.
"""

from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Optional, Dict, Any
import json
import logging
import os

from dotenv import load_dotenv

from common.constants import DEFAULT_CONFIG_DIR, CONFIG_FILENAME, MOVE_TIMEOUT_SEC, DEFAULT_SERVER_PORT

logger = logging.getLogger(__name__)

ENV_CONFIG_DIR = "MEDIALIB_CONFIG_DIR"
ENV_LOG_LEVEL = "MEDIALIB_LOG_LEVEL"
ENV_LIBRARY = "MEDIALIB_LIBRARY"
ENV_PORT = "MEDIALIB_PORT"


@dataclass
class AppConfig:
    config_dir: str = DEFAULT_CONFIG_DIR
    log_level: str = "INFO"
    log_file: Optional[str] = None
    default_library: Optional[str] = None
    server_port: int = DEFAULT_SERVER_PORT
    thumbnail_width: int = 320
    extract_dominant_color: bool = True
    move_timeout_sec: float = MOVE_TIMEOUT_SEC

    @property
    def config_path(self) -> Path:
        return Path(self.config_dir).expanduser()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AppConfig':
        field_names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in field_names})

    @classmethod
    def load(cls, config_dir: Optional[str] = None, env_file: Optional[str] = None) -> 'AppConfig':
        """
        Build the effective configuration.

        Args:
            config_dir: Overrides MEDIALIB_CONFIG_DIR and the default location
            env_file: Path to a .env file (python-dotenv searches upwards if None)
        """
        load_dotenv(env_file, override=False)

        base_dir = config_dir or os.getenv(ENV_CONFIG_DIR) or DEFAULT_CONFIG_DIR
        path = Path(base_dir).expanduser() / CONFIG_FILENAME
        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.error(f"Error loading config {path}: {e}")
                data = {}

        config = cls.from_dict(data)
        config.config_dir = base_dir

        if os.getenv(ENV_LOG_LEVEL):
            config.log_level = os.environ[ENV_LOG_LEVEL]
        if os.getenv(ENV_LIBRARY):
            config.default_library = os.environ[ENV_LIBRARY]
        if os.getenv(ENV_PORT):
            try:
                config.server_port = int(os.environ[ENV_PORT])
            except ValueError:
                logger.warning(f"Ignoring invalid {ENV_PORT}={os.environ[ENV_PORT]!r}")
        return config

    def save(self) -> Path:
        path = self.config_path / CONFIG_FILENAME
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return path
