"""
Sharing server settings, persisted as ``server-config.json``.
"""

from dataclasses import dataclass, asdict, field, fields
from pathlib import Path
from typing import List, Optional, Dict, Any
import json
import logging

from common.constants import (
    DEFAULT_SERVER_PORT,
    SERVER_CONFIG_FILENAME,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_SEC,
)
from common.crypto import TokenAuth

logger = logging.getLogger(__name__)

MIN_HOST_SECRET_LENGTH = 64


@dataclass
class ServerConfig:
    """
    Configuration of the library sharing server.

    Attributes:
        host_secret: Hex key signing access tokens and encrypting stored
            credentials. Regenerated if missing or too short.
        allowed_ips: Exact-match allow-list; empty allows every address
        publish_library_path: Library served to remote users
    """
    is_enabled: bool = False
    port: int = DEFAULT_SERVER_PORT
    host: str = "0.0.0.0"
    host_secret: str = ""
    allowed_ips: List[str] = field(default_factory=list)
    max_connections: int = 10
    max_upload_size_mb: int = 5120
    enable_audit_log: bool = True
    require_https: bool = False
    ssl_cert_path: Optional[str] = None
    ssl_key_path: Optional[str] = None
    publish_library_path: Optional[str] = None
    rate_limit_max: int = RATE_LIMIT_MAX_REQUESTS
    rate_limit_window_sec: int = RATE_LIMIT_WINDOW_SEC

    def __post_init__(self):
        if not self.host_secret or len(self.host_secret) < MIN_HOST_SECRET_LENGTH:
            self.host_secret = TokenAuth.generate_host_secret()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServerConfig':
        aliases = {
            "isEnabled": "is_enabled",
            "hostSecret": "host_secret",
            "allowedIPs": "allowed_ips",
            "maxConnections": "max_connections",
            "maxUploadSize": "max_upload_size_mb",
            "enableAuditLog": "enable_audit_log",
            "requireHttps": "require_https",
            "sslCertPath": "ssl_cert_path",
            "sslKeyPath": "ssl_key_path",
            "publishLibraryPath": "publish_library_path",
        }
        field_names = {f.name for f in fields(cls)}
        filtered = {}
        for key, value in data.items():
            key = aliases.get(key, key)
            if key in field_names:
                filtered[key] = value
        return cls(**filtered)

    @property
    def ssl_context(self):
        """(cert, key) tuple for the WSGI server, or None for plain HTTP."""
        if self.require_https and self.ssl_cert_path and self.ssl_key_path:
            return (self.ssl_cert_path, self.ssl_key_path)
        return None

    @property
    def max_upload_bytes(self) -> int:
        return int(self.max_upload_size_mb) * 1024 * 1024

    @classmethod
    def load(cls, config_dir: str) -> 'ServerConfig':
        """Read the settings, creating the file with defaults if needed."""
        path = Path(config_dir).expanduser() / SERVER_CONFIG_FILENAME
        data = {}
        if path.exists():
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.error(f"Error loading {path}: {e}")
        config = cls.from_dict(data)
        if config.host_secret != data.get("host_secret", data.get("hostSecret")):
            config.save(config_dir)
        return config

    def save(self, config_dir: str) -> Path:
        path = Path(config_dir).expanduser() / SERVER_CONFIG_FILENAME
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        return path

    def reset_host_secret(self) -> str:
        self.host_secret = TokenAuth.generate_host_secret()
        return self.host_secret
