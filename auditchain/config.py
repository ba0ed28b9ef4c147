"""
Audit chain configuration.

Provides sensible local-development defaults with override capability.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict


class ChainConfig(BaseModel):
    """
    Configuration for an audit chain node.

    All paths default to the ~/.auditchain/ directory.
    Environment variables override defaults (AUDITCHAIN_* prefix).
    """

    # Storage
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".auditchain")
    db_file: str = "chain.db"

    # Network
    relay_url: str = "ws://localhost:8080"
    api_url: str = "http://localhost:8080"
    room_id: str = "default"
    channel_name: str = "auditchain-sync"

    # Sync
    sync_wait: float = 1.0

    # Relay reconnection
    reconnect_delay: float = 3.0
    max_reconnect_delay: float = 30.0
    max_reconnect_attempts: int = 10
    max_queued_messages: int = 1000

    # HTTP side-channel
    http_timeout: float = 5.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def model_post_init(self, __context):
        """Apply environment variable overrides."""
        self._apply_env_overrides()

    def _apply_env_overrides(self):
        """Override config from environment variables."""
        env_map = {
            "AUDITCHAIN_DATA_DIR": ("data_dir", Path),
            "AUDITCHAIN_RELAY_URL": ("relay_url", str),
            "AUDITCHAIN_API_URL": ("api_url", str),
            "AUDITCHAIN_ROOM_ID": ("room_id", str),
            "AUDITCHAIN_CHANNEL_NAME": ("channel_name", str),
            "AUDITCHAIN_SYNC_WAIT": ("sync_wait", float),
            "AUDITCHAIN_LOG_LEVEL": ("log_level", str),
        }

        for env_var, (attr, type_fn) in env_map.items():
            value = os.environ.get(env_var)
            if value is not None:
                setattr(self, attr, type_fn(value))

    def ensure_directories(self) -> None:
        """Create data directory if needed."""
        if isinstance(self.data_dir, str):
            self.data_dir = Path(self.data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def db_path(self) -> Path:
        """Full path to the chain database."""
        return Path(self.data_dir) / self.db_file

    @classmethod
    def from_dict(cls, data: dict) -> "ChainConfig":
        return cls(**data)

    def to_dict(self) -> dict:
        data = self.model_dump()
        data["data_dir"] = str(data["data_dir"])
        return data
