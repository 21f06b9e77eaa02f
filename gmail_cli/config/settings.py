"""
Centralized configuration — all settings in one place.
Loads from environment variables with sensible defaults.
"""

from dataclasses import dataclass
from pathlib import Path
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

DEFAULT_CONFIG_DIR = Path.home() / ".gmail-cli"

# Interactive authorization gives up after this many seconds
DEFAULT_AUTH_TIMEOUT = 120


@dataclass
class Config:
    """Central configuration for gmail-cli."""

    # Storage
    config_dir: Path

    # Authorization
    auth_timeout: float

    # Logging / audit
    log_level: str
    audit_enabled: bool

    @classmethod
    def from_env(cls, config_dir: str | os.PathLike | None = None) -> "Config":
        """Load configuration from environment variables; an explicit config_dir wins."""
        env_dir = os.getenv("GMAIL_CLI_CONFIG_DIR")
        if config_dir is not None:
            resolved = Path(config_dir).expanduser()
        elif env_dir:
            resolved = Path(env_dir).expanduser()
        else:
            resolved = DEFAULT_CONFIG_DIR

        return cls(
            config_dir=resolved,
            auth_timeout=float(os.getenv("GMAIL_CLI_AUTH_TIMEOUT", str(DEFAULT_AUTH_TIMEOUT))),
            log_level=os.getenv("GMAIL_CLI_LOG_LEVEL", "DEBUG").upper(),
            audit_enabled=os.getenv("GMAIL_CLI_AUDIT", "true").lower() == "true",
        )

    @property
    def log_dir(self) -> Path:
        return self.config_dir / "logs"

    @property
    def audit_log_path(self) -> Path:
        return self.config_dir / "audit.jsonl"

    @property
    def attachments_dir(self) -> Path:
        return self.config_dir / "attachments"
