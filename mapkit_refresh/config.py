"""Application configuration loaded from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


class ConfigError(RuntimeError):
    """Raised when a required setting is missing or malformed."""


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Paths
DATA_DIR = Path(os.getenv("DATA_DIR", Path.cwd()))
AUTH_STATE_FILE = DATA_DIR / ".auth-state.json"
OUTPUT_PATH = os.getenv("OUTPUT_PATH", "")

# Apple ID
APPLE_USERNAME = os.getenv("APPLE_USERNAME", "")
APPLE_PASSWORD = os.getenv("APPLE_PASSWORD", "")

# HTTP service
SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("SERVER_PORT", "3000"))
SERVER_BASE_URL = os.getenv("SERVER_BASE_URL", "")

# Notifications
WECOM_ENABLED = _flag("WECOM_ENABLED", "false")
WECOM_WEBHOOK_URL = os.getenv("WECOM_WEBHOOK_URL", "")

# Browser
BROWSER_HEADLESS = _flag("BROWSER_HEADLESS", "false")
BROWSER_TIMEOUT = int(os.getenv("BROWSER_TIMEOUT", "60000"))
BROWSER_LOCALE = os.getenv("BROWSER_LOCALE", "zh-CN")
AUTH_CACHE = _flag("AUTH_CACHE", "true")
SETTLE_SCALE = float(os.getenv("SETTLE_SCALE", "1.0"))  # multiplier for fixed UI waits

# Tasks
VERIFICATION_TIMEOUT_SECONDS = int(os.getenv("VERIFICATION_TIMEOUT_SECONDS", "300"))
TASK_RETENTION_SECONDS = int(os.getenv("TASK_RETENTION_SECONDS", "1800"))
TASK_SWEEP_INTERVAL_SECONDS = int(os.getenv("TASK_SWEEP_INTERVAL_SECONDS", "600"))


def ensure_dirs():
    """Create required data directories if they don't exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)


def require_credentials(username: str = "", password: str = "") -> tuple[str, str]:
    """Resolve Apple ID credentials, explicit arguments first, then environment.

    Raises ConfigError when either value is still empty.
    """
    username = username or APPLE_USERNAME
    password = password or APPLE_PASSWORD
    if not username or not password:
        raise ConfigError(
            "Missing Apple ID credentials. Set APPLE_USERNAME and APPLE_PASSWORD "
            "in the environment or in a .env file."
        )
    return username, password


def public_base_url(port: int = SERVER_PORT) -> str:
    """Base URL used in links sent to the operator."""
    return (SERVER_BASE_URL or f"http://localhost:{port}").rstrip("/")
