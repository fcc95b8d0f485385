"""Bybit API credentials: environment first, then a JSON credentials file."""
import json
import os
from pathlib import Path
from typing import Dict, NamedTuple, Optional

DEFAULT_CREDENTIALS_FILE = Path.home() / ".bybit_config.json"


class BybitCredentials(NamedTuple):
    api_key: str
    api_secret: str


def _credentials_file(config_path: Optional[str]) -> Path:
    if config_path:
        return Path(config_path)
    override = os.getenv("BYBIT_CONFIG_PATH")
    return Path(override) if override else DEFAULT_CREDENTIALS_FILE


def load_credentials(config_path: Optional[str] = None) -> BybitCredentials:
    """Resolve credentials from BYBIT_API_KEY / BYBIT_SECRET or a JSON file.

    The file holds ``{"api_key": ..., "api_secret": ...}`` and is looked up at
    ``config_path``, then ``$BYBIT_CONFIG_PATH``, then ``~/.bybit_config.json``.
    Raises ValueError if no complete pair is found or the file is unreadable.
    """
    api_key = os.getenv("BYBIT_API_KEY")
    api_secret = os.getenv("BYBIT_SECRET")
    if api_key and api_secret:
        return BybitCredentials(api_key, api_secret)

    path = _credentials_file(config_path)
    if path.exists():
        try:
            stored = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise ValueError(f"Failed to load config from {path}: {e}")
        api_key = stored.get("api_key") or api_key
        api_secret = stored.get("api_secret") or api_secret

    if not (api_key and api_secret):
        raise ValueError(
            f"Missing Bybit credentials: set BYBIT_API_KEY and BYBIT_SECRET or provide {path}"
        )
    return BybitCredentials(api_key, api_secret)


def mask_credentials(credentials: BybitCredentials) -> Dict[str, str]:
    """Loggable view of the credentials."""
    return {
        "api_key": credentials.api_key[:8] + "***masked***",
        "api_secret": "***masked***",
    }
