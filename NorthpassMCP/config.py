"""
Configuration management for Northpass MCP Server.
Loads the API key and client settings from config.json or environment variables.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path

_CONFIG_DIR = Path(__file__).parent
_CONFIG_FILE = _CONFIG_DIR / "config.json"

DEFAULT_BASE_URL = "https://api.northpass.com"
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "northpass-mcp"


@dataclass(frozen=True)
class NorthpassConfig:
    """Immutable configuration for Northpass API access."""
    api_key: str
    base_url: str = DEFAULT_BASE_URL
    proxy_url: str | None = None
    cache_dir: Path = DEFAULT_CACHE_DIR
    cache_max_entries: int = 2000
    log_level: str = "INFO"
    timeout: float = 30.0
    use_properties: bool = True

    @property
    def api_base_url(self) -> str:
        """Same-origin proxy path when configured, otherwise the upstream API."""
        return (self.proxy_url or self.base_url).rstrip("/")


_cached_config: NorthpassConfig | None = None


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("0", "false", "no", "off", "")
    return bool(value)


def get_config() -> NorthpassConfig:
    """
    Load configuration from config.json or environment variables.
    Cached after first load.

    Environment variable fallbacks:
        NORTHPASS_API_KEY, NORTHPASS_BASE_URL, NORTHPASS_PROXY_URL,
        NORTHPASS_CACHE_DIR, NORTHPASS_CACHE_MAX_ENTRIES,
        NORTHPASS_LOG_LEVEL, NORTHPASS_TIMEOUT, NORTHPASS_USE_PROPERTIES
    """
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    data = {}
    if _CONFIG_FILE.exists():
        with open(_CONFIG_FILE) as f:
            data = json.load(f)

    # Environment variables override / fallback
    api_key = os.environ.get("NORTHPASS_API_KEY", data.get("apiKey"))
    base_url = os.environ.get("NORTHPASS_BASE_URL", data.get("baseUrl", DEFAULT_BASE_URL))
    proxy_url = os.environ.get("NORTHPASS_PROXY_URL", data.get("proxyUrl")) or None
    cache_dir = os.environ.get("NORTHPASS_CACHE_DIR", data.get("cacheDir"))
    max_entries = os.environ.get("NORTHPASS_CACHE_MAX_ENTRIES", data.get("cacheMaxEntries", 2000))
    log_level = os.environ.get("NORTHPASS_LOG_LEVEL", data.get("logLevel", "INFO"))
    timeout = os.environ.get("NORTHPASS_TIMEOUT", data.get("timeout", 30.0))
    use_properties = os.environ.get("NORTHPASS_USE_PROPERTIES", data.get("usePropertiesApi", True))

    if not api_key:
        raise ValueError(
            "No API key found. Set NORTHPASS_API_KEY env var or create NorthpassMCP/config.json"
        )

    _cached_config = NorthpassConfig(
        api_key=api_key,
        base_url=base_url,
        proxy_url=proxy_url,
        cache_dir=Path(cache_dir).expanduser() if cache_dir else DEFAULT_CACHE_DIR,
        cache_max_entries=int(max_entries),
        log_level=str(log_level).upper(),
        timeout=float(timeout),
        use_properties=_as_bool(use_properties),
    )
    return _cached_config


def reload_config() -> NorthpassConfig:
    """Force reload configuration (useful if the API key is rotated)."""
    global _cached_config
    _cached_config = None
    return get_config()
