import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables from .env file
load_dotenv()


# ============================================================================
# Settings Loader
# ============================================================================

# Cache for loaded settings
_settings_cache = None


class Settings(BaseModel):
    """Runtime configuration of the orchestrator process."""

    port: int = 8080
    enable_remote_plugins: bool = False
    remote_plugin_launchers: List[str] = Field(default_factory=list)
    remote_plugin_health_interval: float = 30.0
    bridge_timeout_seconds: float = 300.0

    storage_backend: str = "memory"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "ingest"
    postgres_user: str = "ingest_user"
    postgres_password: str = "ingest_password"
    postgres_min_pool: int = 2
    postgres_max_pool: int = 10

    collector_page_size: int = 100
    collector_concurrency: int = 1
    api_client_retries: int = 3
    api_client_timeout_seconds: float = 30.0

    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_json: bool = True


def parse_port(raw: str) -> int:
    """
    Parse the PORT setting.

    Accepts both ``8080`` and ``:8080``.

    Raises:
        ValueError: If the value is not an integer port
    """
    value = str(raw).strip().lstrip(":")
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"PORT [{raw}] must be int")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    return [item.strip() for item in value.split(",") if item.strip()]


def get_settings(force_reload: bool = False) -> Settings:
    """
    Load settings from environment variables.

    Args:
        force_reload: If True, re-read the environment even if cached

    Returns:
        Settings with defaults for missing values
    """
    global _settings_cache

    if _settings_cache is not None and not force_reload:
        return _settings_cache

    _settings_cache = Settings(
        port=parse_port(os.getenv("PORT", "8080")),
        enable_remote_plugins=_env_bool("ENABLE_REMOTE_PLUGINS", False),
        remote_plugin_launchers=_env_list("REMOTE_PLUGIN_LAUNCHERS"),
        remote_plugin_health_interval=float(os.getenv("REMOTE_PLUGIN_HEALTH_INTERVAL", "30")),
        bridge_timeout_seconds=float(os.getenv("BRIDGE_TIMEOUT_SECONDS", "300")),
        storage_backend=os.getenv("STORAGE_BACKEND", "memory").lower(),
        postgres_host=os.getenv("POSTGRES_HOST", "localhost"),
        postgres_port=int(os.getenv("POSTGRES_PORT", "5432")),
        postgres_db=os.getenv("POSTGRES_DB", "ingest"),
        postgres_user=os.getenv("POSTGRES_USER", "ingest_user"),
        postgres_password=os.getenv("POSTGRES_PASSWORD", "ingest_password"),
        postgres_min_pool=int(os.getenv("POSTGRES_MIN_POOL", "2")),
        postgres_max_pool=int(os.getenv("POSTGRES_MAX_POOL", "10")),
        collector_page_size=int(os.getenv("COLLECTOR_PAGE_SIZE", "100")),
        collector_concurrency=int(os.getenv("COLLECTOR_CONCURRENCY", "1")),
        api_client_retries=int(os.getenv("API_CLIENT_RETRIES", "3")),
        api_client_timeout_seconds=float(os.getenv("API_CLIENT_TIMEOUT_SECONDS", "30")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE"),
        log_json=_env_bool("LOG_JSON", True),
    )
    return _settings_cache
