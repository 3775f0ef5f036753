"""Lens configuration — reads from lens.toml, env vars, and CLI args."""

import logging
import os
import sys
from pathlib import Path
from typing import Dict, Any
from pydantic_settings import BaseSettings
from pydantic import Field

# Handle tomli import for Python < 3.11 compatibility
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger("lens.config")

MEMORY_URL = "memory://"


class LensSettings(BaseSettings):
    """Warehouse run settings."""

    # Storage: any async SQLAlchemy URL, or memory:// for a throwaway run
    database_url: str = Field(
        default="sqlite+aiosqlite:///lens.db",
        alias="LENS_DATABASE_URL",
    )

    # Raw MovieLens CSV files (movies.csv, ratings.csv, tags.csv, ...)
    raw_data_dir: str = Field(default="./data/raw", alias="LENS_RAW_DATA_DIR")

    # Execution
    log_level: str = "info"
    batch_size: int = 1000
    max_parallel: int = 4
    fail_fast: bool = False

    model_config = {"env_prefix": "LENS_", "env_file": ".env", "populate_by_name": True}

    @property
    def in_memory(self) -> bool:
        return self.database_url.startswith(MEMORY_URL)


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}


def _load_toml_config() -> Dict[str, Any]:
    """Load configuration from lens.toml files.

    Searches for lens.toml in:
    1. LENS_HOME (~/.lens/lens.toml by default)
    2. Current directory (./lens.toml)

    Returns:
        Combined configuration dict from found files
    """
    config: Dict[str, Any] = {}

    # Try LENS_HOME first (global config)
    lens_home = Path(os.environ.get("LENS_HOME", "~/.lens")).expanduser()
    global_config_path = lens_home / "lens.toml"
    if global_config_path.exists():
        config.update(_read_toml(global_config_path).get("lens", {}))

    # Local lens.toml (project-specific config, takes precedence)
    local_config_path = Path("lens.toml")
    if local_config_path.exists():
        config.update(_read_toml(local_config_path).get("lens", {}))

    return config


def get_settings(**overrides: Any) -> LensSettings:
    """Settings from lens.toml, then environment, then explicit overrides."""
    toml_config = _load_toml_config()
    settings = LensSettings()

    # Environment variables win over lens.toml
    for key, value in toml_config.items():
        if key in LensSettings.model_fields and f"LENS_{key.upper()}" not in os.environ:
            setattr(settings, key, value)

    for key, value in overrides.items():
        if value is not None:
            setattr(settings, key, value)

    return settings
