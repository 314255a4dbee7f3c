"""
Service configuration.

Values come from environment variables, optionally layered over a YAML
settings file pointed to by PERITAGEM_CONFIG. Environment always wins.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("config")

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_STORE_BACKEND = "file"
DEFAULT_DATA_DIR = "data/peritagem"
DEFAULT_SUPABASE_TIMEOUT = 15.0
DEFAULT_LOG_LEVEL = "INFO"

VALID_STORE_BACKENDS = ("memory", "file", "supabase")

# Environment variable -> settings key
ENV_KEYS: Dict[str, str] = {
    "PERITAGEM_STORE": "store_backend",
    "PERITAGEM_DATA_DIR": "data_dir",
    "SUPABASE_URL": "supabase_url",
    "SUPABASE_KEY": "supabase_key",
    "SUPABASE_TIMEOUT": "supabase_timeout",
    "PERITAGEM_LOG_LEVEL": "log_level",
}


@dataclass(frozen=True)
class Settings:
    """Resolved service settings."""
    store_backend: str = DEFAULT_STORE_BACKEND
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_timeout: float = DEFAULT_SUPABASE_TIMEOUT
    log_level: str = DEFAULT_LOG_LEVEL

    def to_dict(self) -> Dict[str, Any]:
        # Never expose the API key
        return {
            "store_backend": self.store_backend,
            "data_dir": str(self.data_dir),
            "supabase_url": self.supabase_url,
            "supabase_key_set": bool(self.supabase_key),
            "supabase_timeout": self.supabase_timeout,
            "log_level": self.log_level,
        }


def read_yaml_settings(file_path: Path) -> Dict[str, Any]:
    """Read a YAML settings file. Missing file yields an empty mapping."""
    if not file_path.exists():
        logger.warning(f"Settings file not found: {file_path}")
        return {}
    with open(file_path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring settings file with non-mapping content: {file_path}")
        return {}
    return data


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """
    Resolve settings from YAML (optional) and the environment.

    Args:
        config_path: YAML file to read. Defaults to $PERITAGEM_CONFIG.
    """
    raw: Dict[str, Any] = {}

    path_value = config_path or os.getenv("PERITAGEM_CONFIG")
    if path_value:
        raw.update(read_yaml_settings(Path(path_value)))

    for env_name, key in ENV_KEYS.items():
        value = os.getenv(env_name)
        if value is not None and value != "":
            raw[key] = value

    store_backend = str(raw.get("store_backend", DEFAULT_STORE_BACKEND)).strip().lower()
    if store_backend not in VALID_STORE_BACKENDS:
        logger.warning(f"Unknown store backend '{store_backend}', using '{DEFAULT_STORE_BACKEND}'")
        store_backend = DEFAULT_STORE_BACKEND

    try:
        timeout = float(raw.get("supabase_timeout", DEFAULT_SUPABASE_TIMEOUT))
    except (TypeError, ValueError):
        logger.warning(f"Invalid supabase_timeout {raw.get('supabase_timeout')!r}, using default")
        timeout = DEFAULT_SUPABASE_TIMEOUT

    return Settings(
        store_backend=store_backend,
        data_dir=Path(str(raw.get("data_dir", DEFAULT_DATA_DIR))),
        supabase_url=str(raw.get("supabase_url", "")).rstrip("/"),
        supabase_key=str(raw.get("supabase_key", "")),
        supabase_timeout=timeout,
        log_level=str(raw.get("log_level", DEFAULT_LOG_LEVEL)).upper(),
    )
