import logging
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# env var -> settings field
_ENV_OVERRIDES = {
    "GOOGLE_API_KEY": "default_api_key",
    "GEMINI_BASE_URL": "gemini_base_url",
    "GEMINI_TIMEOUT_SECONDS": "gemini_timeout",
    "PREVIEW_MAX_CHARS": "preview_max_chars",
    "INPUT_COST_PER_M": "input_cost_per_m",
    "OUTPUT_COST_PER_M": "output_cost_per_m",
    "DEFAULT_TEMPERATURE": "default_temperature",
}


class Settings(BaseModel):
    default_api_key: Optional[str] = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_timeout: float = 60.0
    preview_max_chars: int = 500
    input_cost_per_m: float = 0.075
    output_cost_per_m: float = 0.30
    default_temperature: float = 0.7
    default_concurrency: int = 5


def _default_config_path() -> str:
    return os.getenv(
        "GENRELAY_CONFIG_PATH",
        os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "genrelay.yaml"),
    )


def _load_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.info("Config file not found at %s; using defaults", path)
        return {}
    except Exception as e:
        logger.warning("Failed to load config file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: top level is not a mapping", path)
        return {}
    return data


def load_settings(path: Optional[str] = None) -> Settings:
    """YAML file values overlaid by environment variables."""
    data = _load_yaml(path or _default_config_path())
    for env, field in _ENV_OVERRIDES.items():
        value = os.getenv(env, "").strip()
        if value:
            data[field] = value
    return Settings(**data)
