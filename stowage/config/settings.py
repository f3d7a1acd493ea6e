"""Settings resolved from the environment, .env, and stowage.toml."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv

from ..cache.registry import CacheConfig
from .config_loader import load_cache_section

load_dotenv()

logger = logging.getLogger(__name__)

# Environment variables mapped onto options of the default backend
ENV_BACKEND_OPTIONS = {
    "STOWAGE_REDIS_URL": "remote_address",
    "STOWAGE_CACHE_CAPACITY": "capacity",
    "STOWAGE_CACHE_PATH": "path",
    "STOWAGE_CACHE_DEFAULT_TTL": "default_ttl",
    "STOWAGE_CACHE_TIMEOUT": "timeout",
}

_SPEC_KEYS = {"backend_type", "options"}


def _as_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


class Settings:
    """Process settings resolved from the environment."""

    STOWAGE_CACHE_BACKEND: Optional[str] = None
    STOWAGE_CACHE_NAMES: List[str] = []
    STOWAGE_SESSION_TTL: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    @classmethod
    def _populate(cls) -> None:
        cls.STOWAGE_CACHE_BACKEND = _as_optional_str(os.getenv("STOWAGE_CACHE_BACKEND"))
        cls.STOWAGE_CACHE_NAMES = _as_list(os.getenv("STOWAGE_CACHE_NAMES"))
        cls.STOWAGE_SESSION_TTL = _as_optional_str(os.getenv("STOWAGE_SESSION_TTL"))
        cls.LOG_LEVEL = _as_optional_str(os.getenv("LOG_LEVEL")) or "INFO"

    @classmethod
    def refresh(cls) -> None:
        cls._populate()

    @classmethod
    def session_ttl(cls) -> Optional[float]:
        if cls.STOWAGE_SESSION_TTL is None:
            return None
        try:
            return float(cls.STOWAGE_SESSION_TTL)
        except ValueError:
            logger.warning(f"Ignoring non-numeric STOWAGE_SESSION_TTL={cls.STOWAGE_SESSION_TTL!r}")
            return None


Settings._populate()


def _spec_from_table(table: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn a TOML table with flat options into BackendSpec shape."""
    spec: Dict[str, Any] = {}
    options: Dict[str, Any] = dict(table.get("options") or {})
    for key, value in table.items():
        if key == "backend_type":
            spec[key] = value
        elif key not in _SPEC_KEYS:
            options[key] = value
    spec["options"] = options
    return spec


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_var, option in ENV_BACKEND_OPTIONS.items():
        value = _as_optional_str(os.getenv(env_var))
        if value is not None:
            overrides[option] = value
    return overrides


def load_cache_config(section: Optional[Mapping[str, Any]] = None) -> CacheConfig:
    """Build the validated cache configuration.

    Args:
        section: The ``[cache]`` table; read from stowage.toml when omitted

    Raises:
        ConfigurationError: When any option is malformed
    """
    Settings.refresh()
    if section is None:
        section = load_cache_section()

    default = _spec_from_table(section.get("default") or {})
    env_options = _env_overrides()
    default["options"].update(env_options)

    if Settings.STOWAGE_CACHE_BACKEND:
        default["backend_type"] = Settings.STOWAGE_CACHE_BACKEND
    elif "remote_address" in env_options and "backend_type" not in default:
        default["backend_type"] = "distributed"

    caches = {
        name: _spec_from_table(table or {})
        for name, table in (section.get("caches") or {}).items()
    }
    for spec in caches.values():
        spec.setdefault("backend_type", default.get("backend_type", "lru"))
    names = _as_list(section.get("names")) + Settings.STOWAGE_CACHE_NAMES

    config = CacheConfig.from_mapping({"names": names, "default": default, "caches": caches})
    logger.debug(
        f"Cache configuration: default={config.default.backend_type.value}, "
        f"names={config.declared_names()}"
    )
    return config


def setup_logging(level_override: Optional[str] = None) -> None:
    """Configure root logging using settings or override."""

    level_name = (level_override or Settings.LOG_LEVEL or "WARNING").upper()

    if level_name in {"NO", "NONE", "OFF"}:
        level = logging.CRITICAL + 10
    else:
        level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,
    )

    logging.getLogger("stowage").setLevel(level)

    noisy_logger_level = max(level, logging.INFO)
    for name in ("redis", "asyncio"):
        logging.getLogger(name).setLevel(noisy_logger_level)
