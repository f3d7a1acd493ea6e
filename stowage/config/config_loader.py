import os
import logging
import tomllib
from typing import Any, Dict, Optional

from ..cache.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _read_toml(path: str) -> Optional[Dict[str, Any]]:
    """Parse a TOML file; None when it does not exist.

    Raises:
        ConfigurationError: When the file exists but cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        return None
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Malformed configuration file {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e


def load_config() -> Dict[str, Any]:
    """Load stowage configuration from file if present.

    Search order:
    1) STOWAGE_CONFIG env var (file path)
    2) ./stowage.toml (cwd)
    3) $XDG_CONFIG_HOME/stowage/stowage.toml or ~/.config/stowage/stowage.toml
    Returns an empty dict when no config is present.
    """
    env_path = os.getenv("STOWAGE_CONFIG")
    if env_path:
        cfg = _read_toml(env_path)
        if cfg is not None:
            return cfg

    cwd_path = os.path.abspath(os.path.join(os.getcwd(), "stowage.toml"))
    cfg = _read_toml(cwd_path)
    if cfg is not None:
        return cfg

    xdg = os.getenv("XDG_CONFIG_HOME")
    if xdg:
        xdg_path = os.path.join(xdg, "stowage", "stowage.toml")
        cfg = _read_toml(xdg_path)
        if cfg is not None:
            return cfg

    home = os.path.expanduser("~")
    default_path = os.path.join(home, ".config", "stowage", "stowage.toml")
    cfg = _read_toml(default_path)
    if cfg is not None:
        return cfg

    return {}


def load_cache_section() -> Dict[str, Any]:
    cfg = load_config()
    section = cfg.get("cache")
    return section if isinstance(section, dict) else {}
