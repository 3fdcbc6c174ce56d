# =============================================================================
# tutor_core/config.py
# Runtime Configuration for the Offline Engine
# =============================================================================
"""
OfflineConfig - tunables for storage, caching, retries and connectivity.

Values come from (lowest to highest precedence):
1. class defaults below
2. the [offline] section of a TOML file (.tutor/config.toml by default,
   or the file named by TUTOR_CONFIG_FILE)
3. TUTOR_* environment variables (a local .env file is honored)

Example config.toml:

    [offline]
    db_path = ".tutor/tutor.db"
    content_stale_after = 2592000
    retry_max_attempts = 4
    debounce_seconds = 2.0
"""

from __future__ import annotations
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import toml
from dotenv import load_dotenv

from tutor_core.errors import ConfigurationError
from tutor_core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = Path(".tutor") / "config.toml"
ENV_PREFIX = "TUTOR_"

DAY = 24 * 60 * 60.0


@dataclass
class OfflineConfig:
    """Tunables for the offline engine (durations in seconds)."""

    # Storage
    db_path: Path = Path(".tutor") / "tutor.db"

    # Freshness windows. Tutorials are immutable once fetched, so they stay
    # fresh for a long time; only a newer remote version replaces them.
    content_stale_after: float = 30 * DAY
    content_expire_after: float = 90 * DAY
    index_stale_after: float = 60 * 60.0
    index_expire_after: float = 7 * DAY

    # Reactive cache bounds
    cache_max_entries: int = 256
    cache_max_idle: float = 7 * DAY
    cache_workers: int = 4

    # Remote fetch policy
    remote_timeout: float = 15.0
    retry_max_attempts: int = 4
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0

    # Connectivity
    debounce_seconds: float = 2.0
    check_interval_online: float = 30.0
    check_interval_offline: float = 10.0
    probe_timeout: float = 3.0
    probe_hosts: Tuple[Tuple[str, int], ...] = (
        ("8.8.8.8", 53),        # Google DNS
        ("1.1.1.1", 53),        # Cloudflare DNS
        ("208.67.222.222", 53), # OpenDNS
    )

    # Extra, unvalidated sections (e.g. [content_source]) kept for other layers
    sections: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def validate(self) -> OfflineConfig:
        """Reject settings the engine cannot honor."""
        if self.content_stale_after > self.content_expire_after:
            raise ConfigurationError(
                "content_stale_after must not exceed content_expire_after",
                config_key="content_stale_after",
            )
        if self.index_stale_after > self.index_expire_after:
            raise ConfigurationError(
                "index_stale_after must not exceed index_expire_after",
                config_key="index_stale_after",
            )
        if self.retry_max_attempts < 1:
            raise ConfigurationError(
                "retry_max_attempts must be at least 1",
                config_key="retry_max_attempts",
                expected_type="int >= 1",
            )
        if self.cache_max_entries < 1:
            raise ConfigurationError(
                "cache_max_entries must be at least 1",
                config_key="cache_max_entries",
                expected_type="int >= 1",
            )
        if self.remote_timeout <= 0:
            raise ConfigurationError(
                "remote_timeout must be positive",
                config_key="remote_timeout",
                expected_type="float > 0",
            )
        return self


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Convert a TOML/env value to the type of the field default."""
    try:
        if isinstance(default, bool):
            if isinstance(raw, str):
                return raw.strip().lower() in ("1", "true", "yes", "on")
            return bool(raw)
        if isinstance(default, Path):
            return Path(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if isinstance(default, tuple):
            if isinstance(raw, str):
                raw = [item.strip() for item in raw.split(",") if item.strip()]
            hosts = []
            for item in raw:
                if isinstance(item, str):
                    host, _, port = item.rpartition(":")
                    hosts.append((host, int(port)))
                else:
                    hosts.append((str(item[0]), int(item[1])))
            return tuple(hosts)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid value for '{name}': {raw!r}",
            config_key=name,
            expected_type=type(default).__name__,
        ) from e
    return raw


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            return toml.load(f)
    except toml.TomlDecodeError as e:
        raise ConfigurationError(f"Could not parse config file: {e}", config_key=str(path)) from e


def load_config(path: Optional[Path] = None, env: Optional[Dict[str, str]] = None) -> OfflineConfig:
    """
    Build the effective configuration.

    Args:
        path: TOML file to read (default: TUTOR_CONFIG_FILE or .tutor/config.toml)
        env: Environment mapping (default: os.environ after load_dotenv)

    Returns:
        Validated OfflineConfig
    """
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    if path is None:
        path = Path(env.get(f"{ENV_PREFIX}CONFIG_FILE", DEFAULT_CONFIG_FILE))

    raw: Dict[str, Any] = {}
    if path.exists():
        raw = _read_toml(path)
        logger.info(f"Loaded configuration from {path}")

    offline_section = raw.get("offline", {})
    defaults = OfflineConfig()
    values: Dict[str, Any] = {}

    for f in fields(OfflineConfig):
        if f.name == "sections":
            continue
        default = getattr(defaults, f.name)
        if f.name in offline_section:
            values[f.name] = _coerce(f.name, offline_section[f.name], default)
        env_name = f"{ENV_PREFIX}{f.name.upper()}"
        if env_name in env:
            values[f.name] = _coerce(f.name, env[env_name], default)

    unknown = set(offline_section) - {f.name for f in fields(OfflineConfig)}
    if unknown:
        logger.warning(f"Ignoring unknown [offline] settings: {sorted(unknown)}")

    sections = {name: dict(body) for name, body in raw.items() if name != "offline" and isinstance(body, dict)}
    return OfflineConfig(sections=sections, **values).validate()
