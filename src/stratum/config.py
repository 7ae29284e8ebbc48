"""
Stratum Configuration

Runtime settings for resolution, fact gathering and execution.
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional


@dataclass
class StratumConfig:
    """
    Configuration for a Stratum run.

    Attributes:
        forks: Maximum number of hosts evaluated concurrently
        gather_facts: Default for plays that do not set gather_facts
        fact_cache_dir: Directory for the persistent fact cache (None = no cache)
        fact_cache_ttl: Seconds a cached fact snapshot stays valid
        fact_filter: Default fnmatch pattern applied to gathered fact keys
        log_level: Level used by configure_logging()
    """

    forks: int = 5
    gather_facts: bool = False  # Default to False, as plays usually opt in
    fact_cache_dir: Optional[str] = None
    fact_cache_ttl: int = 86400  # 24 hours
    fact_filter: Optional[str] = None
    log_level: str = "WARNING"

    # Environment variable names for from_env()
    ENV_PREFIX = "STRATUM_"

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "StratumConfig":
        """Build a config from STRATUM_* environment variables over the defaults."""
        environ = os.environ if environ is None else environ
        config = cls()
        for f in fields(cls):
            raw = environ.get(cls.ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            setattr(config, f.name, _coerce(raw, getattr(config, f.name), f.name))
        return config


def _coerce(raw: str, current: Any, name: str) -> Any:
    """Convert an environment string to the type of the field's default."""
    if isinstance(current, bool):
        return raw.strip().lower() in ('1', 'true', 'yes', 'on')
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"{StratumConfig.ENV_PREFIX}{name.upper()} must be an integer, got {raw!r}") from None
    if raw == '':
        return None
    return raw


# Default configuration
_config = StratumConfig()


def get_config() -> StratumConfig:
    """Get the current configuration."""
    return _config


def set_config(config: StratumConfig) -> None:
    """Set the configuration."""
    global _config
    _config = config


def configure(**kwargs) -> None:
    """Update individual settings of the current configuration."""
    for key, value in kwargs.items():
        if not hasattr(_config, key):
            raise AttributeError(f"Unknown configuration setting: {key}")
        setattr(_config, key, value)


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a stderr handler to the 'stratum' logger at the configured level."""
    logger = logging.getLogger("stratum")
    logger.setLevel((level or _config.log_level).upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)
