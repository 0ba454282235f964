"""
Utility functions for the caschooldata package

Configuration, logging setup and small helpers shared by the pipeline stages.

Configuration is resolved in three layers, later layers winning:
    1. Defaults in Settings
    2. YAML file named by CASCHOOLDATA_CONFIG (if set)
    3. Environment variables

Environment Variables:
    CASCHOOLDATA_CONFIG: Path to a YAML settings file
    CASCHOOLDATA_CACHE_DIR: Cache directory (default: ~/.cache/caschooldata)
    CASCHOOLDATA_CACHE_MAX_AGE_DAYS: Days before a cache entry is stale (default: 30)
    CASCHOOLDATA_USER_AGENT: User-Agent header sent with every request
    CASCHOOLDATA_TIMEOUT: Default request timeout in seconds
    CASCHOOLDATA_RETRIES: Bounded retry count for transport failures (default: 1)
    CASCHOOLDATA_LOG_LEVEL: Log level used by the CLI (default: INFO)
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "caschooldata/0.1 (California school data client; python-requests)"


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for downloads and caching."""
    cache_dir: Path
    cache_max_age_days: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT
    timeout: Optional[float] = None   # None = per-dataset default
    retries: int = 1
    log_level: str = "INFO"


# Environment variable -> (Settings field, converter)
_ENV_OVERRIDES = {
    'CASCHOOLDATA_CACHE_DIR': ('cache_dir', lambda v: Path(v).expanduser()),
    'CASCHOOLDATA_CACHE_MAX_AGE_DAYS': ('cache_max_age_days', float),
    'CASCHOOLDATA_USER_AGENT': ('user_agent', str),
    'CASCHOOLDATA_TIMEOUT': ('timeout', float),
    'CASCHOOLDATA_RETRIES': ('retries', int),
    'CASCHOOLDATA_LOG_LEVEL': ('log_level', str),
}


def default_cache_dir() -> Path:
    """
    Get the per-user cache directory

    Returns:
        $XDG_CACHE_HOME/caschooldata, or ~/.cache/caschooldata
    """
    base = os.getenv('XDG_CACHE_HOME')
    root = Path(base) if base else Path.home() / ".cache"
    return root / "caschooldata"


def load_yaml_config(config_path: Union[str, Path]) -> dict:
    """
    Load a YAML configuration file

    Args:
        config_path: Path to YAML file

    Returns:
        Dictionary from YAML file

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If file is not valid YAML
    """
    path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, 'r') as f:
        try:
            config = yaml.safe_load(f)
            return config if config else {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Error parsing YAML: {e}")


def get_settings() -> Settings:
    """
    Resolve settings from defaults, the optional YAML file and the environment

    Read on every call so tests and long-running processes see changes to
    the environment.

    Returns:
        Settings instance
    """
    settings = Settings(cache_dir=default_cache_dir())
    known = {f.name for f in fields(Settings)}

    config_path = os.getenv('CASCHOOLDATA_CONFIG')
    if config_path:
        file_config = load_yaml_config(config_path)
        overrides = {k: v for k, v in file_config.items() if k in known}
        unknown = set(file_config) - known
        if unknown:
            logger.warning(f"Ignoring unknown settings in {config_path}: {', '.join(sorted(unknown))}")
        if 'cache_dir' in overrides:
            overrides['cache_dir'] = Path(overrides['cache_dir']).expanduser()
        settings = replace(settings, **overrides)

    for env_var, (field_name, convert) in _ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value:
            settings = replace(settings, **{field_name: convert(value)})

    return settings


def setup_logging(
    log_level: str = 'INFO',
    log_file: Optional[Path] = None
) -> logging.Logger:
    """
    Set up logging configuration

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file to write logs to

    Returns:
        Configured logger
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return root_logger


def academic_year_label(end_year: int) -> str:
    """
    Format an end year as a school-year label

    Examples:
        >>> academic_year_label(2024)
        '2023-24'
    """
    return f"{end_year - 1}-{end_year % 100:02d}"
