"""
Configuration Management for SlipSight

Provides configuration loading from multiple sources:
- Default values
- Configuration files (YAML, TOML, JSON)
- Environment variables

Configuration precedence (highest to lowest):
1. Environment variables (SLIPSIGHT_*)
2. Configuration file
3. Default values
"""

import json
import logging
import logging.handlers
import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


# ============================================================================
# Configuration Dataclasses
# ============================================================================


@dataclass
class StatsConfig:
    """Configuration for stat aggregation and conversion grouping."""

    # Max frames between two hits of the same conversion
    conversion_gap_frames: int = 45
    # Both players hitting within this window counts as a trade
    trade_window_frames: int = 10
    # Analog stick deadzone for input counting
    stick_threshold: float = 0.3
    trigger_threshold: float = 0.3
    # Frames between knee bend and air dodge landing for a wavedash
    wavedash_window_frames: int = 8
    # Frames between two turnarounds for a dash dance
    dashdance_window_frames: int = 30


@dataclass
class CoordinatorConfig:
    """Retry policy for store writes."""

    max_attempts: int = 4
    base_delay: float = 0.05
    max_delay: float = 1.0


@dataclass
class IndexerConfig:
    """Configuration for the filesystem sweep."""

    replay_folders: list[str] = field(default_factory=list)
    max_depth: int = 3
    use_cache: bool = True
    cache_directory: str | None = None


@dataclass
class ScorerConfig:
    """Configuration for the session-ended handler."""

    resolution_retry_delay: float = 2.0


@dataclass
class WatcherConfig:
    """Configuration for the replay watcher."""

    min_file_size_bytes: int = 1024
    debounce_seconds: float = 2.0
    recursive: bool = True


@dataclass
class DatabaseConfig:
    """Configuration for the match store."""

    path: str | None = None
    echo: bool = False


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: str | None = None
    file_max_bytes: int = 10 * 1024 * 1024  # 10MB
    file_backup_count: int = 5


@dataclass
class SlipSightConfig:
    """Main configuration container."""

    stats: StatsConfig = field(default_factory=StatsConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    indexer: IndexerConfig = field(default_factory=IndexerConfig)
    scorer: ScorerConfig = field(default_factory=ScorerConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    config_version: str = "1.0"


_SECTIONS = (
    "stats",
    "coordinator",
    "indexer",
    "scorer",
    "watcher",
    "database",
    "logging",
)


# ============================================================================
# Configuration Loading
# ============================================================================


def config_search_paths() -> list[Path]:
    """Candidate config files, first match wins."""
    cwd = Path.cwd()
    xdg_dir = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))) / "slipsight"

    return [
        *(cwd / f"slipsight{suffix}" for suffix in (".yaml", ".toml", ".json")),
        cwd / ".slipsight.yaml",
        xdg_dir / "config.yaml",
        xdg_dir / "config.toml",
        Path.home() / ".slipsight.yaml",
    ]


def _read_yaml(path: Path) -> dict[str, Any]:
    # An empty YAML document parses to None
    return yaml.safe_load(path.read_text()) or {}


def _read_toml(path: Path) -> dict[str, Any]:
    return tomllib.loads(path.read_text())


def _read_json(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text())


_READERS = {
    ".yaml": _read_yaml,
    ".yml": _read_yaml,
    ".toml": _read_toml,
    ".json": _read_json,
}


def load_config_file(path: Path) -> dict[str, Any]:
    """Read one config file; the reader is picked by extension."""
    if not path.exists():
        return {}

    reader = _READERS.get(path.suffix.lower())
    if reader is None:
        logger.warning(f"Unknown config file format: {path.suffix.lower()}")
        return {}
    return reader(path)


def _coerce_env_value(value: str) -> Any:
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    if value.isdigit():
        return int(value)
    try:
        return float(value)
    except ValueError:
        return value


def load_env_config() -> dict[str, Any]:
    """SLIPSIGHT_* environment variables as a nested config dict."""
    config: dict[str, Any] = {}

    env_mappings = {
        "SLIPSIGHT_LOG_LEVEL": ("logging", "level"),
        "SLIPSIGHT_LOG_FILE": ("logging", "file"),
        "SLIPSIGHT_DB_PATH": ("database", "path"),
        "SLIPSIGHT_CONVERSION_GAP_FRAMES": ("stats", "conversion_gap_frames"),
        "SLIPSIGHT_TRADE_WINDOW_FRAMES": ("stats", "trade_window_frames"),
        "SLIPSIGHT_MAX_ATTEMPTS": ("coordinator", "max_attempts"),
        "SLIPSIGHT_RETRY_BASE_DELAY": ("coordinator", "base_delay"),
        "SLIPSIGHT_RESOLUTION_RETRY_DELAY": ("scorer", "resolution_retry_delay"),
        "SLIPSIGHT_MAX_DEPTH": ("indexer", "max_depth"),
    }

    for env_var, (section, key) in env_mappings.items():
        value = os.environ.get(env_var)
        if value is not None:
            config.setdefault(section, {})[key] = _coerce_env_value(value)

    # Replay folders are a path list, os.pathsep separated
    folders = os.environ.get("SLIPSIGHT_REPLAY_FOLDERS")
    if folders:
        config.setdefault("indexer", {})["replay_folders"] = [
            f for f in folders.split(os.pathsep) if f
        ]

    return config


def merge_configs(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Values from override win; nested sections are merged key by key."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = merge_configs(current, value)
        merged[key] = value
    return merged


def dict_to_config(data: dict[str, Any]) -> SlipSightConfig:
    """Convert a dictionary to SlipSightConfig, ignoring unknown keys."""
    config = SlipSightConfig()

    for section in _SECTIONS:
        values = data.get(section)
        if not isinstance(values, dict):
            continue
        target = getattr(config, section)
        for key, value in values.items():
            if hasattr(target, key):
                setattr(target, key, value)
            else:
                logger.debug(f"Ignoring unknown config key: {section}.{key}")

    if "config_version" in data:
        config.config_version = str(data["config_version"])

    return config


def load_config(config_file: Path | None = None, include_env: bool = True) -> SlipSightConfig:
    """
    Load configuration from all sources.

    Args:
        config_file: Explicit path to a config file (optional)
        include_env: Whether to include environment variables

    Returns:
        Merged SlipSightConfig
    """
    config_data: dict[str, Any] = {}

    if config_file:
        config_data = load_config_file(config_file)
        logger.info(f"Loaded config from: {config_file}")
    else:
        for path in config_search_paths():
            if path.exists():
                config_data = load_config_file(path)
                logger.info(f"Loaded config from: {path}")
                break

    if include_env:
        config_data = merge_configs(config_data, load_env_config())

    return dict_to_config(config_data)


def configure_logging(config: LoggingConfig, verbose: bool = False) -> None:
    """Apply a LoggingConfig to the root logger."""
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=config.format)
    root = logging.getLogger()
    root.setLevel(level)

    if config.file:
        handler = logging.handlers.RotatingFileHandler(
            config.file,
            maxBytes=config.file_max_bytes,
            backupCount=config.file_backup_count,
        )
        handler.setFormatter(logging.Formatter(config.format))
        root.addHandler(handler)


# ============================================================================
# Configuration Saving
# ============================================================================


def config_to_dict(config: SlipSightConfig) -> dict[str, Any]:
    """Plain nested dict of every section."""
    return asdict(config)


def save_config(config: SlipSightConfig, path: Path) -> None:
    """
    Save configuration to a file.

    Args:
        config: Configuration to save
        path: Path to save to (.yaml, .yml or .json)
    """
    data = config_to_dict(config)
    suffix = path.suffix.lower()

    if suffix in (".yaml", ".yml"):
        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    elif suffix == ".json":
        with open(path, "w") as f:
            json.dump(data, f, indent=2)
    else:
        raise ValueError(f"Unknown config format: {suffix}")

    logger.info(f"Saved config to: {path}")


# ============================================================================
# Global Configuration
# ============================================================================

_global_config: SlipSightConfig | None = None


def get_config() -> SlipSightConfig:
    """Process-wide configuration, loaded from all sources on first use."""
    global _global_config

    if _global_config is None:
        _global_config = load_config()

    return _global_config


def set_config(config: SlipSightConfig) -> None:
    """Replace the process-wide configuration."""
    global _global_config
    _global_config = config


def reset_config() -> None:
    """Forget the process-wide configuration; the next get_config reloads it."""
    global _global_config
    _global_config = None


# ============================================================================
# Configuration Templates
# ============================================================================

DEFAULT_CONFIG_YAML = """# SlipSight Configuration

# Stat aggregation and conversion grouping
stats:
  conversion_gap_frames: 45
  trade_window_frames: 10
  stick_threshold: 0.3

# Store write retries
coordinator:
  max_attempts: 4
  base_delay: 0.05
  max_delay: 1.0

# Filesystem sweep
indexer:
  replay_folders: []
  max_depth: 3
  use_cache: true

# Session-ended handler
scorer:
  resolution_retry_delay: 2.0

# Replay watcher
watcher:
  min_file_size_bytes: 1024
  debounce_seconds: 2.0
  recursive: true

# Match store
database:
  # path: ~/.slipsight/matches.db

logging:
  level: INFO
  # file: /path/to/slipsight.log
"""


def generate_default_config(path: Path) -> None:
    """Write the commented template (YAML) or the defaults (JSON)."""
    suffix = path.suffix.lower()

    if suffix in (".yaml", ".yml"):
        path.write_text(DEFAULT_CONFIG_YAML)
    else:
        save_config(SlipSightConfig(), path)

    logger.info(f"Generated default config at: {path}")
