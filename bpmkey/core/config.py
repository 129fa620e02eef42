"""
Configuration management for bpmkey.

This module handles loading, validating, and providing access to the
application configuration stored in config.yaml, with overrides from
environment variables (a .env file in the working directory is honoured).

Configuration File Location:
    An explicit path passed with --config, otherwise config.yaml in the
    current working directory. When neither exists the defaults are used.

Example config.yaml:
    analysis:
      tool: "aubio"
      concurrency: 1
      cache_file: "~/.bpmkey/analysis-cache.json"
      min_confidence: 0.15

    library:
      directories:
        - "~/Music"

    logging:
      level: "INFO"
      directory: null  # Optional: write log files here

Environment Overrides:
    BPMKEY_TOOL           analysis.tool
    BPMKEY_CACHE_FILE     analysis.cache_file
    BPMKEY_CONCURRENCY    analysis.concurrency
    BPMKEY_LOG_LEVEL      logging.level
    BPMKEY_MUSIC_DIRS     library.directories (os.pathsep separated)
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from bpmkey.core.exceptions import ConfigError


# Default configuration file name (looked up in current working directory)
CONFIG_FILENAME = "config.yaml"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class AnalysisConfig:
    """
    Offline BPM/key analysis settings.

    Attributes:
        tool: Executable name or path of the aubio CLI.
        concurrency: Maximum number of files analyzed at the same time.
                     Keep at 1 to avoid competing with a running scan.
        cache_file: JSON file holding analysis results keyed by fingerprint.
        flush_delay: Seconds of quiet after the last cache update before the
                     cache is written to disk.
        min_confidence: Results below this combined confidence are stored as
                        failures and never written to tags.
        tempo_timeout: Wall-clock limit for `aubio tempo` in seconds.
        pitch_timeout: Wall-clock limit for `aubio pitch` in seconds.
                       Longer than tempo since pitch tracking scans the whole file.
        probe_timeout: Wall-clock limit for the `aubio --version` probe.
        max_stdout_bytes: Cap on captured stdout per invocation.
        pitch_max_stdout_bytes: Cap on captured stdout for pitch tracking.
        max_stderr_bytes: Cap on captured stderr per invocation.
        pitch_buffer_size: Analysis window passed to `aubio pitch -B`.
        pitch_hop_size: Hop size passed to `aubio pitch -H`.
        formats: File extensions accepted by the analysis queue.
    """
    tool: str = "aubio"
    concurrency: int = 1
    cache_file: Path = field(default_factory=lambda: Path("~/.bpmkey/analysis-cache.json").expanduser())
    flush_delay: float = 0.75
    min_confidence: float = 0.15
    tempo_timeout: float = 90.0
    pitch_timeout: float = 120.0
    probe_timeout: float = 3.0
    max_stdout_bytes: int = 8 * 1024 * 1024
    pitch_max_stdout_bytes: int = 6 * 1024 * 1024
    max_stderr_bytes: int = 512 * 1024
    pitch_buffer_size: int = 8192
    pitch_hop_size: int = 4096
    formats: tuple[str, ...] = (".mp3",)


@dataclass(frozen=True)
class LibraryConfig:
    """
    Music library scan settings.

    Attributes:
        directories: Root directories scanned recursively for audio files.
        formats: Extensions treated as audio files by the scanner. Files in
                 formats the analysis queue does not accept are counted but
                 never analyzed.
    """
    directories: tuple[Path, ...] = ()
    formats: tuple[str, ...] = (".mp3", ".flac", ".ogg", ".m4a", ".wav")


@dataclass(frozen=True)
class LoggingConfig:
    """
    Logging output settings.

    Attributes:
        level: Console log level.
        directory: Directory for log files, or None for console only.
        colored: Use ANSI colors on the console.
    """
    level: str = "INFO"
    directory: Path | None = None
    colored: bool = True


@dataclass(frozen=True)
class Config:
    """
    Complete application configuration.

    Created by load_config() and treated as immutable.

    Example:
        config = load_config()
        print(f"Cache: {config.analysis.cache_file}")
        print(f"Scanning: {config.library.directories}")
    """
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    library: LibraryConfig = field(default_factory=LibraryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_config(config_path: Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Optional explicit path to config file.
                     If None, looks for config.yaml in current working directory
                     and falls back to defaults when it does not exist.

    Returns:
        Config: A frozen dataclass containing all configuration values.

    Raises:
        ConfigError: If an explicit config file is missing, the YAML is invalid,
                     or a value fails validation.

    Behavior:
        1. Load .env into the process environment (existing variables win)
        2. Read and parse YAML content if a file is found
        3. Apply environment overrides
        4. Validate and expand paths
        5. Create and return frozen Config object
    """
    load_dotenv()

    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(
                f"Configuration file not found: {config_path}",
                details={"file_path": str(config_path)}
            )
        raw_config = _read_yaml(config_path)
    else:
        default_path = Path.cwd() / CONFIG_FILENAME
        raw_config = _read_yaml(default_path) if default_path.exists() else {}
        config_path = default_path

    _apply_environment(raw_config)

    analysis = _build_section(AnalysisConfig, raw_config.get("analysis"), "analysis", config_path)
    library = _build_section(LibraryConfig, raw_config.get("library"), "library", config_path)
    logging_config = _build_section(LoggingConfig, raw_config.get("logging"), "logging", config_path)

    config = Config(analysis=analysis, library=library, logging=logging_config)
    _validate(config, config_path)
    return config


def _read_yaml(config_path: Path) -> dict[str, Any]:
    """Read a YAML file and return its top-level mapping."""
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            content = f.read()
    except OSError as e:
        raise ConfigError(
            f"Failed to read configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML syntax in configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    if raw_config is None:
        return {}

    if not isinstance(raw_config, dict):
        raise ConfigError(
            "Configuration file must contain a YAML dictionary",
            details={"file_path": str(config_path)}
        )

    return raw_config


def _apply_environment(raw_config: dict[str, Any]) -> None:
    """Overlay BPMKEY_* environment variables onto the raw config mapping."""
    env_mappings = {
        "BPMKEY_TOOL": ("analysis", "tool", str),
        "BPMKEY_CACHE_FILE": ("analysis", "cache_file", str),
        "BPMKEY_CONCURRENCY": ("analysis", "concurrency", str),
        "BPMKEY_LOG_LEVEL": ("logging", "level", str),
        "BPMKEY_MUSIC_DIRS": ("library", "directories", lambda v: [p for p in v.split(os.pathsep) if p]),
    }

    for env_var, (section, key, convert) in env_mappings.items():
        value = os.getenv(env_var)
        if value:
            section_data = raw_config.get(section)
            if not isinstance(section_data, dict):
                section_data = {}
                raw_config[section] = section_data
            section_data[key] = convert(value)


def _build_section(cls: type, section_data: Any, section_name: str, config_path: Path) -> Any:
    """
    Build a frozen section dataclass from a raw mapping.

    Unknown keys are ignored; values are coerced to the type of the default.
    """
    if section_data is None:
        return cls()

    if not isinstance(section_data, dict):
        raise ConfigError(
            f"Section '{section_name}' must be a mapping",
            details={"file_path": str(config_path), "section": section_name}
        )

    defaults = cls()
    values = {}
    for f in fields(cls):
        if f.name not in section_data:
            continue
        try:
            values[f.name] = _coerce(getattr(defaults, f.name), f.name, section_data[f.name])
        except (TypeError, ValueError) as e:
            raise ConfigError(
                f"Invalid value for {section_name}.{f.name}: {section_data[f.name]!r}",
                details={"file_path": str(config_path), "original_error": str(e)}
            ) from e

    return cls(**values)


def _coerce(default: Any, name: str, value: Any) -> Any:
    """Convert a raw YAML/env value to the type implied by the field default."""
    if name in ("cache_file", "directory"):
        return Path(str(value)).expanduser() if value else None
    if name == "directories":
        if isinstance(value, (str, Path)):
            value = [value]
        return tuple(Path(str(v)).expanduser() for v in value)
    if name == "formats":
        if isinstance(value, str):
            value = [value]
        return tuple(_normalize_extension(v) for v in value)
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value if isinstance(value, str) else str(value)


def _normalize_extension(value: Any) -> str:
    ext = str(value).strip().lower()
    return ext if ext.startswith(".") else f".{ext}"


def _validate(config: Config, config_path: Path) -> None:
    """Raise ConfigError for the first invalid value found."""
    analysis = config.analysis
    errors = []

    if analysis.concurrency < 1:
        errors.append(f"analysis.concurrency must be >= 1 (got {analysis.concurrency})")
    if not 0.0 <= analysis.min_confidence <= 1.0:
        errors.append(f"analysis.min_confidence must be within [0, 1] (got {analysis.min_confidence})")
    if analysis.cache_file is None:
        errors.append("analysis.cache_file is required")
    if not analysis.tool:
        errors.append("analysis.tool is required")
    if not analysis.formats:
        errors.append("analysis.formats must not be empty")
    for name in ("tempo_timeout", "pitch_timeout", "probe_timeout", "flush_delay"):
        if getattr(analysis, name) < 0:
            errors.append(f"analysis.{name} must not be negative")
    if config.logging.level.upper() not in VALID_LOG_LEVELS:
        errors.append(f"logging.level must be one of {', '.join(VALID_LOG_LEVELS)}")

    if errors:
        raise ConfigError(
            errors[0],
            details={"file_path": str(config_path), "errors": errors}
        )
