"""
Core module for bpmkey.

This module provides the foundational components used throughout the application:
    - exceptions: Custom exception classes for error handling
    - config: Configuration loading and validation
    - logger: Logging system with console and file outputs

Usage:
    from bpmkey.core import (
        Config, load_config,
        setup_logging, get_logger,
        BpmKeyError, ConfigError, CacheError
    )
"""

from bpmkey.core.config import (
    AnalysisConfig,
    Config,
    LibraryConfig,
    LoggingConfig,
    load_config,
)
from bpmkey.core.exceptions import (
    BpmKeyError,
    CacheError,
    ConfigError,
    FingerprintError,
)
from bpmkey.core.logger import (
    get_logger,
    log_analysis_failure,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    # Config
    "Config",
    "AnalysisConfig",
    "LibraryConfig",
    "LoggingConfig",
    "load_config",
    # Exceptions
    "BpmKeyError",
    "ConfigError",
    "CacheError",
    "FingerprintError",
    # Logger
    "setup_logging",
    "get_logger",
    "log_analysis_failure",
    "shutdown_logging",
]
