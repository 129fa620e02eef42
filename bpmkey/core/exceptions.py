"""
Exception classes for bpmkey.

Exception Hierarchy:
    BpmKeyError (base)
        ConfigError - Configuration file issues
        CacheError - Analysis cache persistence issues
        FingerprintError - File could not be stat'd or read for fingerprinting

Analysis failures of a single file (tool missing, timeouts, unreadable
output, tag writes) are not exceptions: they end up as negative cache
entries or warning log lines so that one bad file never aborts a batch.
"""


class BpmKeyError(Exception):
    """
    Base exception for all bpmkey errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (e.g., file path).

    Example:
        try:
            config = load_config(path)
        except BpmKeyError as e:
            logger.error(f"Operation failed: {e.message}")
            if e.details:
                logger.debug(f"Details: {e.details}")
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        """
        Initialize the base exception.

        Args:
            message: Human-readable error description that will be shown to the user.
            details: Optional dictionary containing additional context about the error.
                     Common keys include:
                     - 'file_path': File involved in the error
                     - 'original_error': The underlying exception if wrapping another error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return the error message for display."""
        return self.message


class ConfigError(BpmKeyError):
    """
    Raised when there's an issue with the configuration file.

    This is a CRITICAL error that should stop program execution.

    Common causes:
        - Explicit --config path does not exist
        - config.yaml has invalid YAML syntax
        - Invalid field values (e.g., concurrency below 1)

    Example:
        raise ConfigError(
            "analysis.concurrency must be >= 1",
            details={'file_path': '/path/to/config.yaml', 'value': 0}
        )
    """
    pass


class CacheError(BpmKeyError):
    """
    Raised when the analysis cache cannot be written.

    Reading a corrupt cache is NOT an error (the cache falls back to an
    empty document). Only a failed flush raises, so that callers such as
    the CLI can report it. The previous cache file is left untouched.
    """
    pass


class FingerprintError(BpmKeyError):
    """
    Raised when a file cannot be stat'd or opened for fingerprinting.

    Callers treat this as "skip this file", never as a reason to stop a scan.
    """
    pass
