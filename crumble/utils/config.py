"""
Configuration Management Module
Handles parser defaults, resource limits and logging settings
"""

import codecs
import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

from .security_validators import (
    DEFAULT_MAX_DOCUMENT_SIZE,
    HARD_DEPTH_CEILING,
    MAX_MIME_PARTS,
    MAX_NESTING_DEPTH,
)


class ConfigurationError(ValueError):
    """Raised when configuration values are unusable"""


@dataclass(frozen=True)
class ParserConfig:
    """
    Immutable parser settings threaded through every parse call

    MAINTENANCE WISDOM: Defaults live here, not in module globals, so two
    parsers with different settings can run side by side and tests can pin
    exact behaviour.
    """
    # Charset assumed for textual parts that do not declare one (RFC 2045)
    default_charset: str = "us-ascii"
    # Charset used when a declared charset is unknown, and for 8-bit headers
    fallback_charset: str = "latin-1"
    # Media type assumed when Content-Type is missing or invalid
    default_content_type: str = "text/plain"
    # Resource limits
    max_depth: int = MAX_NESTING_DEPTH
    max_parts: int = MAX_MIME_PARTS
    max_input_bytes: int = DEFAULT_MAX_DOCUMENT_SIZE
    # Raise ResourceLimitExceeded instead of truncating at depth/part limits
    strict_limits: bool = False
    # Try UTF-8 for undeclared text that is invalid in the default charset
    infer_utf8: bool = True

    def validate(self) -> bool:
        """
        Validate configuration

        Returns:
            True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if self.max_depth < 0:
            raise ConfigurationError(f"max_depth must not be negative, got {self.max_depth}")
        if self.max_depth > HARD_DEPTH_CEILING:
            raise ConfigurationError(
                f"max_depth {self.max_depth} is above the hard ceiling of {HARD_DEPTH_CEILING}"
            )
        if self.max_parts < 1:
            raise ConfigurationError(f"max_parts must be at least 1, got {self.max_parts}")
        if self.max_input_bytes < 0:
            raise ConfigurationError(
                f"max_input_bytes must not be negative, got {self.max_input_bytes}"
            )

        for label, charset in (("default_charset", self.default_charset),
                               ("fallback_charset", self.fallback_charset)):
            try:
                codecs.lookup(charset)
            except LookupError:
                raise ConfigurationError(f"Unknown {label}: {charset!r}") from None
            try:
                # Must decode text with errors="replace"
                b"".decode(charset, errors="replace")
            except (LookupError, UnicodeError):
                raise ConfigurationError(f"{label} {charset!r} is not a text encoding") from None

        maintype, _, subtype = self.default_content_type.partition("/")
        if not maintype or not subtype:
            raise ConfigurationError(
                f"default_content_type must look like type/subtype, got {self.default_content_type!r}"
            )
        if maintype.lower() == "multipart":
            raise ConfigurationError("default_content_type cannot be a multipart type")

        return True


@dataclass(frozen=True)
class LoggingConfig:
    """Configuration for log output of host applications"""
    log_level: str = "WARNING"
    log_json: bool = False


class Config:
    """Loads parser and logging configuration from the environment"""

    def __init__(self, env_file: Optional[str] = ".env"):
        """
        Initialize configuration from environment file

        Args:
            env_file: Path to environment file (default: .env). None skips
                loading a file and reads the process environment only.
        """
        if env_file:
            load_dotenv(env_file)

        self.parser = self._load_parser_config()
        self.logging = self._load_logging_config()

    def _load_parser_config(self) -> ParserConfig:
        """Load parser configuration"""
        defaults = ParserConfig()
        return ParserConfig(
            default_charset=os.getenv("CRUMBLE_DEFAULT_CHARSET", defaults.default_charset),
            fallback_charset=os.getenv("CRUMBLE_FALLBACK_CHARSET", defaults.fallback_charset),
            default_content_type=os.getenv(
                "CRUMBLE_DEFAULT_CONTENT_TYPE", defaults.default_content_type
            ),
            max_depth=self._get_int("CRUMBLE_MAX_DEPTH", defaults.max_depth),
            max_parts=self._get_int("CRUMBLE_MAX_PARTS", defaults.max_parts),
            max_input_bytes=self._get_int("CRUMBLE_MAX_INPUT_BYTES", defaults.max_input_bytes),
            strict_limits=self._get_bool("CRUMBLE_STRICT_LIMITS", defaults.strict_limits),
            infer_utf8=self._get_bool("CRUMBLE_INFER_UTF8", defaults.infer_utf8),
        )

    def _load_logging_config(self) -> LoggingConfig:
        """Load logging configuration"""
        return LoggingConfig(
            log_level=os.getenv("CRUMBLE_LOG_LEVEL", "WARNING"),
            log_json=self._get_bool("CRUMBLE_LOG_JSON", False),
        )

    @staticmethod
    def _get_bool(key: str, default: bool = False) -> bool:
        """Convert environment variable to boolean"""
        value = os.getenv(key, str(default)).lower()
        return value in ('true', '1', 'yes', 'on')

    @staticmethod
    def _get_int(key: str, default: int) -> int:
        """Convert environment variable to int"""
        value = os.getenv(key)
        if value is None or not value.strip():
            return default
        try:
            return int(value.strip())
        except ValueError:
            raise ConfigurationError(f"{key} must be an integer, got {value!r}") from None

    def validate(self) -> bool:
        """
        Validate configuration

        Returns:
            True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        self.parser.validate()
        if self.logging.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Invalid log level: {self.logging.log_level!r}")
        return True
