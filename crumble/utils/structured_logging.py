"""
Structured Logging Module
Provides JSON-formatted log records for hosts that ship logs to aggregation tools
"""

import json
import logging
from typing import Any, Dict

from .sanitization import sanitize_for_logging


class JSONFormatter(logging.Formatter):
    """
    Formats parser log records as single-line JSON.

    The parser attaches context to its limit warnings and recovery messages
    with ``extra={"extra_fields": {...}}`` (limit name, depth, part counts,
    offsets, boundaries). That context is emitted under a ``context`` key so
    it can never overwrite the record's own fields.

    SECURITY STORY: Parser logs describe hostile documents. Structured output
    keeps every record on one line, so a crafted header can never fake a
    second record. Fields that may carry message content are masked, and any
    other text or bytes taken from the document are sanitized before they
    leave the process.
    """

    # Fields that might carry document content - never log their values
    SENSITIVE_FIELDS = {
        'body', 'payload', 'content', 'raw', 'subject', 'text'
    }

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record as JSON.

        Args:
            record: Python logging.LogRecord to format

        Returns:
            JSON string with structured log data
        """
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            log_data["context"] = {
                k: self._sanitize_value(k, v) for k, v in extra_fields.items()
            }

        return json.dumps(log_data, default=str)

    def _sanitize_value(self, key: str, value: Any) -> Any:
        """
        Mask content fields and neutralize document text.

        Args:
            key: Field name
            value: Field value

        Returns:
            "[REDACTED]" for content fields, a sanitized string for text and
            bytes, and the original value for everything else
        """
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in self.SENSITIVE_FIELDS):
            return "[REDACTED]"
        if isinstance(value, (str, bytes, bytearray)):
            return sanitize_for_logging(value)
        return value
