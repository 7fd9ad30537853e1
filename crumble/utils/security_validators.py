"""
Security Validators Module
Centralizes the resource limits applied while parsing untrusted MIME documents

SECURITY STORY: These limits protect the parser against hostile input:
- MAX_NESTING_DEPTH: Prevents MIME bombs built from deeply nested multiparts
  (CWE-674: Uncontrolled Recursion)
- MAX_MIME_PARTS: Bounds the total work done on very wide multiparts
- DEFAULT_MAX_DOCUMENT_SIZE: Refuses documents too large to hold in memory
"""

import logging

# Security limits to prevent various attacks
MAX_NESTING_DEPTH = 50  # Nested multipart levels that are split into parts
MAX_MIME_PARTS = 1000  # Parts created across the whole document

# Hard ceiling for a configured depth. Each nesting level costs a handful of
# Python frames, so this keeps us well below the interpreter recursion limit.
HARD_DEPTH_CEILING = 150

# Fallback maximum document size (500MB) if nothing else is configured
DEFAULT_MAX_DOCUMENT_SIZE = 500 * 1024 * 1024

logger = logging.getLogger(__name__)


class CrumbleError(Exception):
    """Base class for errors surfaced by the parser"""


class ResourceLimitExceeded(CrumbleError):
    """
    Raised when a document breaks a configured resource limit

    This is the only failure the parser surfaces to callers. Malformed MIME
    structure never raises; it is repaired and recorded as a defect instead.

    Attributes:
        limit: Name of the violated limit ("max_input_bytes", "max_depth", ...)
        value: Observed value that broke the limit
        maximum: Configured maximum
    """

    def __init__(self, limit: str, value: int, maximum: int):
        self.limit = limit
        self.value = value
        self.maximum = maximum
        super().__init__(f"{limit} exceeded: {value} > {maximum}")


def validate_document_size(size: int, max_size: int) -> None:
    """
    Reject documents larger than the configured limit

    SECURITY STORY: The parser works on a complete in-memory buffer, so the
    only defence against memory exhaustion is refusing oversized input up
    front, before any decoding allocates more.

    Args:
        size: Document size in bytes
        max_size: Maximum accepted size (0 disables the check)

    Raises:
        ResourceLimitExceeded: If size is above max_size
    """
    if max_size > 0 and size > max_size:
        logger.error(
            "Document of %d bytes exceeds limit of %d bytes", size, max_size,
            extra={"extra_fields": {"limit": "max_input_bytes", "size": size, "max_size": max_size}},
        )
        raise ResourceLimitExceeded("max_input_bytes", size, max_size)


def is_depth_allowed(depth: int, max_depth: int) -> bool:
    """
    Check whether a multipart at ``depth`` may still be split into parts

    Depth 0 is the top-level message. With ``max_depth`` N at most N
    multipart levels are expanded; deeper containers stay opaque.
    """
    return depth < max_depth


def is_part_budget_available(parts_created: int, max_parts: int) -> bool:
    """
    Check whether another child part may be created

    Args:
        parts_created: Parts created so far in this document
        max_parts: Configured document-wide budget

    Returns:
        True if count is safe, False if the next part would exceed the limit
    """
    return parts_created < max_parts
