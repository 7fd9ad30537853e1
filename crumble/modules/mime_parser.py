"""
MIME Parser Module
Public entry point: turns a raw message buffer into a Message tree

PATTERN RECOGNITION: This follows the Parser pattern - it takes unstructured
data (raw message bytes) and transforms it into a structured object
(Message) in a single synchronous pass.

SECURITY STORY: The input is fully untrusted. Anything structurally wrong is
repaired and recorded as a Defect; the only thing that raises is a resource
limit (document size always, depth and part count when strict_limits is on).
"""

import logging
from typing import Optional, Union

from .message_builder import build_message
from .message_data import Message
from .parse_context import ParseContext
from ..utils.config import ParserConfig
from ..utils.logging_utils import LIBRARY_LOGGER
from ..utils.security_validators import validate_document_size

RawInput = Union[bytes, bytearray, memoryview, str]


class MimeParser:
    """
    Parses raw MIME documents into Message trees

    MAINTENANCE WISDOM: The parser keeps no state between documents; all
    per-document state lives in a ParseContext created by parse(). One
    instance can therefore be shared across threads.
    """

    def __init__(self, config: Optional[ParserConfig] = None):
        """
        Initialize MIME parser

        Args:
            config: Parser configuration (defaults to ParserConfig())

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        self.config = config or ParserConfig()
        self.config.validate()
        self.logger = logging.getLogger(f"{LIBRARY_LOGGER}.MimeParser")

    @staticmethod
    def _to_bytes(raw: RawInput) -> bytes:
        if isinstance(raw, bytes):
            return raw
        if isinstance(raw, (bytearray, memoryview)):
            return bytes(raw)
        if isinstance(raw, str):
            return raw.encode("utf-8", errors="surrogateescape")
        raise TypeError(f"expected bytes-like object or str, got {type(raw).__name__}")

    def parse(self, raw: RawInput) -> Message:
        """
        Parse a complete MIME document

        Args:
            raw: Document as bytes, bytearray, memoryview or str

        Returns:
            Root Message; its spans all point into one immutable buffer

        Raises:
            ResourceLimitExceeded: If the document breaks a resource limit
        """
        source = self._to_bytes(raw)
        validate_document_size(len(source), self.config.max_input_bytes)

        ctx = ParseContext(source=source, config=self.config, logger=self.logger)
        message = build_message(ctx, 0, len(source), depth=0)

        summary = {
            "size": len(source),
            "parts_created": ctx.parts_created,
            "truncated": message.truncated,
            "defects": sum(1 for _ in message.iter_defects()),
        }
        if message.truncated:
            self.logger.warning(
                "Parsed %d byte document with truncation (%d part(s) created)",
                len(source), ctx.parts_created, extra={"extra_fields": summary},
            )
        else:
            self.logger.debug("Parsed %d byte document into %d part(s)",
                              len(source), ctx.parts_created, extra={"extra_fields": summary})
        return message


def parse(raw: RawInput, config: Optional[ParserConfig] = None) -> Message:
    """
    Parse a MIME document with a throwaway MimeParser

    Example:
        >>> parse(b"Subject: hi\\r\\n\\r\\nbody").get("subject")
        'hi'
    """
    return MimeParser(config).parse(raw)
