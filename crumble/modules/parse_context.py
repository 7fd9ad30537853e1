"""
Parse Context
Per-document state shared by every recursive step of one parse call
"""

import logging
from dataclasses import dataclass

from ..utils.config import ParserConfig


@dataclass
class ParseContext:
    """
    Everything one parse call needs besides the byte range being parsed

    Attributes:
        source: The whole document buffer; every ByteSpan points into it
        config: Immutable parser configuration
        logger: Where limit warnings go (MimeParser passes its own logger)
        parts_created: Child parts created so far, checked against max_parts
    """
    source: bytes
    config: ParserConfig
    logger: logging.Logger
    parts_created: int = 0
