"""
Message Builder Module
Composes tokenizer, header decoder and body parser into a Message

The only decisions made here are which Content-Type and
Content-Transfer-Encoding apply: the first occurrence of each wins.
"""

import logging
import re
from typing import List, Mapping, Optional, Sequence, Tuple

from .body_parser import parse_body
from .header_decoder import decode_header
from .header_tokenizer import tokenize_headers
from .message_data import ByteSpan, Defect, DefectKind, HeaderEntry, Message
from .parse_context import ParseContext
from ..utils.sanitization import sanitize_for_logging

logger = logging.getLogger(__name__)

_TOKEN = r"[!#$%&'*+.^_`|~0-9a-z-]+"
_MEDIA_TYPE = re.compile(rf"{_TOKEN}/{_TOKEN}")


def _first(headers: Sequence[HeaderEntry], name: str) -> Optional[HeaderEntry]:
    for header in headers:
        if header.name.lower() == name:
            return header
    return None


def resolve_content_type(
    headers: Sequence[HeaderEntry],
    default_type: str,
    defects: List[Defect]
) -> Tuple[str, Mapping[str, str]]:
    """
    Pick the media type and parameters that govern a message body

    Args:
        headers: Decoded headers of the message
        default_type: Type to use when Content-Type is absent or unusable
        defects: Receives an invalid-content-type marker when needed

    Returns:
        Tuple of (media type, parameters)
    """
    header = _first(headers, "content-type")
    if header is None:
        return default_type, {}

    if header.primary and _MEDIA_TYPE.fullmatch(header.primary):
        return header.primary, header.params

    defects.append(Defect(DefectKind.INVALID_CONTENT_TYPE, sanitize_for_logging(header.value, 60)))
    logger.debug("Invalid Content-Type %s; using %s", sanitize_for_logging(header.value, 60), default_type)
    # Parameters like charset still apply, but a stray boundary must not
    return default_type, {k: v for k, v in header.params.items() if k != "boundary"}


def build_message(ctx: ParseContext, start: int, end: int, depth: int = 0,
                  default_type: Optional[str] = None) -> Message:
    """
    Parse ``ctx.source[start:end]`` as one message or body part

    Args:
        ctx: Parse context for the document
        start: First byte of the segment
        end: End of the segment (exclusive)
        depth: Nesting depth (0 for the top-level document)
        default_type: Media type when Content-Type is absent; defaults to
            the configured default content type

    Returns:
        Message
    """
    tokens = tokenize_headers(ctx.source, start, end)
    headers = tuple(decode_header(raw, ctx.config.fallback_charset) for raw in tokens.fields)
    defects = list(tokens.defects)

    media_type, params = resolve_content_type(
        headers, default_type or ctx.config.default_content_type, defects
    )
    encoding = _first(headers, "content-transfer-encoding")
    transfer_encoding = encoding.primary if encoding is not None else None

    body = parse_body(ctx, media_type, params, transfer_encoding,
                      tokens.body_start, end, depth, build_message)

    return Message(
        headers=headers,
        body=body,
        raw=ByteSpan(ctx.source, start, end),
        header_span=ByteSpan(ctx.source, start, tokens.header_end),
        depth=depth,
        defects=tuple(defects),
    )
