"""
Body Parser Module
Decides between leaf and multipart bodies and splits multiparts into parts

PATTERN RECOGNITION: Dispatch is a pure function of the resolved media type
(body_kind), not a class hierarchy. Multipart children are parsed by calling
back into the message builder, so recursion has exactly one entry point and
the depth ceiling is enforced right here.

SECURITY STORY: This is where MIME bombs are defused. A nested multipart
beyond max_depth is not split, and a document-wide part budget stops very
wide multiparts; in both cases the remaining bytes become one opaque leaf
marked as truncated instead of being walked.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterator, List, Mapping, Optional

from .message_data import ByteSpan, Defect, DefectKind, Leaf, Message, Multipart
from .parse_context import ParseContext
from .transfer_decoder import decode_payload, is_textual, normalize_transfer_encoding
from ..utils.sanitization import sanitize_for_logging
from ..utils.security_validators import (
    ResourceLimitExceeded,
    is_depth_allowed,
    is_part_budget_available,
)

logger = logging.getLogger(__name__)

# (context, start, end, depth, default content type) -> Message
PartParser = Callable[[ParseContext, int, int, int, str], Message]

DIGEST_DEFAULT_TYPE = "message/rfc822"


def body_kind(media_type: str) -> str:
    """Return "multipart" for multipart/* media types, "leaf" for everything else"""
    return Multipart.kind if media_type.startswith("multipart/") else Leaf.kind


@dataclass(frozen=True)
class Delimiter:
    """
    One boundary delimiter line

    Attributes:
        part_end: End of the preceding content; the line ending before the
            delimiter belongs to the delimiter, not to the content
        line_start: Offset of the leading "--"
        next_start: Offset just past the delimiter line and its line ending
        closing: True for the close delimiter ("--boundary--")
    """
    part_end: int
    line_start: int
    next_start: int
    closing: bool


def find_delimiters(source: bytes, start: int, end: int, boundary: bytes) -> Iterator[Delimiter]:
    """
    Yield delimiter lines for ``boundary`` within ``source[start:end]``

    A delimiter is "--boundary" at the start of the range or of a line,
    optionally followed by "--", then only whitespace up to the line end.
    Lines where anything else follows the boundary are ordinary content.
    """
    marker = b"--" + boundary
    pos = start

    while pos < end:
        hit = source.find(marker, pos, end)
        if hit < 0:
            return

        if hit == start or source[hit - 1] == 0x0A:
            after = hit + len(marker)
            closing = source.startswith(b"--", after, end)
            tail = after + 2 if closing else after
            newline = source.find(b"\n", tail, end)
            line_end = end if newline < 0 else newline

            if not source[tail:line_end].strip():
                part_end = hit
                if hit > start:
                    part_end = hit - 1
                    if part_end > start and source[part_end - 1] == 0x0D:
                        part_end -= 1
                next_start = end if newline < 0 else newline + 1
                yield Delimiter(part_end=part_end, line_start=hit,
                                next_start=next_start, closing=closing)
                pos = next_start
                continue

        pos = hit + 1


def _opaque_leaf(ctx: ParseContext, media_type: str, transfer_encoding: Optional[str],
                 start: int, end: int, defect: Defect) -> Leaf:
    """Undivided, undecoded bytes standing in for structure we refused to walk"""
    data = ctx.source[start:end]
    return Leaf(
        media_type=media_type,
        transfer_encoding=normalize_transfer_encoding(transfer_encoding),
        charset=None,
        data=data,
        text=None,
        raw=ByteSpan(ctx.source, start, end),
        truncated=True,
        defects=(defect,),
    )


def build_leaf(ctx: ParseContext, media_type: str, params: Mapping[str, str],
               transfer_encoding: Optional[str], start: int, end: int,
               textual: Optional[bool] = None, defects: tuple = ()) -> Leaf:
    """
    Decode ``source[start:end]`` into a Leaf

    Args:
        ctx: Parse context
        media_type: Resolved media type
        params: Content-Type parameters (charset is read from here)
        transfer_encoding: Declared Content-Transfer-Encoding
        start: First body byte
        end: End of the body (exclusive)
        textual: Force text decoding on or off; None decides from the media type
        defects: Markers raised before decoding (e.g. missing boundary)
    """
    charset = params.get("charset")
    if textual is None:
        textual = is_textual(media_type, charset)

    decoded = decode_payload(ctx.source[start:end], transfer_encoding, charset,
                             ctx.config, textual=textual)

    return Leaf(
        media_type=media_type,
        transfer_encoding=decoded.encoding,
        charset=decoded.charset,
        data=decoded.data,
        text=decoded.text,
        raw=ByteSpan(ctx.source, start, end),
        undecoded_suffix=decoded.undecoded_suffix,
        substitutions=decoded.substitutions,
        defects=tuple(defects) + tuple(decoded.defects),
    )


def _truncated_remainder(ctx: ParseContext, start: int, end: int, depth: int) -> Message:
    """Final part holding everything the part budget did not allow us to split"""
    defect = Defect(DefectKind.PART_LIMIT,
                    f"part budget of {ctx.config.max_parts} exhausted")
    return Message(
        headers=(),
        body=_opaque_leaf(ctx, "application/octet-stream", None, start, end, defect),
        raw=ByteSpan(ctx.source, start, end),
        header_span=ByteSpan(ctx.source, start, start),
        depth=depth,
        defects=(defect,),
    )


def split_multipart(ctx: ParseContext, media_type: str, boundary: str,
                    start: int, end: int, depth: int,
                    parse_part: PartParser) -> Optional[Multipart]:
    """
    Split a multipart body on its boundary and parse every part

    Returns:
        Multipart, or None if the boundary never occurs in the body
    """
    delimiters = find_delimiters(ctx.source, start, end, boundary.encode("utf-8"))
    first = next(delimiters, None)
    if first is None:
        return None

    child_default = DIGEST_DEFAULT_TYPE if media_type == "multipart/digest" \
        else ctx.config.default_content_type
    parts: List[Message] = []
    defects: List[Defect] = []
    truncated = False
    closing = first if first.closing else None
    current = first

    def add_part(part_start: int, part_end: int) -> bool:
        nonlocal truncated
        if not is_part_budget_available(ctx.parts_created, ctx.config.max_parts):
            if ctx.config.strict_limits:
                raise ResourceLimitExceeded("max_parts", ctx.parts_created + 1, ctx.config.max_parts)
            ctx.logger.warning(
                "Document exceeds max MIME parts (%d). Keeping remaining %d bytes as one opaque part.",
                ctx.config.max_parts, end - part_start,
                extra={"extra_fields": {
                    "limit": "max_parts",
                    "max_parts": ctx.config.max_parts,
                    "parts_created": ctx.parts_created,
                    "depth": depth + 1,
                    "offset": part_start,
                    "length": end - part_start,
                }},
            )
            ctx.parts_created += 1
            parts.append(_truncated_remainder(ctx, part_start, end, depth + 1))
            truncated = True
            return False
        ctx.parts_created += 1
        parts.append(parse_part(ctx, part_start, max(part_end, part_start), depth + 1, child_default))
        return True

    if closing is None:
        for delimiter in delimiters:
            if not add_part(current.next_start, delimiter.part_end):
                break
            current = delimiter
            if delimiter.closing:
                closing = delimiter
                break
        else:
            # Ran out of delimiters without a close delimiter
            defects.append(Defect(DefectKind.MISSING_CLOSE_DELIMITER,
                                  "final part runs to end of body"))
            logger.debug("No close delimiter for boundary %s", sanitize_for_logging(boundary),
                         extra={"extra_fields": {"boundary": boundary, "depth": depth,
                                                 "parts": len(parts)}})
            add_part(current.next_start, end)

    epilogue = None
    if closing is not None and not truncated:
        epilogue = ByteSpan(ctx.source, closing.next_start, end)

    return Multipart(
        media_type=media_type,
        boundary=boundary,
        parts=tuple(parts),
        preamble=ByteSpan(ctx.source, start, first.part_end),
        epilogue=epilogue,
        raw=ByteSpan(ctx.source, start, end),
        closed=closing is not None,
        truncated=truncated,
        defects=tuple(defects),
    )


def parse_body(ctx: ParseContext, media_type: str, params: Mapping[str, str],
               transfer_encoding: Optional[str], start: int, end: int,
               depth: int, parse_part: PartParser):
    """
    Parse the body ``source[start:end]`` of a message at ``depth``

    Args:
        ctx: Parse context
        media_type: Resolved media type of the owning message
        params: Content-Type parameters
        transfer_encoding: Declared Content-Transfer-Encoding (None if absent)
        start: First body byte
        end: End of the body (exclusive)
        depth: Nesting depth of the owning message (0 for the document)
        parse_part: Callback that parses a child segment into a Message

    Returns:
        Leaf or Multipart
    """
    if body_kind(media_type) == Multipart.kind:
        boundary = params.get("boundary", "").rstrip()
        if not boundary:
            logger.debug("%s without boundary parameter; treating body as a leaf", media_type,
                         extra={"extra_fields": {"media_type": media_type, "depth": depth}})
            return build_leaf(ctx, media_type, params, transfer_encoding, start, end,
                              textual=True,
                              defects=(Defect(DefectKind.MISSING_BOUNDARY, media_type),))

        if not is_depth_allowed(depth, ctx.config.max_depth):
            if ctx.config.strict_limits:
                raise ResourceLimitExceeded("max_depth", depth + 1, ctx.config.max_depth)
            ctx.logger.warning(
                "Multipart nesting exceeds max depth (%d). Keeping %d bytes as one opaque part.",
                ctx.config.max_depth, end - start,
                extra={"extra_fields": {
                    "limit": "max_depth",
                    "max_depth": ctx.config.max_depth,
                    "depth": depth,
                    "offset": start,
                    "length": end - start,
                }},
            )
            return _opaque_leaf(ctx, media_type, transfer_encoding, start, end,
                                Defect(DefectKind.DEPTH_LIMIT,
                                       f"nesting deeper than {ctx.config.max_depth}"))

        multipart = split_multipart(ctx, media_type, boundary, start, end, depth, parse_part)
        if multipart is not None:
            return multipart

        logger.debug("Boundary %s not found; treating body as a leaf",
                     sanitize_for_logging(boundary),
                     extra={"extra_fields": {"boundary": boundary, "depth": depth, "offset": start}})
        return build_leaf(ctx, media_type, params, transfer_encoding, start, end,
                          textual=True,
                          defects=(Defect(DefectKind.BOUNDARY_NOT_FOUND,
                                          sanitize_for_logging(boundary)),))

    return build_leaf(ctx, media_type, params, transfer_encoding, start, end)
