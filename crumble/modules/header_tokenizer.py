"""
Header Tokenizer Module
Splits the header block of a message segment into raw header fields

PATTERN RECOGNITION: This is a line-oriented state machine, the same shape
as a classic streaming MIME field parser: every line either starts a new
field, continues the previous one (folding), or ends the header block.

SECURITY STORY: Header blocks in the wild mix CRLF and bare LF, contain mbox
"From " lines, stray continuation lines and garbage. None of that may stop
the parse, so every unexpected line resolves to "continue the previous
field" or "skip and record a defect".
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Tuple

from .message_data import ByteSpan, Defect, DefectKind
from ..utils.sanitization import sanitize_for_logging

logger = logging.getLogger(__name__)

# name ":" - printable US-ASCII except colon, optional blanks before the colon
_FIELD_NAME = re.compile(rb"([!-9;-~]+)[ \t]*:")


@dataclass(frozen=True)
class RawHeader:
    """A header field before value decoding"""
    name: str
    raw_value: bytes
    span: ByteSpan


@dataclass
class TokenizedHeaders:
    """
    Result of splitting a segment into header fields and body

    Attributes:
        fields: Header fields in source order
        header_end: Offset where the header block ends (separator excluded)
        body_start: Offset of the first body byte
        defects: Recovery markers raised while tokenizing
    """
    fields: List[RawHeader]
    header_end: int
    body_start: int
    defects: List[Defect] = field(default_factory=list)


def iter_lines(source: bytes, start: int, end: int):
    """
    Yield ``(line_start, content_end, next_start)`` for each line in a range

    ``content_end`` excludes the line terminator (LF or CRLF). The final line
    may have no terminator, in which case ``content_end == next_start == end``.
    """
    pos = start
    while pos < end:
        newline = source.find(b"\n", pos, end)
        if newline < 0:
            yield pos, end, end
            return
        content_end = newline
        if content_end > pos and source[content_end - 1] == 0x0D:
            content_end -= 1
        yield pos, content_end, newline + 1
        pos = newline + 1


def find_header_separator(source: bytes, start: int, end: int) -> Tuple[int, int]:
    """
    Locate the first empty line of a segment

    Returns:
        ``(header_end, body_start)`` or ``(-1, -1)`` if no empty line exists
    """
    for line_start, content_end, next_start in iter_lines(source, start, end):
        if content_end == line_start and next_start > line_start:
            return line_start, next_start
    return -1, -1


def tokenize_headers(source: bytes, start: int, end: int) -> TokenizedHeaders:
    """
    Split ``source[start:end]`` into raw header fields and a body offset

    Args:
        source: Whole document buffer
        start: First byte of the segment
        end: End of the segment (exclusive)

    Returns:
        TokenizedHeaders describing the fields and where the body begins
    """
    header_end, body_start = find_header_separator(source, start, end)

    if header_end < 0:
        # No blank line at all: the whole segment is body, zero headers
        defects = []
        if end > start:
            defects.append(Defect(DefectKind.MISSING_HEADER_SEPARATOR,
                                  "no blank line; segment treated as body"))
            logger.debug("No header/body separator in %d byte segment", end - start)
        return TokenizedHeaders(fields=[], header_end=start, body_start=start, defects=defects)

    fields: List[RawHeader] = []
    defects: List[Defect] = []

    # Field under construction: name, line start, value pieces, last line end
    current_name = None
    current_start = 0
    current_end = 0
    pieces: List[bytes] = []

    def flush():
        if current_name is not None:
            fields.append(RawHeader(
                name=current_name,
                raw_value=b" ".join(p for p in pieces if p),
                span=ByteSpan(source, current_start, current_end),
            ))

    for line_start, content_end, _ in iter_lines(source, start, header_end):
        line = source[line_start:content_end]

        if line[:1] in (b" ", b"\t"):
            if current_name is None:
                defects.append(Defect(DefectKind.MALFORMED_HEADER_LINE,
                                      "continuation line before first header"))
                logger.debug("Skipping leading continuation line")
                continue
            pieces.append(line.strip(b" \t"))
            current_end = content_end
            continue

        match = _FIELD_NAME.match(line)
        if match is None:
            if current_name is None:
                defects.append(Defect(DefectKind.MALFORMED_HEADER_LINE,
                                      sanitize_for_logging(line, 60)))
                logger.debug("Skipping malformed leading line: %s", sanitize_for_logging(line, 60))
            else:
                # No colon or bad name: glue it onto the previous field
                defects.append(Defect(DefectKind.MALFORMED_HEADER_LINE,
                                      f"line without field name joined to {current_name}"))
                pieces.append(line.strip(b" \t"))
                current_end = content_end
            continue

        flush()
        current_name = match.group(1).decode("ascii")
        current_start = line_start
        current_end = content_end
        pieces = [line[match.end():].strip(b" \t")]

    flush()

    return TokenizedHeaders(
        fields=fields,
        header_end=header_end,
        body_start=body_start,
        defects=defects,
    )
