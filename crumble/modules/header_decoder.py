"""
Header Value Decoder Module
Turns raw header values into text and structured (primary, params) pairs

SECURITY STORY: Header values are attacker-controlled. Encoded words can
name charsets that do not exist, carry broken base64 or unterminated
quoting. Every such case falls back to passing the original text through,
so a bad Subject can never take the rest of the message down with it.
"""

import base64
import binascii
import codecs
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Optional, Tuple

from .header_tokenizer import RawHeader
from .message_data import Defect, DefectKind, HeaderEntry
from ..utils.sanitization import sanitize_for_logging

logger = logging.getLogger(__name__)

STRUCTURED_HEADERS = frozenset({"content-type", "content-disposition", "content-transfer-encoding"})

# =?charset?encoding?text?= ; charset may carry an RFC 2231 "*lang" suffix
_ENCODED_WORD = re.compile(r"=\?([^?\s]+)\?([^?\s]*)\?([^?\s]*)\?=")
_LINEAR_WHITESPACE = re.compile(r"[ \t\r\n]*")
_Q_ESCAPE = re.compile(rb"=([0-9A-Fa-f]{2})")
_PERCENT_ESCAPE = re.compile(r"%([0-9A-Fa-f]{2})?")
# name*, name*0, name*0* (RFC 2231 extended / continued parameters)
_EXTENDED_PARAM = re.compile(r"^(.+?)\*(?:(\d+)(\*)?)?$")

# Charset labels seen in mail that Python's codec registry does not know
CHARSET_ALIASES = {
    "iso-8859-8-i": "iso-8859-8",
    "iso-8859-6-i": "iso-8859-6",
    "ks_c_5601-1987": "cp949",
    "x-mac-roman": "mac-roman",
    "x-sjis": "shift_jis",
    "x-gbk": "gbk",
}
# Labels that only mean "we do not know"; they resolve to the fallback
UNKNOWN_CHARSET_LABELS = frozenset({"unknown-8bit", "x-unknown", "unknown", "x-user-defined"})


def lookup_charset(charset: Optional[str]) -> Optional[str]:
    """
    Resolve a declared charset label to a Python codec name

    Returns:
        Canonical codec name, or None if the label is unknown
    """
    if not charset:
        return None
    label = charset.strip().strip("\"'").lower()
    if not label or label in UNKNOWN_CHARSET_LABELS:
        return None
    label = CHARSET_ALIASES.get(label, label)
    try:
        name = codecs.lookup(label).name
        # Rejects bytes-to-bytes codecs (zlib, hex, rot13) and codecs that
        # cannot replace invalid input (idna)
        b"".decode(name, errors="replace")
    except (LookupError, UnicodeError):
        return None
    return name


def decode_text(data: bytes, codec: Optional[str], fallback_charset: str) -> str:
    """
    Decode bytes with replacement, using ``fallback_charset`` when ``codec``
    is missing or refuses the input
    """
    if codec:
        try:
            return data.decode(codec, errors="replace")
        except (UnicodeError, LookupError):
            logger.debug("Codec %s failed; decoding with %s", codec, fallback_charset)
    return data.decode(fallback_charset, errors="replace")


def decode_header_bytes(raw: bytes, fallback_charset: str) -> str:
    """
    Decode raw header bytes to text

    Header bytes should be ASCII, but 8-bit headers are common: try UTF-8
    first (RFC 6532), then the fallback charset.
    """
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode(fallback_charset, errors="replace")


# ---------------------------------------------------------------------------
# Encoded words (RFC 2047)
# ---------------------------------------------------------------------------

def _decode_q(encoded: str) -> bytes:
    # Raw 8-bit text inside a Q word is illegal but kept as UTF-8 bytes
    data = encoded.encode("utf-8").replace(b"_", b" ")
    return _Q_ESCAPE.sub(lambda m: bytes([int(m.group(1), 16)]), data)


def _decode_b(encoded: str) -> Optional[bytes]:
    try:
        data = encoded.encode("ascii")
    except UnicodeEncodeError:
        return None
    missing = -len(data) % 4
    try:
        return base64.b64decode(data + b"=" * missing, validate=True)
    except (binascii.Error, ValueError):
        return None


def _decode_encoded_word(match) -> Optional[Tuple[str, bytes]]:
    """Return (codec name, payload bytes) or None if the word is unusable"""
    charset, encoding, text = match.group(1), match.group(2).lower(), match.group(3)
    codec = lookup_charset(charset.partition("*")[0])
    if codec is None:
        return None
    if encoding == "q":
        return codec, _decode_q(text)
    if encoding == "b":
        payload = _decode_b(text)
        return None if payload is None else (codec, payload)
    return None


def decode_encoded_words(value: str, defects: Optional[List[Defect]] = None,
                         fallback_charset: str = "latin-1") -> str:
    """
    Decode every RFC 2047 encoded word inside ``value``

    Whitespace between two adjacent encoded words is dropped; adjacent words
    in the same charset are joined at the byte level before decoding so a
    multi-byte character split across words survives. Words that cannot be
    decoded are kept verbatim.

    Args:
        value: Header value text
        defects: Optional list that receives recovery markers
        fallback_charset: Charset used when a word's own codec fails

    Returns:
        Decoded text; ``value`` itself when it contains no encoded words
    """
    if "=?" not in value:
        return value

    out: List[str] = []
    pending_codec: Optional[str] = None
    pending: List[bytes] = []
    pos = 0

    def flush_pending():
        if pending:
            out.append(decode_text(b"".join(pending), pending_codec, fallback_charset))
            pending.clear()

    for match in _ENCODED_WORD.finditer(value):
        between = value[pos:match.start()]
        decoded = _decode_encoded_word(match)

        if decoded is None:
            flush_pending()
            pending_codec = None
            out.append(between)
            out.append(match.group(0))
            if defects is not None:
                defects.append(Defect(DefectKind.INVALID_ENCODED_WORD,
                                      sanitize_for_logging(match.group(0), 60)))
            logger.debug("Passing through undecodable encoded word %s", sanitize_for_logging(match.group(0), 60))
            pos = match.end()
            continue

        codec, payload = decoded
        adjacent = pending_codec is not None and _LINEAR_WHITESPACE.fullmatch(between)
        if not adjacent:
            flush_pending()
            out.append(between)
        elif codec != pending_codec:
            flush_pending()
        pending_codec = codec
        pending.append(payload)
        pos = match.end()

    flush_pending()
    out.append(value[pos:])
    return "".join(out)


def decode_header_value(raw: bytes, fallback_charset: str = "latin-1",
                        defects: Optional[List[Defect]] = None) -> str:
    """
    Decode a raw (unfolded) header value into text

    A value without encoded words comes back unchanged apart from the
    bytes-to-text step.
    """
    text = decode_header_bytes(raw, fallback_charset)
    return decode_encoded_words(text, defects, fallback_charset)


# ---------------------------------------------------------------------------
# Structured values (Content-Type, Content-Disposition)
# ---------------------------------------------------------------------------

@dataclass
class _Segment:
    """Text of one ';'-separated segment; quoted runs kept apart from plain text"""
    pieces: List[Tuple[str, bool]] = field(default_factory=list)

    def add(self, text: str, quoted: bool) -> None:
        if text or quoted:
            self.pieces.append((text, quoted))

    def joined(self) -> str:
        return "".join(text if quoted else text.strip() for text, quoted in self.pieces)


def _scan_segments(value: str, defects: List[Defect]) -> List[_Segment]:
    """
    Split a structured value on ';', dropping comments and unquoting strings

    A small character state machine: quoted strings and comments may contain
    ';' and escaped characters; both are closed implicitly at end of value.
    """
    segments = [_Segment()]
    plain: List[str] = []
    i, n = 0, len(value)

    while i < n:
        ch = value[i]
        if ch == '"':
            segments[-1].add("".join(plain), False)
            plain = []
            quoted: List[str] = []
            i += 1
            while i < n and value[i] != '"':
                if value[i] == "\\" and i + 1 < n:
                    i += 1
                quoted.append(value[i])
                i += 1
            if i >= n:
                defects.append(Defect(DefectKind.UNTERMINATED_QUOTED_STRING))
            segments[-1].add("".join(quoted), True)
            i += 1
        elif ch == "(":
            depth = 1
            i += 1
            while i < n and depth:
                if value[i] == "\\":
                    i += 1
                elif value[i] == "(":
                    depth += 1
                elif value[i] == ")":
                    depth -= 1
                i += 1
            if depth:
                defects.append(Defect(DefectKind.UNTERMINATED_COMMENT))
            # A comment separates tokens like whitespace does
            plain.append(" ")
        elif ch == ";":
            segments[-1].add("".join(plain), False)
            plain = []
            segments.append(_Segment())
            i += 1
        else:
            plain.append(ch)
            i += 1

    segments[-1].add("".join(plain), False)
    return segments


def _split_parameter(segment: _Segment) -> Optional[Tuple[str, str]]:
    """Return (name, value) for a 'name=value' segment"""
    name_parts: List[str] = []
    value_pieces: List[Tuple[str, bool]] = []
    seen_equals = False

    for text, quoted in segment.pieces:
        if seen_equals:
            value_pieces.append((text, quoted))
        elif quoted:
            # Quoted text before '=' is not a parameter name
            return None
        elif "=" in text:
            before, _, after = text.partition("=")
            name_parts.append(before)
            value_pieces.append((after, False))
            seen_equals = True
        else:
            name_parts.append(text)

    name = "".join(name_parts).strip().lower()
    if not seen_equals or not name:
        return None

    was_quoted = any(quoted for _, quoted in value_pieces)
    value = "".join(text if quoted else text.strip() for text, quoted in value_pieces)
    if not was_quoted and len(value) >= 2 and value[0] == value[-1] == "'":
        # boundary='x' - single quotes used as if they were double quotes
        value = value[1:-1]
    return name, value


def _percent_decode(text: str, defects: List[Defect]) -> bytes:
    out = bytearray()
    pos = 0
    for match in _PERCENT_ESCAPE.finditer(text):
        out += text[pos:match.start()].encode("utf-8", errors="surrogateescape")
        if match.group(1) is None:
            out += b"%"
            defects.append(Defect(DefectKind.INVALID_PERCENT_ESCAPE,
                                  sanitize_for_logging(text[match.start():match.start() + 3])))
        else:
            out.append(int(match.group(1), 16))
        pos = match.end()
    out += text[pos:].encode("utf-8", errors="surrogateescape")
    return bytes(out)


def _join_extended(sections: List[Tuple[int, str, bool]], fallback_charset: str,
                   defects: List[Defect]) -> str:
    """Assemble RFC 2231 sections (index, value, extended) into text"""
    sections.sort(key=lambda item: item[0])
    codec = None
    out: List[str] = []
    pending = bytearray()

    for position, (index, text, extended) in enumerate(sections):
        if not extended:
            if pending:
                out.append(decode_text(bytes(pending), codec, fallback_charset))
                pending = bytearray()
            out.append(text)
            continue
        if position == 0 and text.count("'") >= 2:
            charset, _, rest = text.partition("'")
            _, _, text = rest.partition("'")
            codec = lookup_charset(charset)
            if charset and codec is None:
                defects.append(Defect(DefectKind.UNKNOWN_CHARSET, sanitize_for_logging(charset)))
        pending += _percent_decode(text, defects)

    if pending:
        out.append(decode_text(bytes(pending), codec, fallback_charset))
    return "".join(out)


def parse_structured_value(value: str, fallback_charset: str = "latin-1",
                           defects: Optional[List[Defect]] = None
                           ) -> Tuple[str, Dict[str, str]]:
    """
    Parse a Content-Type / Content-Disposition style value

    Args:
        value: Header value text (encoded words not yet decoded)
        fallback_charset: Charset for RFC 2231 values without a usable charset
        defects: Optional list that receives recovery markers

    Returns:
        Tuple of (lower-cased primary value, parameter mapping)

    Example:
        >>> parse_structured_value('text/plain; charset="UTF-8" (comment)')
        ('text/plain', {'charset': 'UTF-8'})
    """
    if defects is None:
        defects = []

    segments = _scan_segments(value, defects)
    primary = "".join(segments[0].joined().split()).lower()

    params: Dict[str, str] = {}
    extended: Dict[str, List[Tuple[int, str, bool]]] = {}

    for segment in segments[1:]:
        parsed = _split_parameter(segment)
        if parsed is None:
            continue
        name, param_value = parsed

        match = _EXTENDED_PARAM.match(name)
        if match:
            base = match.group(1)
            index = int(match.group(2)) if match.group(2) is not None else 0
            is_extended = match.group(2) is None or match.group(3) is not None
            extended.setdefault(base, []).append((index, param_value, is_extended))
            continue

        if name in params:
            continue
        if name == "boundary":
            # Boundaries are opaque; "=?" inside one is not an encoded word
            params[name] = param_value
        else:
            params[name] = decode_encoded_words(param_value, defects, fallback_charset)

    for base, sections in extended.items():
        params[base] = _join_extended(sections, fallback_charset, defects)

    return primary, params


# ---------------------------------------------------------------------------
# Header entries
# ---------------------------------------------------------------------------

def decode_header(raw: RawHeader, fallback_charset: str = "latin-1") -> HeaderEntry:
    """
    Build a HeaderEntry from a tokenized header field

    Structured headers additionally get their primary value and parameters.
    """
    defects: List[Defect] = []
    text = decode_header_bytes(raw.raw_value, fallback_charset)
    decoded = decode_encoded_words(text, defects, fallback_charset)

    primary = None
    params = MappingProxyType({})
    if raw.name.lower() in STRUCTURED_HEADERS:
        primary, parsed = parse_structured_value(text, fallback_charset, defects)
        params = MappingProxyType(parsed)

    return HeaderEntry(
        name=raw.name,
        raw_value=raw.raw_value,
        value=decoded,
        span=raw.span,
        primary=primary,
        params=params,
        defects=tuple(defects),
    )
