"""
Transfer and Charset Decoder Module
Undoes Content-Transfer-Encoding and converts textual payloads to str

SECURITY STORY: Payload bytes are the least trustworthy part of a message.
Base64 bodies get truncated by broken relays, quoted-printable gets mangled
by line-wrapping gateways, charsets are mislabelled. Decoding therefore
never raises: it decodes what it can, keeps what it cannot, and says so.
"""

import binascii
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from .header_decoder import lookup_charset
from .message_data import Defect, DefectKind
from ..utils.config import ParserConfig
from ..utils.sanitization import sanitize_for_logging

logger = logging.getLogger(__name__)

IDENTITY_ENCODINGS = frozenset({"7bit", "8bit", "binary"})
KNOWN_ENCODINGS = IDENTITY_ENCODINGS | {"base64", "quoted-printable"}

# Longest run of base64 alphabet and whitespace from a position
_BASE64_RUN = re.compile(rb"[A-Za-z0-9+/\s]*")
_BASE64_PADDING = re.compile(rb"[=\s]*")
_WHITESPACE = re.compile(rb"\s+")
# "=XX" escape, or soft line break ("=" + trailing blanks + line end), or a lone "="
_QP_ESCAPE = re.compile(rb"=(?:([0-9A-Fa-f]{2})|([ \t]*(?:\r\n|\n|\Z)))?")


@dataclass
class TransferResult:
    """
    Outcome of undoing a transfer encoding

    Attributes:
        data: Decoded bytes
        encoding: Resolved (lower-case) transfer encoding
        undecoded_suffix: Trailing bytes that could not be decoded
        defects: Recovery markers
    """
    data: bytes
    encoding: str
    undecoded_suffix: bytes = b""
    defects: List[Defect] = field(default_factory=list)


@dataclass
class CharsetResult:
    """Outcome of converting bytes to text"""
    text: str
    charset: str
    substitutions: int = 0
    defects: List[Defect] = field(default_factory=list)


@dataclass
class DecodedPayload:
    """Combined transfer and charset decoding of one leaf body"""
    data: bytes
    text: Optional[str]
    encoding: str
    charset: Optional[str]
    original: bytes
    undecoded_suffix: bytes = b""
    substitutions: int = 0
    defects: List[Defect] = field(default_factory=list)

    @property
    def recovered(self) -> bool:
        return bool(self.defects) or self.substitutions > 0 or bool(self.undecoded_suffix)


def normalize_transfer_encoding(value: Optional[str]) -> str:
    """
    Resolve a Content-Transfer-Encoding value

    Case and surrounding blanks are ignored; a missing value means 7bit.
    """
    if not value:
        return "7bit"
    return value.strip().strip("\"'").lower() or "7bit"


# ---------------------------------------------------------------------------
# base64
# ---------------------------------------------------------------------------

def decode_base64(data: bytes) -> TransferResult:
    """
    Decode base64, tolerating line breaks and trailing garbage

    Decoding stops at the first padding run or the first byte outside the
    base64 alphabet. Everything after that point, unless it is only
    whitespace, is returned untouched as ``undecoded_suffix``.

    Example:
        >>> decode_base64(b"aGVsbG8=!!").undecoded_suffix
        b'!!'
    """
    defects: List[Defect] = []
    run_end = _BASE64_RUN.match(data).end()
    alphabet = _WHITESPACE.sub(b"", data[:run_end])
    leftover = len(alphabet) % 4

    if leftover == 1:
        # One dangling character cannot encode anything; it starts the suffix
        stop = len(data[:run_end].rstrip()) - 1
        alphabet = alphabet[:-1]
        padding_found = False
    else:
        stop = _BASE64_PADDING.match(data, run_end).end()
        padding_found = b"=" in data[run_end:stop]
        if leftover:
            if not padding_found:
                defects.append(Defect(DefectKind.BASE64_PADDING, "missing final padding"))
            alphabet += b"=" * (4 - leftover)

    suffix = data[stop:]
    if not suffix.strip():
        suffix = b""
    else:
        defects.append(Defect(
            DefectKind.INVALID_BASE64,
            f"{len(suffix)} trailing byte(s) kept undecoded",
        ))
        logger.debug("base64 decoding stopped at offset %d: %s", stop, sanitize_for_logging(suffix, 20))

    try:
        decoded = binascii.a2b_base64(alphabet)
    except binascii.Error as e:
        defects.append(Defect(DefectKind.INVALID_BASE64, str(e)))
        return TransferResult(data=b"", encoding="base64", undecoded_suffix=data, defects=defects)

    return TransferResult(data=decoded, encoding="base64", undecoded_suffix=suffix, defects=defects)


# ---------------------------------------------------------------------------
# quoted-printable
# ---------------------------------------------------------------------------

def decode_quoted_printable(data: bytes) -> TransferResult:
    """
    Decode quoted-printable

    Soft line breaks are removed, ``=XX`` becomes a byte (either case of hex
    digit is accepted) and any other ``=`` is kept literally.
    """
    invalid = 0

    def replace(match) -> bytes:
        nonlocal invalid
        if match.group(1) is not None:
            return bytes([int(match.group(1), 16)])
        if match.group(2) is not None:
            return b""
        invalid += 1
        return b"="

    decoded = _QP_ESCAPE.sub(replace, data)
    defects: List[Defect] = []
    if invalid:
        defects.append(Defect(DefectKind.INVALID_QP_ESCAPE,
                              f"{invalid} invalid escape(s) kept literally"))
    return TransferResult(data=decoded, encoding="quoted-printable", defects=defects)


def decode_transfer(data: bytes, encoding: Optional[str]) -> TransferResult:
    """
    Undo a transfer encoding

    Args:
        data: Raw body bytes
        encoding: Declared Content-Transfer-Encoding (None if absent)

    Returns:
        TransferResult; unrecognized encodings pass the bytes through
    """
    resolved = normalize_transfer_encoding(encoding)
    if resolved == "base64":
        return decode_base64(data)
    if resolved == "quoted-printable":
        return decode_quoted_printable(data)
    if resolved in IDENTITY_ENCODINGS:
        return TransferResult(data=data, encoding=resolved)

    logger.debug("Unrecognized transfer encoding %s; passing through", sanitize_for_logging(resolved))
    return TransferResult(
        data=data,
        encoding=resolved,
        defects=[Defect(DefectKind.UNRECOGNIZED_TRANSFER_ENCODING, sanitize_for_logging(resolved))],
    )


# ---------------------------------------------------------------------------
# charsets
# ---------------------------------------------------------------------------

def _decode_counting(data: bytes, codec: str, fallback: str) -> CharsetResult:
    defects: List[Defect] = []
    try:
        return CharsetResult(text=data.decode(codec), charset=codec)
    except (UnicodeError, LookupError):
        pass

    try:
        text = data.decode(codec, errors="replace")
    except (UnicodeError, LookupError):
        # Codec refuses this input outright; nothing of it is usable
        logger.debug("Codec %s failed; decoding with %s", codec, fallback)
        defects.append(Defect(DefectKind.UNKNOWN_CHARSET, f"{codec} failed; decoded as {fallback}"))
        codec = fallback
        text = data.decode(codec, errors="replace")

    # U+FFFD characters that were genuinely present in the source don't count
    try:
        genuine = data.count("\ufffd".encode(codec))
    except UnicodeEncodeError:
        genuine = 0
    substitutions = text.count("\ufffd") - genuine
    if not substitutions and defects:
        return CharsetResult(text=text, charset=codec, defects=defects)
    substitutions = max(substitutions, 1)
    defects.append(Defect(DefectKind.CHARSET_SUBSTITUTION,
                          f"{substitutions} invalid sequence(s) in {codec}"))
    return CharsetResult(text=text, charset=codec, substitutions=substitutions, defects=defects)


def decode_charset(data: bytes, charset: Optional[str], config: ParserConfig) -> CharsetResult:
    """
    Convert bytes to text in the declared (or default) charset

    Invalid sequences become U+FFFD and are counted. An unknown charset falls
    back to ``config.fallback_charset``; undeclared text that is invalid in
    the default charset is retried as strict UTF-8 when ``infer_utf8`` is on.
    """
    defects: List[Defect] = []
    fallback = lookup_charset(config.fallback_charset) or "latin-1"

    if charset:
        codec = lookup_charset(charset)
        if codec is None:
            logger.debug("Unknown charset %s; using fallback", sanitize_for_logging(charset))
            defects.append(Defect(DefectKind.UNKNOWN_CHARSET, sanitize_for_logging(charset)))
            codec = fallback
    else:
        codec = lookup_charset(config.default_charset) or "ascii"
        if config.infer_utf8:
            try:
                return CharsetResult(text=data.decode(codec), charset=codec)
            except (UnicodeError, LookupError):
                pass
            try:
                return CharsetResult(text=data.decode("utf-8"), charset="utf-8")
            except UnicodeDecodeError:
                pass

    result = _decode_counting(data, codec, fallback)
    result.defects[:0] = defects
    return result


def is_textual(media_type: str, charset: Optional[str]) -> bool:
    """A payload is decoded to text for text/* types or when a charset is declared"""
    return media_type.startswith("text/") or bool(charset)


def decode_payload(
    data: bytes,
    transfer_encoding: Optional[str],
    charset: Optional[str],
    config: ParserConfig,
    textual: bool = True
) -> DecodedPayload:
    """
    Run transfer decoding, then charset decoding for textual payloads

    Args:
        data: Raw body bytes
        transfer_encoding: Declared Content-Transfer-Encoding
        charset: Declared charset parameter (None if absent)
        config: Parser configuration supplying default/fallback charsets
        textual: Whether to convert the decoded bytes to text

    Returns:
        DecodedPayload with decoded content, markers and the original bytes
    """
    transfer = decode_transfer(data, transfer_encoding)
    defects = list(transfer.defects)
    text = None
    resolved_charset = None
    substitutions = 0

    if textual:
        converted = decode_charset(transfer.data, charset, config)
        text = converted.text
        resolved_charset = converted.charset
        substitutions = converted.substitutions
        defects.extend(converted.defects)

    return DecodedPayload(
        data=transfer.data,
        text=text,
        encoding=transfer.encoding,
        charset=resolved_charset,
        original=data,
        undecoded_suffix=transfer.undecoded_suffix,
        substitutions=substitutions,
        defects=defects,
    )
