"""
Message Data Model
Contains the immutable tree nodes produced by the parser

PATTERN RECOGNITION: This is a tagged variant. A Message always has a body
that is either a Leaf (terminal payload) or a Multipart (ordered children,
each a full Message). Consumers branch on ``body.kind`` or isinstance.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import ClassVar, Iterator, List, Mapping, Optional, Tuple, Union

_EMPTY_PARAMS: Mapping[str, str] = MappingProxyType({})


class DefectKind:
    """Recovery marker names, one per repair the parser knows how to make"""
    MALFORMED_HEADER_LINE = "malformed-header-line"
    MISSING_HEADER_SEPARATOR = "missing-header-separator"
    INVALID_ENCODED_WORD = "invalid-encoded-word"
    UNTERMINATED_QUOTED_STRING = "unterminated-quoted-string"
    UNTERMINATED_COMMENT = "unterminated-comment"
    INVALID_PERCENT_ESCAPE = "invalid-percent-escape"
    INVALID_CONTENT_TYPE = "invalid-content-type"
    MISSING_BOUNDARY = "missing-boundary"
    BOUNDARY_NOT_FOUND = "boundary-not-found"
    MISSING_CLOSE_DELIMITER = "missing-close-delimiter"
    INVALID_BASE64 = "invalid-base64"
    BASE64_PADDING = "base64-padding"
    INVALID_QP_ESCAPE = "invalid-qp-escape"
    UNRECOGNIZED_TRANSFER_ENCODING = "unrecognized-transfer-encoding"
    UNKNOWN_CHARSET = "unknown-charset"
    CHARSET_SUBSTITUTION = "charset-substitution"
    DEPTH_LIMIT = "depth-limit"
    PART_LIMIT = "part-limit"


@dataclass(frozen=True)
class Defect:
    """A repair the parser made instead of failing"""
    kind: str
    detail: str = ""

    def __str__(self) -> str:
        return f"{self.kind}: {self.detail}" if self.detail else self.kind


@dataclass(frozen=True)
class ByteSpan:
    """
    Borrowed view of ``source[start:end]``

    The span keeps a reference to the one document buffer instead of a copy.
    Use view() for zero-copy access and tobytes() when owned bytes are needed.
    """
    source: bytes = field(repr=False, compare=False)
    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start

    def view(self) -> memoryview:
        return memoryview(self.source)[self.start:self.end]

    def tobytes(self) -> bytes:
        return self.source[self.start:self.end]


@dataclass(frozen=True)
class HeaderEntry:
    """
    One header field

    ``name`` keeps its original casing, ``raw_value`` is the unfolded value
    as it appeared on the wire and ``value`` the decoded text. ``primary``
    and ``params`` are only filled for structured headers such as
    Content-Type and Content-Disposition.
    """
    name: str
    raw_value: bytes
    value: str
    span: ByteSpan
    primary: Optional[str] = None
    params: Mapping[str, str] = field(default_factory=lambda: _EMPTY_PARAMS, compare=False)
    defects: Tuple[Defect, ...] = ()

    def __str__(self) -> str:
        return f"{self.name}: {self.value}"


@dataclass(frozen=True)
class Leaf:
    """
    Terminal payload

    ``data`` holds the transfer-decoded bytes. ``text`` holds the
    charset-decoded text for textual payloads and is None for binary ones.
    """
    kind: ClassVar[str] = "leaf"

    media_type: str
    transfer_encoding: str
    charset: Optional[str]
    data: bytes = field(repr=False)
    text: Optional[str] = field(repr=False)
    raw: ByteSpan
    undecoded_suffix: bytes = b""
    substitutions: int = 0
    truncated: bool = False
    defects: Tuple[Defect, ...] = ()

    @property
    def content(self) -> Union[str, bytes]:
        """Decoded text for textual payloads, decoded bytes otherwise"""
        return self.text if self.text is not None else self.data

    @property
    def is_text(self) -> bool:
        return self.text is not None

    @property
    def recovered(self) -> bool:
        """True if any substitution or repair happened while decoding"""
        return bool(self.defects) or self.substitutions > 0 or bool(self.undecoded_suffix)


@dataclass(frozen=True)
class Multipart:
    """
    Container body split on ``boundary``

    ``epilogue`` is None when the close delimiter never appeared; in that
    case the final part runs to the end of the body and ``closed`` is False.
    """
    kind: ClassVar[str] = "multipart"

    media_type: str
    boundary: str
    parts: Tuple["Message", ...]
    preamble: ByteSpan
    epilogue: Optional[ByteSpan]
    raw: ByteSpan
    closed: bool = True
    truncated: bool = False
    defects: Tuple[Defect, ...] = ()


Body = Union[Leaf, Multipart]


@dataclass(frozen=True)
class Message:
    """
    A parsed MIME message or body part

    MAINTENANCE WISDOM: Headers are kept as an ordered tuple rather than a
    dict. Duplicates (Received, DKIM-Signature, ...) are meaningful and their
    order is evidence, so lookups scan instead of deduplicating.
    """
    headers: Tuple[HeaderEntry, ...]
    body: Body
    raw: ByteSpan
    header_span: ByteSpan
    depth: int = 0
    defects: Tuple[Defect, ...] = ()

    # -- header access ------------------------------------------------------

    def get_headers(self, name: str) -> List[HeaderEntry]:
        """Return every header entry named ``name`` (case-insensitive), in order"""
        wanted = name.lower()
        return [h for h in self.headers if h.name.lower() == wanted]

    def get_all(self, name: str) -> List[str]:
        """Return the decoded values of every header named ``name``"""
        return [h.value for h in self.get_headers(name)]

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Return the decoded value of the first header named ``name``"""
        for header in self.get_headers(name):
            return header.value
        return default

    def __contains__(self, name: str) -> bool:
        return bool(self.get_headers(name))

    # -- body access --------------------------------------------------------

    @property
    def content_type(self) -> str:
        """Resolved media type of this message's body"""
        return self.body.media_type

    @property
    def is_multipart(self) -> bool:
        return isinstance(self.body, Multipart)

    @property
    def parts(self) -> Tuple["Message", ...]:
        """Child messages for a multipart body, empty for a leaf"""
        if isinstance(self.body, Multipart):
            return self.body.parts
        return ()

    def walk(self) -> Iterator["Message"]:
        """
        Yield this message and all descendants depth-first, in source order

        Uses an explicit stack so walking never depends on Python recursion.
        """
        stack = [self]
        while stack:
            message = stack.pop()
            yield message
            stack.extend(reversed(message.parts))

    def leaves(self) -> Iterator[Leaf]:
        """Yield every Leaf body in source order"""
        for message in self.walk():
            if isinstance(message.body, Leaf):
                yield message.body

    def iter_defects(self) -> Iterator[Defect]:
        """Yield every recovery marker in the tree, headers and bodies included"""
        for message in self.walk():
            yield from message.defects
            for header in message.headers:
                yield from header.defects
            yield from message.body.defects

    @property
    def truncated(self) -> bool:
        """True if a resource limit cut off any part of this tree"""
        return any(message.body.truncated for message in self.walk())

    def describe(self) -> str:
        """
        Render an indented outline of the tree for debugging

        This is a diagnostic view only; it is not a serialisation and cannot
        be parsed back.
        """
        lines: List[str] = []
        for message in self.walk():
            indent = "  " * message.depth
            for header in message.headers:
                lines.append(f"{indent}{header.name}: {header.value}")
            body = message.body
            if isinstance(body, Multipart):
                state = "" if body.closed else ", unclosed"
                lines.append(
                    f"{indent}[{body.media_type}; boundary={body.boundary!r}; "
                    f"{len(body.parts)} part(s){state}]"
                )
            else:
                extra = ", truncated" if body.truncated else ""
                lines.append(
                    f"{indent}[{body.media_type}; {body.transfer_encoding}; "
                    f"charset={body.charset}; {len(body.data)} byte(s){extra}]"
                )
        return "\n".join(lines)
