"""
Sanitization Utility Module
Makes untrusted MIME text safe to put into log records.
"""

import re
import unicodedata
from typing import Union

# ANSI escape sequences (terminal colors/cursor movement)
_ANSI_ESCAPE = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')


def sanitize_for_logging(value: Union[str, bytes, None], max_length: int = 120) -> str:
    """
    Sanitize header names, boundaries and other document text for logging.

    Documents are hostile input: a header value can carry CRLF sequences that
    forge extra log lines, or escape codes that rewrite the operator's
    terminal. Bytes are rendered with backslash escapes for anything that is
    not printable ASCII.

    Args:
        value: Text or raw bytes taken from the document.
        max_length: Maximum allowed length for the log entry (truncates if longer).

    Returns:
        Sanitized string safe for logging.
    """
    if not value:
        return ""

    if isinstance(value, (bytes, bytearray)):
        text = bytes(value[:max_length + 1]).decode("ascii", errors="backslashreplace")
    else:
        text = unicodedata.normalize('NFKC', value[:max_length + 1])

    text = text.replace('\n', '\\n').replace('\r', '\\r')
    text = _ANSI_ESCAPE.sub('', text)
    text = "".join(ch for ch in text if ch == '\t' or ord(ch) >= 32)

    if len(text) > max_length:
        text = text[:max_length] + "..."

    return text
