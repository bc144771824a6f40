"""
Response line classification.

Each server line is tagged by its first character:

    !   error        payload = rest of line
    #   info         payload = rest of line
    ^   redirect     payload = redirect URI
    \\x01 prompt      no payload, server ready for input
    .   terminator   the whole line, ends a multi-line reply block
"""

from dataclasses import dataclass
from enum import Enum

MARKER_ERROR = "!"
MARKER_INFO = "#"
MARKER_REDIRECT = "^"
MARKER_PROMPT = "\x01"
TERMINATOR = "."


class LineType(Enum):
    ERROR = "error"
    INFO = "info"
    REDIRECT = "redirect"
    PROMPT = "prompt"
    TERMINATOR = "terminator"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class ResponseLine:
    tag: LineType
    payload: str = ""


_MARKERS = {
    MARKER_ERROR: LineType.ERROR,
    MARKER_INFO: LineType.INFO,
    MARKER_REDIRECT: LineType.REDIRECT,
}


def classify_line(line: str) -> ResponseLine:
    """
    Classify a raw server line.

    Unknown leading characters (and the empty line) come back UNCLASSIFIED
    with the full line as payload; the reading loop decides whether that is
    acceptable where it occurs.
    """
    if line == TERMINATOR:
        return ResponseLine(LineType.TERMINATOR)
    if not line:
        return ResponseLine(LineType.UNCLASSIFIED, line)

    marker = line[0]
    if marker == MARKER_PROMPT:
        return ResponseLine(LineType.PROMPT)

    tag = _MARKERS.get(marker)
    if tag is None:
        return ResponseLine(LineType.UNCLASSIFIED, line)
    return ResponseLine(tag, line[1:])
