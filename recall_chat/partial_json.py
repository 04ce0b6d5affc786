"""Incremental extraction of one string field from a streaming JSON object.

The final structured reply arrives as JSON text a few characters at a time.
:class:`ResponseFieldStreamer` finds the opening of the ``"response"`` value
and hands back newly decoded characters as they become available, so the user
sees prose before the object is complete. :func:`parse_reply` is the
authoritative parse once the stream has ended.
"""

import json
import re
from dataclasses import dataclass, field

from recall_chat.logging import get_logger

log = get_logger(__name__)

_SIMPLE_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


class ResponseFieldStreamer:
    """Stream-decode the string value of one top-level field."""

    def __init__(self, field: str = "response"):
        self.field = field
        self._marker = re.compile(r'"' + re.escape(field) + r'"\s*:\s*"')
        self._raw = ""
        self._pos: int | None = None  # index of the next undecoded char in the value
        self.done = False
        self.text = ""

    @property
    def started(self) -> bool:
        return self._pos is not None

    def feed(self, chunk: str) -> str:
        """Add raw JSON text; return the characters decoded by this chunk."""
        if self.done or not chunk:
            return ""
        self._raw += chunk
        if self._pos is None:
            match = self._marker.search(self._raw)
            if match is None:
                return ""
            self._pos = match.end()
        decoded = self._decode()
        self.text += decoded
        return decoded

    def _read_hex(self, start: int) -> int | None:
        digits = self._raw[start:start + 4]
        if len(digits) < 4:
            return None
        if not all(c in _HEX_DIGITS for c in digits):
            return -1
        return int(digits, 16)

    def _decode(self) -> str:
        raw = self._raw
        pos = self._pos
        out: list[str] = []
        while pos < len(raw):
            char = raw[pos]
            if char == '"':
                self.done = True
                pos += 1
                break
            if char != "\\":
                out.append(char)
                pos += 1
                continue

            # escape sequence; wait for the rest if it is split across chunks
            if pos + 1 >= len(raw):
                break
            kind = raw[pos + 1]
            if kind in _SIMPLE_ESCAPES:
                out.append(_SIMPLE_ESCAPES[kind])
                pos += 2
                continue
            if kind != "u":
                out.append(kind)
                pos += 2
                continue

            code = self._read_hex(pos + 2)
            if code is None:
                break
            if code < 0:
                out.append(raw[pos + 1:pos + 6])
                pos += 6
                continue
            if 0xD800 <= code <= 0xDBFF:
                tail = raw[pos + 6:pos + 8]
                if len(tail) < 2 and (tail == "" or tail == "\\"):
                    break
                if tail == "\\u":
                    low = self._read_hex(pos + 8)
                    if low is None:
                        break
                    if 0xDC00 <= low <= 0xDFFF:
                        out.append(chr(0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)))
                        pos += 12
                        continue
            out.append(chr(code))
            pos += 6
        self._pos = pos
        return "".join(out)


@dataclass
class ParsedReply:
    """Authoritative reading of the final structured reply."""

    response: str
    memory_ids: list[str] = field(default_factory=list)
    structured: bool = True


def parse_reply(
    text: str,
    field: str = "response",
    ids_field: str = "memoriesReferenced",
) -> ParsedReply:
    """Parse the buffered reply; fall back to the raw text when it is not valid."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        log.warning("Reply is not valid JSON, using raw text", error=str(e))
        return ParsedReply(response=text, structured=False)

    if not isinstance(data, dict) or not isinstance(data.get(field), str):
        log.warning("Reply is missing its response field, using raw text")
        return ParsedReply(response=text, structured=False)

    ids = data.get(ids_field) or []
    if not isinstance(ids, list):
        ids = []
    return ParsedReply(
        response=data[field],
        memory_ids=[str(i) for i in ids if isinstance(i, str)],
    )
