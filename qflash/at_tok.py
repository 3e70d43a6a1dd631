"""Tokenizer for AT command response lines such as ``+CSQ: 20,99``."""

from __future__ import annotations

import re

__all__ = [
    "AtTokenError",
    "AtTokenizer",
    "start_tokenizing",
    "char_count",
    "get_element_value",
]

_WHITESPACE = " \t\n\r\v\f"

_NUMBER_PATTERNS = {
    10: re.compile(r"[ \t\n\r\v\f]*([+-]?)([0-9]+)"),
    16: re.compile(r"[ \t\n\r\v\f]*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)"),
}


class AtTokenError(ValueError):
    """Raised when an AT response line cannot be tokenized as requested."""


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value >= 0x80000000 else value


def _parse_leading_int(token: str, base: int) -> int:
    match = _NUMBER_PATTERNS[base].match(token)
    if match is None:
        raise AtTokenError(f"no integer in token {token!r}")
    sign, digits = match.groups()
    value = int(digits, base)
    if sign == "-":
        value = -value
    return _to_int32(value)


def _split_once(text: str, delimiter: str) -> tuple[str, str | None]:
    """Split at the first delimiter; the rest is None when there is none."""
    head, found, tail = text.partition(delimiter)
    return head, (tail if found else None)


class AtTokenizer:
    """Walks the comma separated fields of an AT response body."""

    def __init__(self, text: str | None) -> None:
        self._cur: str | None = text

    @property
    def remaining(self) -> str | None:
        """The text not yet consumed, or None once the line is exhausted."""
        return self._cur

    def _skip_whitespace(self) -> None:
        if self._cur is not None:
            self._cur = self._cur.lstrip(_WHITESPACE)

    def _skip_next_comma(self) -> None:
        if self._cur is None:
            return
        _, found, tail = self._cur.partition(",")
        self._cur = tail if found else ""

    def _next_token(self) -> str | None:
        self._skip_whitespace()
        if self._cur is None:
            return None
        if self._cur.startswith('"'):
            token, self._cur = _split_once(self._cur[1:], '"')
            self._skip_next_comma()
        else:
            token, self._cur = _split_once(self._cur, ",")
        return token

    def _next_int(self, base: int) -> int:
        if self._cur is None:
            raise AtTokenError("no more tokens")
        token = self._next_token()
        if token is None:
            raise AtTokenError("no more tokens")
        return _parse_leading_int(token, base)

    def next_int(self) -> int:
        """Parse the next field as a base 10 integer."""
        return self._next_int(10)

    def next_hex_int(self) -> int:
        """Parse the next field as a base 16 integer."""
        return self._next_int(16)

    def next_bool(self) -> bool:
        """Parse the next field as a boolean, which must be 0 or 1."""
        value = self.next_int()
        if value not in (0, 1):
            raise AtTokenError(f"boolean field must be 0 or 1, got {value}")
        return bool(value)

    def next_str(self) -> str:
        """Return the next field as a string, with surrounding quotes removed."""
        if self._cur is None:
            raise AtTokenError("no more tokens")
        token = self._next_token()
        if token is None:
            raise AtTokenError("no more tokens")
        return token

    def has_more(self) -> bool:
        """True while unconsumed text remains."""
        return bool(self._cur)

    def skip_comma(self) -> None:
        """Advance past the next comma, or to the end when there is none."""
        if self._cur is None:
            raise AtTokenError("no more tokens")
        self._skip_next_comma()


def start_tokenizing(line: str | None) -> AtTokenizer:
    """Skip the ``+PREFIX:`` part of a response line and tokenize the rest."""
    if line is None:
        raise AtTokenError("no response line")
    _, found, body = line.partition(":")
    if not found:
        raise AtTokenError(f"not a valid response line: {line!r}")
    return AtTokenizer(body)


def char_count(text: str, target: str) -> int:
    """Count occurrences of the first character of ``target`` in ``text``."""
    if not target:
        return 0
    return text.count(target[0])


def get_element_value(text: str, begin_tag: str, end_tag: str) -> tuple[str, str] | None:
    """Return the value between two tags and the text after the end tag.

    Returns None when either tag is missing or the end tag comes before
    the value would start.
    """
    start = text.find(begin_tag)
    if start < 0:
        return None
    end = text.find(end_tag)
    if end < 0:
        return None
    value_start = start + len(begin_tag)
    if end < value_start:
        return None
    return text[value_start:end], text[end + len(end_tag):]