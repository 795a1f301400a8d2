"""
JSON field extraction - Pulls single fields out of complete or truncated JSON text.

Provider responses and stream frames are scanned for the one field we need
instead of being fully parsed, so a half-received frame yields "no value"
rather than an exception.
"""

from typing import Any, List, Optional, Union

Scalar = Union[str, int, float, bool]

_ESCAPES = {
    'n': '\n',
    'r': '\r',
    't': '\t',
    '"': '"',
    '\\': '\\',
    '/': '/',
    'b': '\b',
    'f': '\f',
}

_WHITESPACE = ' \t\r\n'


def find_closing_quote(text: str, start: int) -> int:
    """Return the index of the quote that terminates a string starting at ``start``.

    ``start`` is the first character after the opening quote. A quote only
    terminates the string when it is preceded by an even number of
    backslashes. Returns -1 when the string is not terminated yet.
    """
    pos = start
    while True:
        pos = text.find('"', pos)
        if pos == -1:
            return -1

        backslashes = 0
        back = pos - 1
        while back >= start and text[back] == '\\':
            backslashes += 1
            back -= 1

        if backslashes % 2 == 0:
            return pos
        pos += 1


def unescape_json_string(raw: str) -> str:
    """Decode JSON string escapes in a single left-to-right pass."""
    if '\\' not in raw:
        return raw

    out: List[str] = []
    i = 0
    length = len(raw)
    while i < length:
        ch = raw[i]
        if ch != '\\' or i + 1 >= length:
            out.append(ch)
            i += 1
            continue

        code = raw[i + 1]
        if code in _ESCAPES:
            out.append(_ESCAPES[code])
            i += 2
        elif code == 'u' and i + 6 <= length:
            try:
                value = int(raw[i + 2:i + 6], 16)
            except ValueError:
                out.append(raw[i:i + 2])
                i += 2
                continue
            i += 6
            # Surrogate pair
            if 0xD800 <= value <= 0xDBFF and raw.startswith('\\u', i) and i + 6 <= length:
                try:
                    low = int(raw[i + 2:i + 6], 16)
                except ValueError:
                    low = -1
                if 0xDC00 <= low <= 0xDFFF:
                    value = 0x10000 + ((value - 0xD800) << 10) + (low - 0xDC00)
                    i += 6
            out.append(chr(value))
        else:
            # Unknown escape, keep it as written
            out.append(raw[i:i + 2])
            i += 2

    return ''.join(out)


def escape_json_string(value: str) -> str:
    """Escape a string for embedding between JSON quotes."""
    out: List[str] = []
    for ch in value:
        if ch == '"':
            out.append('\\"')
        elif ch == '\\':
            out.append('\\\\')
        elif ch == '\n':
            out.append('\\n')
        elif ch == '\r':
            out.append('\\r')
        elif ch == '\t':
            out.append('\\t')
        elif ch == '\b':
            out.append('\\b')
        elif ch == '\f':
            out.append('\\f')
        elif ord(ch) < 0x20:
            out.append(f'\\u{ord(ch):04x}')
        else:
            out.append(ch)
    return ''.join(out)


def find_field(text: str, name: str, start: int = 0) -> int:
    """Find the key ``"name":`` at or after ``start``.

    Returns the index just past the colon, or -1. Occurrences of the name
    inside string values are skipped because the key must be followed by a
    colon and its opening quote must not be escaped.
    """
    needle = f'"{name}"'
    pos = start
    while True:
        pos = text.find(needle, pos)
        if pos == -1:
            return -1

        # An escaped quote means we are inside some string value
        backslashes = 0
        back = pos - 1
        while back >= 0 and text[back] == '\\':
            backslashes += 1
            back -= 1

        after = pos + len(needle)
        while after < len(text) and text[after] in _WHITESPACE:
            after += 1

        if backslashes % 2 == 0 and after < len(text) and text[after] == ':':
            return after + 1
        pos += 1


def _parse_scalar(token: str) -> Optional[Scalar]:
    if token == 'true':
        return True
    if token == 'false':
        return False
    if token == 'null' or not token:
        return None
    try:
        return int(token)
    except ValueError:
        pass
    try:
        return float(token)
    except ValueError:
        return None


def _value_at(text: str, pos: int) -> Optional[Scalar]:
    while pos < len(text) and text[pos] in _WHITESPACE:
        pos += 1
    if pos >= len(text):
        return None

    first = text[pos]
    if first == '"':
        end = find_closing_quote(text, pos + 1)
        if end == -1:
            return None
        return unescape_json_string(text[pos + 1:end])

    if first in '{[':
        return None

    # Numbers, booleans and null run until the next comma or closing brace
    end = len(text)
    for stop in (',', '}'):
        idx = text.find(stop, pos)
        if idx != -1 and idx < end:
            end = idx
    return _parse_scalar(text[pos:end].strip().rstrip(']').strip())


def extract_field(text: str, name: str, anchor: Optional[str] = None) -> Optional[Scalar]:
    """Return the value of the first ``name`` field, or None when there is none.

    When ``anchor`` is given the search starts after the first ``anchor`` key,
    e.g. ``extract_field(body, "content", anchor="delta")``.
    """
    if not text:
        return None

    start = 0
    if anchor:
        start = find_field(text, anchor)
        if start == -1:
            return None

    pos = find_field(text, name, start)
    if pos == -1:
        return None
    return _value_at(text, pos)


def extract_string(text: str, name: str, anchor: Optional[str] = None) -> Optional[str]:
    """Like extract_field, but only string values count."""
    value = extract_field(text, name, anchor=anchor)
    return value if isinstance(value, str) else None


def extract_all(text: str, name: str, anchor: Optional[str] = None) -> List[str]:
    """Return every string value of ``name`` in document order."""
    values: List[str] = []
    if not text:
        return values

    pos = 0
    if anchor:
        pos = find_field(text, anchor)
        if pos == -1:
            return values

    while True:
        pos = find_field(text, name, pos)
        if pos == -1:
            break
        value = _value_at(text, pos)
        if isinstance(value, str):
            values.append(value)
        pos += 1

    return values
