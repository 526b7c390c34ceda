"""POSIX-like line tokenizer and backslash escape processor.

Words are returned as ``bytes`` because escapes such as ``\\xFF`` produce raw
bytes that need not be valid UTF-8.  Use :func:`shell_split` when the words
are handed to code that expects ``str`` (the bytes are decoded with
:func:`os.fsdecode`, so they survive a round trip through ``os.fsencode``).
"""

from __future__ import annotations

import os
from typing import Iterator, List

_WHITESPACE = " \t\r\n"
_HEX_DIGITS = "0123456789abcdefABCDEF"
_OCTAL_DIGITS = "01234567"
_MAX_UNICODE_DIGITS = 6

_SIMPLE_ESCAPES = {
    "a": 0x07,
    "b": 0x08,
    "e": 0x1B,
    "E": 0x1B,
    "f": 0x0C,
    "n": 0x0A,
    "r": 0x0D,
    "t": 0x09,
    "v": 0x0B,
    "\\": 0x5C,
    "'": 0x27,
    '"': 0x22,
    "$": 0x24,
    "`": 0x60,
    " ": 0x20,
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ShellParseError(ValueError):
    """Raised when a line or argument cannot be tokenized.

    ``offset`` is the UTF-8 byte offset into the input where the problem
    starts (the opening quote or the introducing backslash).
    """

    def __init__(self, message: str, offset: int) -> None:
        super().__init__(f"{message} at offset {offset}")
        self.offset = offset


class UnterminatedQuoteError(ShellParseError):
    def __init__(self, quote: str, offset: int) -> None:
        kind = "single" if quote == "'" else "double"
        super().__init__(f"unmatched {kind} quote", offset)
        self.quote = quote


class UnterminatedEscapeError(ShellParseError):
    def __init__(self, offset: int) -> None:
        super().__init__("trailing backslash", offset)


class InvalidEscapeError(ShellParseError):
    def __init__(self, char: str, offset: int, reason: str = "") -> None:
        message = f"invalid escape sequence '\\{char}'"
        if reason:
            message += f" ({reason})"
        super().__init__(message, offset)
        self.char = char


class InvalidCodePointError(InvalidEscapeError):
    def __init__(self, codepoint: int, offset: int) -> None:
        super().__init__("u", offset, f"U+{codepoint:04X} is not a unicode scalar value")
        self.codepoint = codepoint


class OctalOverflowError(ShellParseError):
    def __init__(self, sequence: str, value: int, offset: int) -> None:
        super().__init__(f"octal escape '{sequence}' = {value} does not fit in a byte", offset)
        self.sequence = sequence
        self.value = value


# ---------------------------------------------------------------------------
# Escape processing
# ---------------------------------------------------------------------------


def _byte_offset(text: str, index: int) -> int:
    return len(text[:index].encode("utf-8", "surrogatepass"))


def _encode(text: str) -> bytes:
    try:
        return text.encode("utf-8", "surrogateescape")
    except UnicodeEncodeError:
        # Lone surrogates outside the surrogateescape range.
        return text.encode("utf-8", "surrogatepass")


def _push_char(output: bytearray, char: str) -> None:
    code = ord(char)
    if code < 0x80:
        output.append(code)
    else:
        output += _encode(char)


def _push_text(output: bytearray, text: str) -> None:
    if text.isascii():
        output += text.encode("ascii")
    else:
        output += _encode(text)


def _scan(text: str, start: int, digits: str, limit: int) -> int:
    end = start
    while end < len(text) and end - start < limit and text[end] in digits:
        end += 1
    return end


def _read_unicode_escape(text: str, start: int, output: bytearray) -> int:
    # start points at the backslash; text[start + 1] == "u"
    offset = _byte_offset(text, start)
    brace = start + 2
    if brace >= len(text) or text[brace] != "{":
        raise InvalidEscapeError("u", offset, "expected '{' after \\u")
    # One digit past the maximum so an over-long sequence is detected.
    end = _scan(text, brace + 1, _HEX_DIGITS, _MAX_UNICODE_DIGITS + 1)
    digits = text[brace + 1 : end]
    if not digits or len(digits) > _MAX_UNICODE_DIGITS:
        raise InvalidEscapeError("u", offset, "expected 1-6 hex digits in \\u{...}")
    if end >= len(text) or text[end] != "}":
        raise InvalidEscapeError("u", offset, "unterminated \\u{...}")
    codepoint = int(digits, 16)
    if codepoint > 0x10FFFF or 0xD800 <= codepoint <= 0xDFFF:
        raise InvalidCodePointError(codepoint, offset)
    output += chr(codepoint).encode("utf-8")
    return end + 1


def _read_escape(text: str, start: int, output: bytearray) -> int:
    """Resolve the escape whose backslash sits at *start*.

    Appends the resulting bytes to *output* and returns the index just past
    the consumed sequence.
    """

    pos = start + 1
    if pos >= len(text):
        raise UnterminatedEscapeError(_byte_offset(text, start))
    char = text[pos]

    simple = _SIMPLE_ESCAPES.get(char)
    if simple is not None:
        output.append(simple)
        return pos + 1

    if char == "\n":
        # line continuation
        return pos + 1

    if char == "0":
        end = _scan(text, pos + 1, _OCTAL_DIGITS, 3)
        value = int(text[pos + 1 : end], 8) if end > pos + 1 else 0
        if value > 0xFF:
            raise OctalOverflowError(text[start:end], value, _byte_offset(text, start))
        output.append(value)
        return end

    if char == "x":
        end = _scan(text, pos + 1, _HEX_DIGITS, 2)
        if end == pos + 1:
            raise InvalidEscapeError("x", _byte_offset(text, start), "expected 1-2 hex digits")
        output.append(int(text[pos + 1 : end], 16))
        return end

    if char == "u":
        return _read_unicode_escape(text, start, output)

    raise InvalidEscapeError(char, _byte_offset(text, start))


def shell_parse_arg(text: str) -> bytes:
    """Resolve backslash escapes in a single value.

    No quoting or word splitting takes place: quote characters are kept
    literally.  Meant for values typed at a prompt, never for arguments that
    already went through the invoking shell (``sys.argv``).

    >>> shell_parse_arg(r"hello\\nworld")
    b'hello\\nworld'
    >>> shell_parse_arg(r"\\x41\\x42\\x43")
    b'ABC'
    """

    output = bytearray()
    pos = 0
    length = len(text)
    while pos < length:
        char = text[pos]
        if char == "\\":
            pos = _read_escape(text, pos, output)
        else:
            _push_char(output, char)
            pos += 1
    return bytes(output)


# ---------------------------------------------------------------------------
# Line tokenizer
# ---------------------------------------------------------------------------


class ShellLexer:
    """Lazily split a line into words.

    Supported syntax:

    - unquoted words separated by spaces, tabs, CR or LF
    - ``'...'``: everything literal
    - ``"..."``: backslash escapes active
    - backslash escapes outside quotes, ``\\`` + newline as line continuation
    - ``#`` at the start of a word comments out the rest of the line

    The lexer is a one-shot iterator.  After an error it is exhausted.
    """

    def __init__(self, line: str) -> None:
        self._text = line
        self._pos = 0
        self._done = False

    def __iter__(self) -> Iterator[bytes]:
        return self

    def __next__(self) -> bytes:
        if self._done:
            raise StopIteration
        try:
            word = self._next_word()
        except ShellParseError:
            self._done = True
            raise
        if word is None:
            self._done = True
            raise StopIteration
        return word

    def _next_word(self) -> bytes | None:
        text = self._text
        length = len(text)
        pos = self._pos
        word = bytearray()
        in_word = False

        while pos < length:
            char = text[pos]
            if char in _WHITESPACE:
                pos += 1
                if in_word:
                    break
            elif char == "'":
                close = text.find("'", pos + 1)
                if close == -1:
                    raise UnterminatedQuoteError("'", _byte_offset(text, pos))
                _push_text(word, text[pos + 1 : close])
                in_word = True
                pos = close + 1
            elif char == '"':
                pos = self._read_double_quoted(pos, word)
                in_word = True
            elif char == "\\":
                if pos + 1 < length and text[pos + 1] == "\n":
                    pos += 2
                    continue
                pos = _read_escape(text, pos, word)
                in_word = True
            elif char == "#" and not in_word:
                pos = length
            else:
                _push_char(word, char)
                in_word = True
                pos += 1

        self._pos = pos
        return bytes(word) if in_word else None

    def _read_double_quoted(self, start: int, word: bytearray) -> int:
        text = self._text
        pos = start + 1
        while pos < len(text):
            char = text[pos]
            if char == '"':
                return pos + 1
            if char == "\\":
                pos = _read_escape(text, pos, word)
            else:
                _push_char(word, char)
                pos += 1
        raise UnterminatedQuoteError('"', _byte_offset(text, start))


def shell_parse_line(line: str) -> List[bytes]:
    """Split *line* into words; either every word is returned or an error raised.

    >>> shell_parse_line("hello \\"world 'foo'\\" bar")
    [b'hello', b"world 'foo'", b'bar']
    >>> shell_parse_line(r"one\\ two three")
    [b'one two', b'three']
    """

    return list(ShellLexer(line))


def shell_split(line: str) -> List[str]:
    """Like :func:`shell_parse_line` but decode each word with :func:`os.fsdecode`."""

    return [os.fsdecode(word) for word in shell_parse_line(line)]


__all__ = [
    "InvalidCodePointError",
    "InvalidEscapeError",
    "OctalOverflowError",
    "ShellLexer",
    "ShellParseError",
    "UnterminatedEscapeError",
    "UnterminatedQuoteError",
    "shell_parse_arg",
    "shell_parse_line",
    "shell_split",
]
