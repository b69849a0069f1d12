"""Tokenizer and recursive-descent builder for legacy ``key=value`` dumps.

Older history stores multimodal content as the string form of a Java map,
for example::

    [{type=text, text=What is this?}, {type=image_url,
      file_url={url=data:image/png;base64,iVBORw0KGgo=, detail=auto}}]

Values are unquoted, so a value runs until the next structural delimiter.
``data:`` URIs are read as a single token because their comma and ``=``
padding would otherwise be mistaken for structure.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re
from typing import Any


class LegacyDumpError(ValueError):
    """Raised when a dump cannot be turned into records."""


class TokenKind(str, Enum):
    LBRACE = "{"
    RBRACE = "}"
    LBRACKET = "["
    RBRACKET = "]"
    COMMA = ","
    KEY = "key"
    DATA_URI = "data_uri"
    VALUE = "value"
    EOF = "eof"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str = ""
    pos: int = 0


_KEY = re.compile(r"([A-Za-z_][\w.-]*)\s*=")
# A value ends at a closing bracket or at a comma that starts the next key.
_VALUE_END = re.compile(r"[}\]]|,\s*(?=[A-Za-z_][\w.-]*\s*=)|,\s*(?=[{\[])")
_DATA_URI = re.compile(r"data:[^,\s{}\[\]]*,[^\s,{}\[\]]*")
_PUNCT = {
    "{": TokenKind.LBRACE,
    "}": TokenKind.RBRACE,
    "[": TokenKind.LBRACKET,
    "]": TokenKind.RBRACKET,
    ",": TokenKind.COMMA,
}


def tokenize(text: str) -> list[Token]:
    """Split a dump into tokens. Never raises."""
    tokens: list[Token] = []
    pos = 0
    length = len(text)
    expect_value = False

    while pos < length:
        char = text[pos]
        if char.isspace():
            pos += 1
            continue

        if expect_value:
            expect_value = False
            if char in "{[":
                tokens.append(Token(_PUNCT[char], char, pos))
                pos += 1
                continue
            data_match = _DATA_URI.match(text, pos)
            if data_match:
                tokens.append(Token(TokenKind.DATA_URI, data_match.group(0), pos))
                pos = data_match.end()
                continue
            end_match = _VALUE_END.search(text, pos)
            end = end_match.start() if end_match else length
            tokens.append(Token(TokenKind.VALUE, text[pos:end].strip(), pos))
            pos = end
            continue

        if char in _PUNCT:
            tokens.append(Token(_PUNCT[char], char, pos))
            pos += 1
            continue

        key_match = _KEY.match(text, pos)
        if key_match:
            tokens.append(Token(TokenKind.KEY, key_match.group(1), pos))
            pos = key_match.end()
            expect_value = True
            continue

        # Bare list element such as ``[a, b]``.
        end = pos
        while end < length and text[end] not in ",}]":
            end += 1
        tokens.append(Token(TokenKind.VALUE, text[pos:end].strip(), pos))
        pos = end

    if expect_value:
        tokens.append(Token(TokenKind.VALUE, "", length))
    tokens.append(Token(TokenKind.EOF, "", length))
    return tokens


def _scalar(raw: str) -> Any:
    if raw == "null":
        return None
    if raw in ("true", "false"):
        return raw == "true"
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
        return raw[1:-1]
    return raw


class _Builder:
    """Recursive-descent builder over the token list.

    Objects are returned as lists of records: a flat dump that repeats ``type=``
    without braces between items is split into one record per ``type``.
    Unterminated containers at end of input are closed implicitly.
    """

    def __init__(self, tokens: list[Token]) -> None:
        self._tokens = tokens
        self._index = 0

    def _peek(self) -> Token:
        return self._tokens[self._index]

    def _advance(self) -> Token:
        token = self._tokens[self._index]
        if token.kind is not TokenKind.EOF:
            self._index += 1
        return token

    def build(self) -> list[Any]:
        token = self._peek()
        if token.kind is TokenKind.LBRACKET:
            result = self._list()
        elif token.kind is TokenKind.LBRACE:
            self._advance()
            result = self._records(TokenKind.RBRACE)
        elif token.kind is TokenKind.KEY:
            result = self._records(TokenKind.EOF)
        else:
            raise LegacyDumpError(f"Unexpected {token.kind.value!r} at {token.pos}.")
        if self._peek().kind is not TokenKind.EOF:
            raise LegacyDumpError(f"Trailing content at {self._peek().pos}.")
        return result

    def _value(self) -> Any:
        token = self._advance()
        if token.kind is TokenKind.LBRACKET:
            self._index -= 1
            return self._list()
        if token.kind is TokenKind.LBRACE:
            records = self._records(TokenKind.RBRACE)
            merged: dict[str, Any] = {}
            for record in records:
                merged.update(record)
            return merged
        if token.kind is TokenKind.DATA_URI:
            return token.text
        if token.kind is TokenKind.VALUE:
            return _scalar(token.text)
        raise LegacyDumpError(f"Expected a value at {token.pos}, got {token.kind.value!r}.")

    def _list(self) -> list[Any]:
        self._advance()  # [
        items: list[Any] = []
        while True:
            token = self._peek()
            if token.kind in (TokenKind.RBRACKET, TokenKind.EOF):
                self._advance()
                return items
            if token.kind is TokenKind.COMMA:
                self._advance()
                continue
            if token.kind is TokenKind.LBRACE:
                self._advance()
                items.extend(self._records(TokenKind.RBRACE))
                continue
            if token.kind is TokenKind.KEY:
                items.extend(self._records(TokenKind.RBRACKET, consume_end=False))
                continue
            items.append(self._value())

    def _records(self, end: TokenKind, consume_end: bool = True) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        current: dict[str, Any] = {}
        while True:
            token = self._peek()
            if token.kind is end or token.kind is TokenKind.EOF:
                if consume_end:
                    self._advance()
                break
            if token.kind is TokenKind.COMMA:
                self._advance()
                continue
            if token.kind is not TokenKind.KEY:
                raise LegacyDumpError(
                    f"Expected a key at {token.pos}, got {token.kind.value!r}."
                )
            self._advance()
            if token.text in current:
                records.append(current)
                current = {}
            current[token.text] = self._value()
        if current:
            records.append(current)
        return records


def parse_legacy_dump(text: str) -> list[Any]:
    """Parse a legacy dump into a list of plain records (dicts) and scalars.

    Raises LegacyDumpError when the token stream is not structurally valid.
    """
    stripped = text.strip()
    if not stripped:
        raise LegacyDumpError("Empty dump.")
    return _Builder(tokenize(stripped)).build()
