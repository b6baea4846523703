"""HTTP Link header parsing (RFC 8288, section 3).

    link-value = "<" URI ">" *( OWS ";" OWS link-param )
    link-param = token [ "=" ( token | quoted-string ) ]

The parser is a single-pass state machine over character classes. It keeps
no state between calls, so it is safe to use from any thread.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

LOGGER = logging.getLogger(__name__)


class LinkHeaderError(ValueError):
    """Raised when a Link header value does not follow the grammar."""


@dataclass(frozen=True)
class Link:
    """One link-value from a Link header."""

    url: str
    rel: str = ""
    type: str = ""
    lang: str = ""
    title: str = ""
    as_: str = ""
    media: str = ""
    sizes: str = ""
    imagesizes: str = ""
    imagesrcset: str = ""
    integrity: str = ""
    referrerpolicy: str = ""
    crossorigin: str = ""
    prefetch: str = ""
    blocking: str = ""


# Lower-cased parameter name -> Link field.
_PARAM_FIELDS = {
    "rel": "rel",
    "type": "type",
    "lang": "lang",
    "hreflang": "lang",
    "title": "title",
    "as": "as_",
    "media": "media",
    "sizes": "sizes",
    "imagesizes": "imagesizes",
    "imagesrcset": "imagesrcset",
    "integrity": "integrity",
    "referrerpolicy": "referrerpolicy",
    "refererpolicy": "referrerpolicy",
    "crossorigin": "crossorigin",
    "prefetch": "prefetch",
    "blocking": "blocking",
}


class _Char(enum.Enum):
    OTHER = enum.auto()
    COMMA = enum.auto()
    SEMICOLON = enum.auto()
    DQUOTE = enum.auto()
    BACKSLASH = enum.auto()
    EQUAL = enum.auto()
    LT = enum.auto()
    GT = enum.auto()
    WORD = enum.auto()
    SPACE = enum.auto()


_PUNCTUATION = {
    ",": _Char.COMMA,
    ";": _Char.SEMICOLON,
    '"': _Char.DQUOTE,
    "\\": _Char.BACKSLASH,
    "=": _Char.EQUAL,
    "<": _Char.LT,
    ">": _Char.GT,
    "-": _Char.WORD,
    "_": _Char.WORD,
}


def _classify(ch: str) -> _Char:
    cls = _PUNCTUATION.get(ch)
    if cls is not None:
        return cls
    if ch.isalpha() or ch.isdigit():
        return _Char.WORD
    if ch.isspace():
        return _Char.SPACE
    return _Char.OTHER


class _State(enum.Enum):
    INITIAL = enum.auto()
    URL = enum.auto()
    WANT_PARAM = enum.auto()
    SEMICOLON = enum.auto()
    PARAM_NAME = enum.auto()
    EQUAL = enum.auto()
    VALUE_UNQUOTED = enum.auto()
    VALUE_QUOTED = enum.auto()
    VALUE_QUOTED_ESCAPE = enum.auto()


class _LinkValueParser:
    """Parses one header occurrence; create a fresh instance per value."""

    def __init__(self, header: str) -> None:
        self._header = header
        self._state = _State.INITIAL
        self._buf: list[str] = []
        self._url: Optional[str] = None
        self._params: dict[str, str] = {}
        self._param_name = ""
        self.links: list[Link] = []

    def _fail(self, expected: str, ch: str) -> LinkHeaderError:
        return LinkHeaderError(
            f"unexpected character in Link header: expected {expected}, got {ch!r} in {self._header!r}"
        )

    def _take(self) -> str:
        text = "".join(self._buf)
        self._buf.clear()
        return text

    def _flush_param_name(self) -> None:
        self._param_name = self._take()

    def _flush_param_value(self) -> None:
        value = self._take()
        field_name = _PARAM_FIELDS.get(self._param_name.lower())
        if field_name is None:
            LOGGER.warning("Ignoring unknown Link header param %r=%r", self._param_name, value)
            return
        self._params[field_name] = value

    def _flush_link(self) -> None:
        self.links.append(Link(url=self._url or "", **self._params))
        self._url = None
        self._params = {}
        self._param_name = ""

    def feed(self, ch: str) -> None:
        cls = _classify(ch)
        state = self._state

        if state is _State.INITIAL:
            if cls in (_Char.SPACE, _Char.COMMA):
                return
            if cls is _Char.LT:
                self._state = _State.URL
                return
            raise self._fail("'<'", ch)

        if state is _State.URL:
            if cls is _Char.GT:
                self._url = self._take()
                self._state = _State.WANT_PARAM
            else:
                self._buf.append(ch)
            return

        if state is _State.WANT_PARAM:
            if cls is _Char.COMMA:
                self._flush_link()
                self._state = _State.INITIAL
            elif cls is _Char.SEMICOLON:
                self._state = _State.SEMICOLON
            elif cls is not _Char.SPACE:
                raise self._fail("';' or ','", ch)
            return

        if state is _State.SEMICOLON:
            if cls is _Char.WORD:
                self._buf.append(ch)
                self._state = _State.PARAM_NAME
            elif cls not in (_Char.SEMICOLON, _Char.SPACE):
                raise self._fail("param name", ch)
            return

        if state is _State.PARAM_NAME:
            if cls is _Char.WORD:
                self._buf.append(ch)
            elif cls is _Char.EQUAL:
                self._flush_param_name()
                self._state = _State.EQUAL
            elif cls is _Char.COMMA:
                self._flush_param_name()
                self._flush_param_value()
                self._flush_link()
                self._state = _State.INITIAL
            elif cls is _Char.SEMICOLON:
                self._flush_param_name()
                self._flush_param_value()
                self._state = _State.SEMICOLON
            else:
                raise self._fail("param name or '='", ch)
            return

        if state is _State.EQUAL:
            if cls is _Char.DQUOTE:
                self._state = _State.VALUE_QUOTED
            elif cls is _Char.WORD:
                self._buf.append(ch)
                self._state = _State.VALUE_UNQUOTED
            else:
                raise self._fail("param value", ch)
            return

        if state is _State.VALUE_UNQUOTED:
            if cls is _Char.WORD:
                self._buf.append(ch)
            elif cls is _Char.COMMA:
                self._flush_param_value()
                self._flush_link()
                self._state = _State.INITIAL
            elif cls is _Char.SEMICOLON:
                self._flush_param_value()
                self._state = _State.SEMICOLON
            elif cls is _Char.SPACE:
                self._flush_param_value()
                self._state = _State.WANT_PARAM
            else:
                raise self._fail("param value", ch)
            return

        if state is _State.VALUE_QUOTED:
            if cls is _Char.DQUOTE:
                self._flush_param_value()
                self._state = _State.WANT_PARAM
            elif cls is _Char.BACKSLASH:
                self._state = _State.VALUE_QUOTED_ESCAPE
            else:
                self._buf.append(ch)
            return

        # VALUE_QUOTED_ESCAPE: take the next character literally.
        self._buf.append(ch)
        self._state = _State.VALUE_QUOTED

    def finish(self) -> list[Link]:
        state = self._state
        if state is _State.PARAM_NAME:
            self._flush_param_name()
            self._flush_param_value()
            self._flush_link()
        elif state is _State.VALUE_UNQUOTED:
            self._flush_param_value()
            self._flush_link()
        elif state in (_State.WANT_PARAM, _State.SEMICOLON):
            self._flush_link()
        elif state is not _State.INITIAL:
            raise LinkHeaderError(f"unexpected end of Link header in {self._header!r}")
        return self.links


def parse_link_header(value: str) -> list[Link]:
    """Parse one Link header occurrence, which may hold several link-values."""

    parser = _LinkValueParser(value)
    for ch in value:
        parser.feed(ch)
    return parser.finish()


def parse_link_headers(values: Iterable[str]) -> list[Link]:
    """Parse every Link header occurrence, concatenating results in header order."""

    links: list[Link] = []
    for value in values:
        links.extend(parse_link_header(value))
    return links


def find_rel(links: Iterable[Link], rel: str) -> Optional[Link]:
    """Return the first link whose ``rel`` contains ``rel``."""

    wanted = rel.lower()
    for link in links:
        if wanted in link.rel.lower().split():
            return link
    return None
