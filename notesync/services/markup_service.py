"""Conversion between stored note markup and HTML for web clients.

Note bodies use their own tag vocabulary (``<bold>``, ``<italic>``,
``<list>``, ``<list-item>``) and plain newlines. The sync engine never looks
inside bodies; only the API converts on the way in and out.
"""

from __future__ import annotations

import html
from html.parser import HTMLParser

_NOTE_TO_HTML: dict[str, str] = {
    "bold": "b",
    "italic": "i",
    "list": "ul",
    "list-item": "li",
}
_HTML_TO_NOTE: dict[str, str] = {value: key for key, value in _NOTE_TO_HTML.items()}


class _TagRenamer(HTMLParser):
    """Re-emit markup with tag names mapped; text and entities pass through untouched."""

    def __init__(self, mapping: dict[str, str], *, br_as_newline: bool) -> None:
        super().__init__(convert_charrefs=False)
        self._mapping = mapping
        self._br_as_newline = br_as_newline
        self._out: list[str] = []

    def _start(self, tag: str, attrs: list[tuple[str, str | None]], closing: str) -> str:
        name = self._mapping.get(tag, tag)
        parts = [name]
        for key, value in attrs:
            if value is None:
                parts.append(key)
            else:
                parts.append(f'{key}="{html.escape(value, quote=True)}"')
        return f"<{' '.join(parts)}{closing}>"

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag == "br" and self._br_as_newline:
            self._out.append("\n")
            return
        self._out.append(self._start(tag, attrs, ""))

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag == "br" and self._br_as_newline:
            self._out.append("\n")
            return
        self._out.append(self._start(tag, attrs, "/"))

    def handle_endtag(self, tag: str) -> None:
        if tag == "br" and self._br_as_newline:
            return
        self._out.append(f"</{self._mapping.get(tag, tag)}>")

    def handle_data(self, data: str) -> None:
        self._out.append(data)

    def handle_entityref(self, name: str) -> None:
        self._out.append(f"&{name};")

    def handle_charref(self, name: str) -> None:
        self._out.append(f"&#{name};")

    def handle_comment(self, data: str) -> None:
        self._out.append(f"<!--{data}-->")

    def render(self, markup: str) -> str:
        self.feed(markup)
        self.close()
        return "".join(self._out)


def to_html(note_body: str) -> str:
    """Convert a stored note body to HTML."""
    return _TagRenamer(_NOTE_TO_HTML, br_as_newline=False).render(note_body.replace("\n", "<br>"))


def to_note_markup(html_body: str) -> str:
    """Convert HTML from a web client back to stored note markup."""
    return _TagRenamer(_HTML_TO_NOTE, br_as_newline=True).render(html_body)
