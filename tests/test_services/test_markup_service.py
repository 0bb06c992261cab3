"""Tests for note markup <-> HTML conversion."""

from __future__ import annotations

import string

from hypothesis import given, settings
from hypothesis import strategies as st

from notesync.services.markup_service import to_html, to_note_markup


class TestToHtml:
    def test_renames_formatting_tags(self) -> None:
        body = "<bold>strong</bold> and <italic>soft</italic>"
        assert to_html(body) == "<b>strong</b> and <i>soft</i>"

    def test_lists(self) -> None:
        body = "<list><list-item>one</list-item><list-item>two</list-item></list>"
        assert to_html(body) == "<ul><li>one</li><li>two</li></ul>"

    def test_newlines_become_breaks(self) -> None:
        assert to_html("first\nsecond") == "first<br>second"

    def test_unknown_tags_pass_through(self) -> None:
        assert to_html('<link:url href="x">x</link:url>') == '<link:url href="x">x</link:url>'

    def test_entities_are_preserved(self) -> None:
        assert to_html("a &lt; b &amp;&#38; c") == "a &lt; b &amp;&#38; c"


class TestToNoteMarkup:
    def test_renames_html_tags(self) -> None:
        html = "<b>strong</b><i>soft</i><ul><li>one</li></ul>"
        expected = "<bold>strong</bold><italic>soft</italic><list><list-item>one</list-item></list>"
        assert to_note_markup(html) == expected

    def test_breaks_become_newlines(self) -> None:
        assert to_note_markup("first<br>second<br/>third") == "first\nsecond\nthird"

    def test_attributes_are_escaped(self) -> None:
        assert to_note_markup('<span title="a&quot;b">x</span>') == (
            '<span title="a&quot;b">x</span>'
        )


_PLAIN = st.text(alphabet=string.ascii_letters + string.digits + " .,\n", max_size=40)
_TAG = st.sampled_from(["bold", "italic"])


@settings(max_examples=200, deadline=None)
@given(parts=st.lists(st.tuples(_TAG, _PLAIN), max_size=6), tail=_PLAIN)
def test_html_round_trip_preserves_note_body(parts: list[tuple[str, str]], tail: str) -> None:
    body = "".join(f"<{tag}>{text}</{tag}>" for tag, text in parts) + tail
    assert to_note_markup(to_html(body)) == body
