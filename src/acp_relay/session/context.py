"""
Render compressed sessions as an XML-like context block for a prompt.
"""

from typing import Mapping, Sequence

from .models import CompressedSession

_XML_ESCAPES = (
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
)


def escape_xml(text: str) -> str:
    """Escape text for use inside a double-quoted XML attribute."""
    for char, entity in _XML_ESCAPES:
        text = text.replace(char, entity)
    return text


def session_block(session: CompressedSession, title: str | None = None) -> str:
    """Render one session; the summary is enclosed verbatim."""
    title = title if title is not None else session.title
    attributes = f' id="{escape_xml(session.session_id)}"'
    if title:
        attributes += f' title="{escape_xml(title)}"'
    return f"<session{attributes}>\n{session.summary}\n</session>\n"


def sessions_to_context_xml(
    sessions: Sequence[CompressedSession],
    titles: Mapping[str, str] | None = None,
) -> str:
    """Render sessions back to back, one blank line between blocks.

    ``titles`` maps session id to a title and takes precedence over the
    session's own title. No sessions renders as the empty string.
    """
    titles = titles or {}
    return "\n".join(
        session_block(session, titles.get(session.session_id)) for session in sessions
    )
