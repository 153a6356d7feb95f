"""
Session module - what happened in an agent session, and how to replay it.

Includes:
- SessionRecorder: ordered capture of session updates
- compress_session: bounded textual digest of a capture
- sessions_to_context_xml: context block for a later prompt
- SessionStore: captured sessions on disk
"""

from .compression import CompressionConfig, compress_session, compress_sessions
from .context import escape_xml, sessions_to_context_xml
from .models import CompressedSession, SessionContent
from .recorder import SessionRecorder
from .storage import SessionStore, load_content_file, read_events, write_events

__all__ = [
    "CompressedSession",
    "CompressionConfig",
    "SessionContent",
    "SessionRecorder",
    "SessionStore",
    "compress_session",
    "compress_sessions",
    "escape_xml",
    "load_content_file",
    "read_events",
    "sessions_to_context_xml",
    "write_events",
]
