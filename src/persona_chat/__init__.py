"""Persona chat service: coach, Socratic tutor and user-defined Gem chats.

The tutor persona embeds ``[SAVE_DATA: {...}]`` records in its replies;
:func:`persona_chat.payload.extract` strips them from the visible text and
the session hands them to the learning-log store.

Typical usage
-------------
from persona_chat import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .payload import Extraction, extract

__all__ = ["create_app", "extract", "Extraction", "__version__", "get_version"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"

def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`persona_chat.server.create_app`; the import is
    deferred so the codec and session modules work without the web stack.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
