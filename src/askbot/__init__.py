"""AskBot relay: chat requests forwarded to Gemini or DeepSeek with short-lived memory.

This package provides a FastAPI application factory named ``create_app``
inside ``askbot/server.py`` (see :func:`create_app`).

Typical usage
-------------
from askbot import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 0.0.0.0 --port 10000
"""

from __future__ import annotations

from .errors import ConfigurationError, InvalidInput, RelayError, UpstreamError
from .history import ConversationStore, Turn
from .router import ProviderRouter
from .server import create_app

__all__ = [
    "create_app",
    "ConversationStore",
    "Turn",
    "ProviderRouter",
    "RelayError",
    "InvalidInput",
    "ConfigurationError",
    "UpstreamError",
    "__version__",
    "get_version",
]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "1.0.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
