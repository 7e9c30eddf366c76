"""Chat relay package: streams turns between clients and a remote inference service.

The package exposes a FastAPI application factory named ``create_app``
defined in ``chat_relay/server.py`` (see :func:`create_app`).

Typical usage
-------------
from chat_relay import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = ["create_app", "__version__", "get_version"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


# ---------------------------------------------------------------------
# App factory export
# ---------------------------------------------------------------------
def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`chat_relay.server.create_app`; the import is
    deferred so the pure streaming modules can be used without FastAPI.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
