"""
Ephemera HTTP API Server.

Usage:
    # Start server
    uvicorn ephemera.server:app

    # Or programmatically
    from ephemera.server import app, create_app

    app = create_app(core)
"""

from ephemera.server.app import app, create_app

__all__ = ["app", "create_app"]
