"""EcoPulse HTTP server.

Serves the trust engine over a JSON REST API.

Usage:
    # Start the server
    ecopulse serve

    # Or with uvicorn directly
    uvicorn --factory ecopulse.server.app:create_app --port 8430

    # Schema and maintenance
    ecopulse migrate up
    ecopulse close-disputes
"""

from .config import ServerSettings, get_settings

__all__ = [
    "ServerSettings",
    "get_settings",
]
