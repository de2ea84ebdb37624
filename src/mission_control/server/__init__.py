"""HTTP server for the Mission Control workflow board."""

from .api import create_app

__all__ = ["create_app"]
