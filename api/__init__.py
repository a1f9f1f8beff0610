"""HTTP boundary for FocusFlow."""

from api.app import create_app

__all__ = ["create_app"]
