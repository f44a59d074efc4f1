"""HTTP API for flows: health, flow listing and state, update triggers."""

from .app import create_app

__all__ = ["create_app"]
