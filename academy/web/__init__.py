"""Web front-end for the Academy Console."""

from .server import create_app, get_max_upload_bytes

__all__ = ["create_app", "get_max_upload_bytes"]
