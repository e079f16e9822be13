"""HTTP gateway for py2iqdb."""

from .app import create_app

__all__ = ['create_app']
