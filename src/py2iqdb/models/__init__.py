"""
Data models for py2iqdb.

This package contains configuration structures used by the gateway.
"""

from .config import GatewayConfig

__all__ = ['GatewayConfig']
