# ============================================================================
# src/py2iqdb/services/__init__.py
"""
Services for py2iqdb.

This package contains service classes that sit between the HTTP gateway
and the protocol client.
"""

from .query_service import IqdbQueryService

__all__ = [
    'IqdbQueryService'
]
