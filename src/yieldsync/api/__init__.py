"""
HTTP surface for the settlement layer (FastAPI).
"""

from yieldsync.api.app import ERROR_STATUS, create_app, status_for

__all__ = [
    'create_app',
    'status_for',
    'ERROR_STATUS',
]
