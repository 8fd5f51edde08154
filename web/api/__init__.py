"""
API router package.

Aggregates all API routers behind one import point.
"""

from web.api.system import router as system_router
from web.api.oauth import router as oauth_router
from web.api.documents import router as documents_router

__all__ = [
    "system_router",
    "oauth_router",
    "documents_router"
]
