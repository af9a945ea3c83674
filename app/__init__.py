"""
Knowledge Governance - FastAPI Application.

Provides REST endpoints for ingestion, staging review and knowledge queries.
The ASGI app lives in ``app.main``.
"""

from app.config import Settings, get_settings

__all__ = [
    "get_settings",
    "Settings",
]
