"""
API Dependencies.

Process-wide singletons (store, tracker) and the per-request services built
on them. Tests swap any of these through ``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends

from app.config import Settings, get_settings
from knowledge_core.governance.controller import GovernanceController
from knowledge_core.governance.query_service import QueryService
from knowledge_core.ingestion.pipeline import IngestionPipeline
from knowledge_core.ingestion.progress import IngestionTracker
from knowledge_core.knowledge.store import GraphKnowledgeStore, KnowledgeStore


@lru_cache
def get_store() -> KnowledgeStore:
    """The knowledge store shared by every request."""
    settings = get_settings()
    return GraphKnowledgeStore(
        persist_path=settings.knowledge_store_path,
        lock_timeout=settings.commit_lock_timeout_seconds,
    )


@lru_cache
def get_tracker() -> IngestionTracker:
    """The ingestion progress registry shared by every request."""
    return IngestionTracker()


def get_pipeline(
    store: KnowledgeStore = Depends(get_store),
    tracker: IngestionTracker = Depends(get_tracker),
    settings: Settings = Depends(get_settings),
) -> IngestionPipeline:
    return IngestionPipeline.from_settings(settings, store, tracker)


def get_controller(store: KnowledgeStore = Depends(get_store)) -> GovernanceController:
    return GovernanceController(store)


def get_query_service(
    store: KnowledgeStore = Depends(get_store),
    tracker: IngestionTracker = Depends(get_tracker),
    settings: Settings = Depends(get_settings),
) -> QueryService:
    return QueryService(
        store,
        tracker,
        default_page_limit=settings.default_page_limit,
        max_page_limit=settings.max_page_limit,
    )
