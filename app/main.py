"""
FastAPI Application Entry Point.

Knowledge Ingestion & Staging Governance API.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import Field

from app.config import get_settings
from app.dependencies import (
    get_controller,
    get_pipeline,
    get_query_service,
    get_tracker,
)
from knowledge_core.governance.controller import GovernanceController
from knowledge_core.governance.query_service import QueryService, QueryValidationError
from knowledge_core.ingestion.pipeline import IngestionPipeline
from knowledge_core.ingestion.progress import IngestionNotFound, IngestionTracker
from knowledge_core.ingestion.schemas import CamelModel
from knowledge_core.knowledge.schemas import (
    AtomKind,
    DaciRoles,
    DecisionMatrix,
    InvalidTransition,
    RelationType,
)
from knowledge_core.knowledge.store import (
    AtomNotFound,
    ClusterNotFound,
    StoreIntegrityError,
    StoreWriteConflict,
)
from knowledge_core.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events."""
    setup_logging(settings.log_level)
    logger.info("Starting Knowledge Governance API...")
    logger.info(f"Extractor: {settings.extractor_backend.value}")
    logger.info(f"Embedding Backend: {settings.embedding_backend.value}")
    logger.info(f"Conflict Judge: {settings.conflict_judge.value}")
    settings.ensure_directories()
    yield
    logger.info("Shutting down Knowledge Governance API...")


app = FastAPI(
    title="Knowledge Governance",
    description="Ingests unstructured text into staged knowledge and governs its promotion",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Error Mapping
# ============================================================================


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(ClusterNotFound)
@app.exception_handler(AtomNotFound)
@app.exception_handler(IngestionNotFound)
async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(QueryValidationError)
@app.exception_handler(InvalidTransition)
@app.exception_handler(StoreIntegrityError)
async def bad_request_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(StoreWriteConflict)
async def conflict_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning(f"Write conflict on {request.url.path}: {exc}")
    return _error(status.HTTP_409_CONFLICT, exc)


# ============================================================================
# Request Models
# ============================================================================


class IngestRequest(CamelModel):
    text: str
    capsule_id: str = Field(..., min_length=1)
    source_name: str | None = None


class RelatedAtomRequest(CamelModel):
    atom_id: UUID
    relation: RelationType = RelationType.RELATED


class AuthorAtomRequest(CamelModel):
    capsule_id: str = Field(..., min_length=1)
    statement: str = Field(..., min_length=1)
    kind: AtomKind
    confidence: int = Field(default=100, ge=0, le=100)
    source_name: str | None = None
    daci: DaciRoles | None = None
    decision_matrix: DecisionMatrix | None = None
    related: list[RelatedAtomRequest] = Field(default_factory=list)


class SupersedeRequest(CamelModel):
    replacement_id: UUID | None = None


# ============================================================================
# Service
# ============================================================================


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "version": "0.1.0"}


@app.get("/config")
async def get_config() -> dict[str, Any]:
    """Get current configuration (non-sensitive values only)."""
    return {
        "llm_backend": settings.llm_backend.value,
        "extractor_backend": settings.extractor_backend.value,
        "embedding_backend": settings.embedding_backend.value,
        "embedding_model": settings.embedding_model,
        "conflict_judge": settings.conflict_judge.value,
        "cluster_similarity_threshold": settings.cluster_similarity_threshold,
        "ollama_model": settings.ollama_model if settings.llm_backend.value == "ollama" else "N/A",
        "persistent": settings.knowledge_store_path is not None,
    }


# ============================================================================
# Ingestion
# ============================================================================


@app.post("/ingest")
async def ingest(
    request: IngestRequest,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> StreamingResponse:
    """
    Ingest unstructured text into the staging layer.

    Streams one JSON progress event per line; the last line carries the
    terminal ``complete`` or ``error`` signal.
    """
    logger.info(f"Received ingestion for capsule '{request.capsule_id}' ({len(request.text)} chars)")

    async def event_stream() -> AsyncIterator[str]:
        try:
            async for event in pipeline.ingest(
                request.text, request.capsule_id, request.source_name
            ):
                yield event.model_dump_json(by_alias=True) + "\n"
        except Exception as e:
            # The failure already reached the client as an error event.
            logger.warning(f"Ingestion of capsule '{request.capsule_id}' ended with error: {e}")

    return StreamingResponse(event_stream(), media_type="application/x-ndjson")


@app.get("/knowledge-sources")
async def list_knowledge_sources(
    queries: QueryService = Depends(get_query_service),
) -> list[dict[str, Any]]:
    """Every ingestion job (knowledge source) and its status."""
    return [s.model_dump(mode="json", by_alias=True) for s in queries.list_knowledge_sources()]


@app.get("/knowledge-sources/{capsule_id}/status")
async def get_ingestion_status(
    capsule_id: str,
    queries: QueryService = Depends(get_query_service),
) -> dict[str, Any]:
    """Per-stage status of the capsule's latest ingestion."""
    return queries.get_ingestion_status(capsule_id).model_dump(mode="json", by_alias=True)


@app.get("/knowledge-sources/{capsule_id}/events")
async def stream_ingestion_events(
    capsule_id: str,
    tracker: IngestionTracker = Depends(get_tracker),
) -> StreamingResponse:
    """Server-sent events for the capsule's running ingestion."""
    events = tracker.subscribe(capsule_id)

    async def event_generator() -> AsyncIterator[str]:
        async for event in events:
            yield f"event: {event.signal.value}\ndata: {event.model_dump_json(by_alias=True)}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


# ============================================================================
# Staging Review
# ============================================================================


@app.get("/staging/clusters")
async def list_clusters(
    knowledge_source_id: str | None = Query(None, alias="knowledgeSourceId"),
    capsule_id: str | None = Query(None, alias="capsuleId"),
    decision: str | None = None,
    queries: QueryService = Depends(get_query_service),
) -> list[dict[str, Any]]:
    """Review clusters with their member atoms."""
    clusters = queries.list_clusters(
        {
            "knowledge_source_id": knowledge_source_id,
            "capsule_id": capsule_id,
            "decision": decision,
        }
    )
    return [cluster.model_dump(mode="json", by_alias=True) for cluster in clusters]


@app.post("/staging/clusters/{cluster_id}/promote")
def promote_cluster(
    cluster_id: UUID,
    controller: GovernanceController = Depends(get_controller),
) -> dict[str, Any]:
    """Promote every atom of a pending cluster to the canonical layer."""
    return controller.promote(cluster_id).model_dump(mode="json", by_alias=True)


@app.post("/staging/clusters/{cluster_id}/reject")
def reject_cluster(
    cluster_id: UUID,
    controller: GovernanceController = Depends(get_controller),
) -> dict[str, Any]:
    """Reject a pending cluster, removing its atoms and their relations."""
    return controller.reject(cluster_id).model_dump(mode="json", by_alias=True)


# ============================================================================
# Knowledge
# ============================================================================


@app.get("/knowledge/items")
async def list_knowledge_items(
    q: str | None = None,
    status_filter: str | None = Query(None, alias="status"),
    layer: str | None = None,
    capsule_id: str | None = Query(None, alias="capsuleId"),
    offset: int = 0,
    limit: int | None = None,
    queries: QueryService = Depends(get_query_service),
) -> dict[str, Any]:
    """Knowledge items with per-status counts."""
    page_request: dict[str, Any] = {"offset": offset}
    if limit is not None:
        page_request["limit"] = limit

    page = queries.list_knowledge_items(
        {"q": q, "status": status_filter, "layer": layer, "capsule_id": capsule_id},
        page_request,
    )
    return page.model_dump(mode="json", by_alias=True)


@app.get("/knowledge/items/{atom_id}/relations")
async def get_relations(
    atom_id: UUID,
    queries: QueryService = Depends(get_query_service),
) -> list[dict[str, Any]]:
    """Outgoing and incoming relations of an atom."""
    return [r.model_dump(mode="json", by_alias=True) for r in queries.get_relations_for(atom_id)]


@app.get("/knowledge/entities")
async def list_entities(
    q: str | None = None,
    queries: QueryService = Depends(get_query_service),
) -> list[dict[str, Any]]:
    """Knowledge-source summaries."""
    return [e.model_dump(mode="json", by_alias=True) for e in queries.list_entities(q)]


@app.post("/knowledge/atoms", status_code=status.HTTP_201_CREATED)
def author_atom(
    request: AuthorAtomRequest,
    controller: GovernanceController = Depends(get_controller),
    queries: QueryService = Depends(get_query_service),
) -> dict[str, Any]:
    """Author an atom directly into the exploratory layer."""
    try:
        atom = controller.author_atom(
            capsule_id=request.capsule_id,
            statement=request.statement,
            kind=request.kind,
            confidence=request.confidence,
            source_name=request.source_name,
            daci_roles=request.daci,
            decision_matrix=request.decision_matrix,
            related_to=[(r.atom_id, r.relation) for r in request.related],
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid atom: {e}") from e
    return queries.get_knowledge_item(atom.id).model_dump(mode="json", by_alias=True)


@app.post("/knowledge/atoms/{atom_id}/supersede")
def supersede_atom(
    atom_id: UUID,
    request: SupersedeRequest | None = None,
    controller: GovernanceController = Depends(get_controller),
    queries: QueryService = Depends(get_query_service),
) -> dict[str, Any]:
    """Mark an atom superseded, optionally by its replacement."""
    replacement_id = request.replacement_id if request else None
    atom = controller.supersede_atom(atom_id, replacement_id)
    return queries.get_knowledge_item(atom.id).model_dump(mode="json", by_alias=True)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
    )
