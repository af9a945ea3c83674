"""
Test suite for the Knowledge Governance pipeline.

Test modules:
- test_schemas: Atom, relation and cluster models and their transition tables
- test_store: Graph-backed knowledge store, atomic commits and persistence
- test_extractor: Rule-based and LLM extractors
- test_embedder: Hashing embedder, timeouts and retries
- test_clusterer: Similarity clustering
- test_correlator: Conflict and duplicate detection against canonical knowledge
- test_pipeline: End-to-end ingestion and progress reporting
- test_governance: Promotion, rejection and direct authoring
- test_query_service: Read projections, filters and pagination
- test_api: FastAPI endpoints
- test_llm_factory: Settings and backend factories
- test_logger: Context-bound log fields
"""
