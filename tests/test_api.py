"""
Tests for FastAPI Endpoints.

Uses FastAPI TestClient for real HTTP requests against the real pipeline
and store; only the process-wide singletons are swapped for per-test ones.
"""

import json
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.config import Settings, get_settings
from app.dependencies import get_pipeline, get_store, get_tracker
from knowledge_core.ingestion.pipeline import IngestionPipeline
from knowledge_core.ingestion.progress import IngestionTracker
from knowledge_core.knowledge.store import GraphKnowledgeStore
from tests.conftest import SCENARIO_TEXT, seed_canonical, stage_batch

# ============================================================================
# Client Fixture
# ============================================================================


@pytest.fixture
def client(
    store: GraphKnowledgeStore,
    tracker: IngestionTracker,
    pipeline: IngestionPipeline,
):
    """TestClient wired to a fresh store, tracker and offline pipeline."""
    from app.main import app

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_tracker] = lambda: tracker
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def ingest(client: TestClient, text: str, capsule_id: str = "cap-1", **extra) -> list[dict]:
    response = client.post("/ingest", json={"text": text, "capsuleId": capsule_id, **extra})
    assert response.status_code == 200
    return [json.loads(line) for line in response.text.splitlines() if line]


# ============================================================================
# Health & Config Endpoints
# ============================================================================


class TestHealthEndpoints:
    """Tests for health and config endpoints."""

    def test_health_check(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_config_endpoint(self, client: TestClient) -> None:
        """Only non-sensitive settings are exposed."""
        data = client.get("/config").json()

        assert data["extractor_backend"] in ("rules", "llm")
        assert "cluster_similarity_threshold" in data
        assert isinstance(data["persistent"], bool)
        assert not any("key" in name for name in data)


# ============================================================================
# Ingestion Endpoints
# ============================================================================


class TestIngestEndpoint:
    """Tests for /ingest and knowledge-source progress."""

    def test_ingest_streams_progress(self, client: TestClient) -> None:
        """Events arrive as camelCase JSON lines ending with the terminal signal."""
        events = ingest(client, SCENARIO_TEXT, sourceName="design-notes.md")

        assert events[0]["stage"] == "extraction"
        assert events[0]["state"] == "pending"
        assert {e["stage"] for e in events if e["stage"]} == {
            "extraction",
            "embedding",
            "clustering",
            "conflictChecks",
        }
        final = events[-1]
        assert final["signal"] == "complete"
        assert final["capsuleId"] == "cap-1"
        assert final["atomCount"] == 2
        assert len(final["clusterIds"]) == 1

    def test_ingest_empty_text(self, client: TestClient, store: GraphKnowledgeStore) -> None:
        """Failures are reported in-stream; nothing is committed."""
        events = ingest(client, "   ")

        assert events[-1]["signal"] == "error"
        assert events[-2] == {**events[-2], "stage": "extraction", "state": "error"}
        assert store.node_count() == 0

    def test_ingest_requires_capsule(self, client: TestClient) -> None:
        response = client.post("/ingest", json={"text": SCENARIO_TEXT})

        assert response.status_code == 422

    def test_status(self, client: TestClient) -> None:
        ingest(client, SCENARIO_TEXT)

        data = client.get("/knowledge-sources/cap-1/status").json()

        assert data["state"] == "complete"
        assert data["stages"]["conflictChecks"]["state"] == "done"
        assert data["atomCount"] == 2

    def test_status_unknown_capsule(self, client: TestClient) -> None:
        response = client.get("/knowledge-sources/cap-missing/status")

        assert response.status_code == 404

    def test_list_sources(self, client: TestClient) -> None:
        ingest(client, SCENARIO_TEXT, sourceName="design-notes.md")

        sources = client.get("/knowledge-sources").json()

        assert [s["sourceName"] for s in sources] == ["design-notes.md"]

    def test_events_replay_terminal(self, client: TestClient) -> None:
        """Subscribing after completion replays only the terminal event."""
        ingest(client, SCENARIO_TEXT)

        response = client.get("/knowledge-sources/cap-1/events")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.startswith("event: complete\ndata: ")
        payload = json.loads(response.text.split("data: ", 1)[1])
        assert payload["signal"] == "complete"

    def test_events_unknown_capsule(self, client: TestClient) -> None:
        assert client.get("/knowledge-sources/cap-missing/events").status_code == 404


# ============================================================================
# Staging Review Endpoints
# ============================================================================


class TestStagingEndpoints:
    """Tests for cluster listing, promotion and rejection."""

    def test_list_by_knowledge_source(self, client: TestClient) -> None:
        final = ingest(client, SCENARIO_TEXT)[-1]

        clusters = client.get(
            "/staging/clusters", params={"knowledgeSourceId": final["sourceDocumentId"]}
        ).json()

        assert [c["id"] for c in clusters] == final["clusterIds"]
        cluster = clusters[0]
        assert cluster["promoted"] is False
        assert cluster["rejected"] is False
        assert cluster["summary"] == "Contains 1 decision and 1 risk."
        assert {item["type"] for item in cluster["items"]} == {"decision", "risk"}

    def test_promote_and_replay(self, client: TestClient) -> None:
        cluster_id = ingest(client, SCENARIO_TEXT)[-1]["clusterIds"][0]

        first = client.post(f"/staging/clusters/{cluster_id}/promote")
        second = client.post(f"/staging/clusters/{cluster_id}/promote")

        assert first.status_code == 200
        assert first.json() == {"clusterId": cluster_id, "decision": "promoted", "replayed": False}
        assert second.json()["replayed"] is True

        staged = client.get("/knowledge/items", params={"status": "staging", "capsuleId": "cap-1"})
        assert staged.json()["total"] == 0

    def test_reject(self, client: TestClient, store: GraphKnowledgeStore) -> None:
        cluster_id = ingest(client, SCENARIO_TEXT)[-1]["clusterIds"][0]

        response = client.post(f"/staging/clusters/{cluster_id}/reject")

        assert response.json()["decision"] == "rejected"
        assert store.node_count() == 0
        assert store.edge_count() == 0

    def test_unknown_cluster(self, client: TestClient) -> None:
        assert client.post(f"/staging/clusters/{uuid4()}/promote").status_code == 404

    def test_malformed_cluster_id(self, client: TestClient) -> None:
        assert client.post("/staging/clusters/not-a-uuid/reject").status_code == 422

    def test_invalid_decision_filter(self, client: TestClient) -> None:
        assert client.get("/staging/clusters", params={"decision": "maybe"}).status_code == 400


# ============================================================================
# Knowledge Endpoints
# ============================================================================


class TestKnowledgeEndpoints:
    """Tests for knowledge items, relations, entities and authoring."""

    def test_items_camel_case(self, client: TestClient) -> None:
        ingest(client, SCENARIO_TEXT, sourceName="design-notes.md")

        data = client.get("/knowledge/items", params={"q": "postgresql"}).json()

        assert data["total"] == 1
        assert data["counts"]["staging"] == 1
        item = data["items"][0]
        assert item["type"] == "decision"
        assert item["sourceName"] == "design-notes.md"
        assert item["status"] == "staging"
        assert "relatedItems" in item
        assert "dateDiscovered" in item

    def test_items_bad_status(self, client: TestClient) -> None:
        assert client.get("/knowledge/items", params={"status": "archived"}).status_code == 400

    def test_items_bad_limit(self, client: TestClient) -> None:
        assert client.get("/knowledge/items", params={"limit": 0}).status_code == 400

    def test_relations(self, client: TestClient, store: GraphKnowledgeStore) -> None:
        atoms, _ = stage_batch(store, ["A.", "B."], relations=[(1, 0, "related")])

        relations = client.get(f"/knowledge/items/{atoms[0].id}/relations").json()

        assert [(r["direction"], r["type"]) for r in relations] == [("incoming", "related")]
        assert relations[0]["fromId"] == str(atoms[1].id)

    def test_relations_unknown_atom(self, client: TestClient) -> None:
        assert client.get(f"/knowledge/items/{uuid4()}/relations").status_code == 404

    def test_entities(self, client: TestClient) -> None:
        ingest(client, SCENARIO_TEXT, sourceName="design-notes.md")

        entities = client.get("/knowledge/entities", params={"q": "design"}).json()

        assert [e["name"] for e in entities] == ["design-notes.md"]
        assert entities[0]["atomCount"] == 2

    def test_author_atom(self, client: TestClient, store: GraphKnowledgeStore) -> None:
        [trusted] = seed_canonical(store, ["PostgreSQL is the primary database."])

        response = client.post(
            "/knowledge/atoms",
            json={
                "capsuleId": "cap-1",
                "statement": "Replica lag stays below one second.",
                "kind": "fact",
                "related": [{"atomId": str(trusted.id), "relation": "supports"}],
            },
        )

        assert response.status_code == 201
        atom = response.json()
        assert atom["layer"] == "exploratory"
        assert atom["status"] == "exploratory"
        assert atom["capsuleId"] == "cap-1"
        assert atom["relatedItems"][0]["relation"] == "supports"
        relations = client.get(f"/knowledge/items/{atom['id']}/relations").json()
        assert relations[0]["toId"] == str(trusted.id)

    def test_author_roles_on_fact(self, client: TestClient) -> None:
        response = client.post(
            "/knowledge/atoms",
            json={
                "capsuleId": "cap-1",
                "statement": "Tenants are isolated.",
                "kind": "fact",
                "daci": {"driver": ["alice"]},
            },
        )

        assert response.status_code == 400

    def test_supersede(self, client: TestClient, store: GraphKnowledgeStore) -> None:
        old, new = seed_canonical(store, ["Deploys happen weekly.", "Deploys happen daily."])

        response = client.post(
            f"/knowledge/atoms/{old.id}/supersede", json={"replacementId": str(new.id)}
        )

        assert response.status_code == 200
        item = response.json()
        assert item["status"] == "superseded"
        assert item["supersededBy"] == str(new.id)
        assert "superseded_by" not in item

    def test_supersede_staging(self, client: TestClient, store: GraphKnowledgeStore) -> None:
        atoms, _ = stage_batch(store, ["Still under review."])

        response = client.post(f"/knowledge/atoms/{atoms[0].id}/supersede")

        assert response.status_code == 400


# ============================================================================
# Default Configuration
# ============================================================================


class TestDefaultPipeline:
    """The shipped settings (rules extractor, hashing embedder) wired by the app."""

    @pytest.fixture
    def default_client(self, store: GraphKnowledgeStore, tracker: IngestionTracker):
        from app.main import app

        app.dependency_overrides[get_store] = lambda: store
        app.dependency_overrides[get_tracker] = lambda: tracker
        app.dependency_overrides[get_settings] = lambda: Settings(_env_file=None)
        with TestClient(app) as test_client:
            yield test_client
        app.dependency_overrides.clear()

    def test_scenario_is_one_cluster(self, default_client: TestClient) -> None:
        events = ingest(default_client, SCENARIO_TEXT)

        final = events[-1]
        assert final["signal"] == "complete"
        assert final["atomCount"] == 2
        assert len(final["clusterIds"]) == 1

        [cluster] = default_client.get("/staging/clusters").json()
        assert cluster["title"] == "We decided to use PostgreSQL"
        assert {item["type"] for item in cluster["items"]} == {"decision", "risk"}
