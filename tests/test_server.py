"""Tests for the HTTP worker endpoints."""

import os
import stat

import pytest
from fastapi.testclient import TestClient

from conftest import fake_embedding_service
from kiro_memory import server
from kiro_memory.config import AppConfig, StorageConfig
from kiro_memory.memory import MemoryManager

TOKEN_HEADER = {"X-Worker-Token": "test-token"}


@pytest.fixture
def client(test_config):
    """Test client serving a manager rooted in a temporary directory."""
    manager = MemoryManager(test_config, embedding_service=fake_embedding_service(test_config))
    server.set_manager(manager)
    with TestClient(server.app) as test_client:
        yield test_client
    server.set_manager(None)


def _create(client, title, project="acme", **extra):
    response = client.post("/api/observations", json={"project": project, "title": title, **extra})
    assert response.status_code == 200
    return response.json()["id"]


class TestHealth:
    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert data["timestamp"] > 0
        assert "version" in data


class TestNotify:
    """Notifications from hooks require the shared worker token."""

    def test_missing_token_rejected(self, client):
        response = client.post("/api/notify", json={"event": "observation-created", "data": {}})
        assert response.status_code == 401

    def test_wrong_token_rejected(self, client):
        response = client.post(
            "/api/notify",
            json={"event": "observation-created", "data": {}},
            headers={"X-Worker-Token": "nope"},
        )
        assert response.status_code == 401

    def test_valid_token_accepted(self, client):
        response = client.post(
            "/api/notify",
            json={"event": "summary-created", "data": {"project": "acme"}},
            headers=TOKEN_HEADER,
        )
        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_unknown_event_rejected(self, client):
        response = client.post("/api/notify", json={"event": "nuke"}, headers=TOKEN_HEADER)
        assert response.status_code == 400
        assert response.json()["field"] == "event"


class TestObservations:
    def test_create_and_fetch(self, client):
        obs_id = _create(
            client, "Fixed X", content="details...", type="file-write",
            concepts=["bugfix"], files=["src/x.py"], memorySessionId="mem-1",
        )
        data = client.get(f"/api/observations/{obs_id}").json()
        assert data["title"] == "Fixed X"
        assert data["type"] == "file-write"
        assert data["files_modified"] == "src/x.py"
        assert data["memory_session_id"] == "mem-1"

    def test_missing_observation_is_404(self, client):
        assert client.get("/api/observations/424242").status_code == 404

    def test_invalid_project_is_400(self, client):
        response = client.post("/api/observations", json={"project": "../x", "title": "t"})
        assert response.status_code == 400
        assert response.json()["field"] == "project"

    def test_blank_title_is_400(self, client):
        response = client.post("/api/observations", json={"project": "acme", "title": "  "})
        assert response.status_code == 400

    def test_batch_ignores_unknown_ids(self, client):
        first = _create(client, "one")
        second = _create(client, "two")
        response = client.post("/api/observations/batch", json={"ids": [first, second, 999]})
        assert response.status_code == 200
        assert sorted(o["id"] for o in response.json()["observations"]) == [first, second]

    def test_batch_rejects_bad_ids(self, client):
        assert client.post("/api/observations/batch", json={"ids": []}).status_code == 400
        assert client.post("/api/observations/batch", json={"ids": ["1"]}).status_code == 400
        assert client.post("/api/observations/batch", json={"ids": [0]}).status_code == 400

    def test_listing_sets_total_header(self, client):
        for i in range(3):
            _create(client, f"item {i}")
        response = client.get("/api/observations", params={"limit": 2, "project": "acme"})
        assert len(response.json()) == 2
        assert response.headers["X-Total-Count"] == "3"


class TestSummaries:
    def test_create_summary_with_camel_case_fields(self, client):
        response = client.post(
            "/api/summaries",
            json={"project": "acme", "sessionId": "s-1", "learned": "cache", "nextSteps": "ship"},
        )
        assert response.status_code == 200
        listed = client.get("/api/summaries", params={"project": "acme"}).json()
        assert listed[0]["next_steps"] == "ship"
        assert listed[0]["session_id"] == "s-1"

    def test_oversized_field_is_400(self, client):
        response = client.post("/api/summaries", json={"project": "acme", "notes": "n" * 50_001})
        assert response.status_code == 400
        assert response.json()["field"] == "notes"


class TestSearch:
    def test_query_is_required(self, client):
        assert client.get("/api/search").status_code == 400
        assert client.get("/api/hybrid-search", params={"q": " "}).status_code == 400

    def test_keyword_search_scoped_to_project(self, client):
        obs_id = _create(client, "Fixed websocket reconnect")
        _create(client, "Fixed websocket reconnect", project="globex")
        data = client.get("/api/search", params={"q": "Fixed", "project": "acme"}).json()
        assert [o["id"] for o in data["observations"]] == [obs_id]
        assert data["summaries"] == []

    def test_hybrid_search_shape(self, client):
        obs_id = _create(client, "Refactor tokenizer")
        data = client.get("/api/hybrid-search", params={"q": "tokenizer", "project": "acme"}).json()
        assert data["count"] == len(data["results"]) >= 1
        top = data["results"][0]
        assert top["id"] == obs_id
        assert top["source"] in {"vector", "keyword", "hybrid"}
        assert 0 <= top["score"] <= 1

    def test_invalid_limit_falls_back_to_default(self, client):
        _create(client, "limit check")
        response = client.get("/api/search", params={"q": "limit", "limit": "abc"})
        assert response.status_code == 200


class TestTimelineAndStats:
    def test_timeline_requires_positive_anchor(self, client):
        assert client.get("/api/timeline").status_code == 400
        assert client.get("/api/timeline", params={"anchor": "abc"}).status_code == 400

    def test_timeline_window(self, client):
        ids = [_create(client, f"step {i}") for i in range(3)]
        data = client.get("/api/timeline", params={"anchor": ids[1], "depth_before": 1, "depth_after": 1}).json()
        assert [e["id"] for e in data["timeline"]] == ids

    def test_stats_and_projects(self, client):
        _create(client, "a")
        client.post("/api/summaries", json={"project": "acme", "learned": "x"})
        stats = client.get("/api/stats/acme").json()
        assert stats["observations"] == 1
        assert stats["summaries"] == 1
        assert client.get("/api/projects").json() == ["acme"]

    def test_context_bundle(self, client):
        _create(client, "context item")
        data = client.get("/api/context/acme").json()
        assert data["project"] == "acme"
        assert [o["title"] for o in data["observations"]] == ["context item"]


class TestAliases:
    def test_update_and_list(self, client):
        response = client.put("/api/project-aliases/acme", json={"displayName": "Acme Corp"})
        assert response.json() == {"ok": True, "project_name": "acme", "display_name": "Acme Corp"}
        assert client.get("/api/project-aliases").json() == {"acme": "Acme Corp"}

    def test_display_name_required(self, client):
        response = client.put("/api/project-aliases/acme", json={})
        assert response.status_code == 400


class TestMaintenance:
    def test_embedding_stats_and_backfill(self, client):
        _create(client, "embed me")
        response = client.post("/api/embeddings/backfill", json={"batchSize": 10})
        assert response.json()["success"] is True
        stats = client.get("/api/embeddings/stats").json()
        assert stats["total"] == 1
        assert stats["embedded"] == 1
        assert stats["available"] is True

    def test_consolidate_dry_run(self, client):
        for i in range(3):
            _create(client, "Run build", type="command", files=["build.sh"], content=f"try {i}")
        report = client.post("/api/maintenance/consolidate", json={"dryRun": True}).json()
        assert report["dry_run"] is True
        assert report["merged"] == 1
        assert report["removed"] == 2

    def test_consolidate_rejects_small_groups(self, client):
        response = client.post("/api/maintenance/consolidate", json={"minGroupSize": 1})
        assert response.status_code == 400

    def test_staleness(self, client, temp_dir):
        path = os.path.join(temp_dir, "touched.py")
        with open(path, "w") as handle:
            handle.write("x\n")
        _create(client, "edit", files=["touched.py"])
        report = client.post("/api/maintenance/staleness", json={"baseDir": temp_dir}).json()
        assert report["checked"] == 1


class TestEvents:
    def test_connection_cap(self, client, monkeypatch):
        monkeypatch.setattr(server, "_sse_clients", server.MAX_SSE_CLIENTS)
        assert client.get("/events").status_code == 503

    def test_invalid_project_filter(self, client):
        assert client.get("/events", params={"project": "a|b"}).status_code == 400


class _OpenRequest:
    async def is_disconnected(self):
        return False


@pytest.mark.asyncio
async def test_event_slot_taken_only_while_streaming(manager):
    server.set_manager(manager)
    try:
        before = server._sse_clients
        response = await server.stream_events(_OpenRequest())
        # Client went away before the body was streamed
        assert server._sse_clients == before
        assert manager._listeners == []

        stream = response.body_iterator
        first = await stream.__anext__()
        assert first.startswith("event: connected")
        assert server._sse_clients == before + 1
        assert len(manager._listeners) == 1

        await stream.aclose()
        assert server._sse_clients == before
        assert manager._listeners == []
    finally:
        server.set_manager(None)


def test_worker_token_is_generated_once(temp_dir):
    config = AppConfig(storage=StorageConfig(data_dir=temp_dir))
    token = server._ensure_worker_token(config)

    token_file = os.path.join(temp_dir, "worker.token")
    with open(token_file, encoding="utf-8") as handle:
        assert handle.read() == token
    assert stat.S_IMODE(os.stat(token_file).st_mode) == 0o600
    assert server._ensure_worker_token(config) == token
