"""HTTP API tests against the FastAPI app."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from agent_memory.memory_service import MemoryService
from agent_memory.server import create_app

QUERY = "How do I configure the database?"


@pytest.fixture
def client(config, provider):
    """TestClient whose lifespan initializes and closes the service."""
    app = create_app(service=MemoryService(config=config, embedding_provider=provider))
    with TestClient(app) as c:
        yield c


def _append(client, content, role="user", agent_id="asimov", topic_id="project-setup"):
    response = client.post(
        "/messages",
        json={"agent_id": agent_id, "topic_id": topic_id, "role": role, "content": content},
    )
    assert response.status_code == 201, response.text
    return response.json()


def _create_memory(client, **body):
    response = client.post("/memories", json=body)
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "vectors": 0,
            "pending_index": 0,
            "token_scheme": "estimate",
        }

    def test_service_on_app_state(self, client):
        assert isinstance(client.app.state.memory_service, MemoryService)


class TestAgents:
    def test_register_list_delete(self, client):
        response = client.post(
            "/agents", json={"id": "asimov", "name": "Asimov", "context_limit": 8000}
        )
        assert response.status_code == 201
        assert response.json()["context_limit"] == 8000

        assert [a["id"] for a in client.get("/agents").json()] == ["asimov"]

        response = client.delete("/agents/asimov")
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert client.get("/agents").json() == []

    def test_delete_unknown_agent_is_404(self, client):
        response = client.delete("/agents/nobody")
        assert response.status_code == 404
        assert "error" in response.json()

    def test_topics_listed_after_append(self, client):
        _append(client, "Hello")
        topics = client.get("/agents/asimov/topics").json()
        assert [t["id"] for t in topics] == ["project-setup"]
        assert topics[0]["message_count"] == 1


class TestMemories:
    def test_create_get_list(self, client):
        created = _create_memory(
            client, scope="global", memory_type="fact", content="user timezone is UTC-5"
        )
        assert created["index_status"] == "indexed"
        assert created["retrieval_count"] == 0

        fetched = client.get(f"/memories/{created['id']}").json()
        assert fetched["content"] == "user timezone is UTC-5"

        listed = client.get("/memories", params={"scope": "global"}).json()
        assert [m["id"] for m in listed] == [created["id"]]

    def test_invalid_scope_ids_are_400(self, client):
        response = client.post(
            "/memories",
            json={
                "scope": "global",
                "memory_type": "fact",
                "agent_id": "asimov",
                "content": "global memories carry no agent",
            },
        )
        assert response.status_code == 400
        assert set(response.json()) == {"error"}

    def test_empty_content_is_400(self, client):
        response = client.post(
            "/memories", json={"scope": "global", "memory_type": "fact", "content": "  "}
        )
        assert response.status_code == 400

    def test_unknown_memory_is_404(self, client):
        response = client.get("/memories/does-not-exist")
        assert response.status_code == 404
        assert set(response.json()) == {"error"}

    def test_soft_delete_and_reactivate(self, client):
        created = _create_memory(client, scope="global", memory_type="fact", content="UTC-5")

        assert client.delete(f"/memories/{created['id']}").status_code == 200
        assert client.get(f"/memories/{created['id']}").json()["active"] is False

        response = client.post(f"/memories/{created['id']}/reactivate")
        assert response.status_code == 200
        assert response.json()["active"] is True
        assert response.json()["index_status"] == "indexed"

    def test_hard_delete(self, client):
        created = _create_memory(client, scope="global", memory_type="fact", content="UTC-5")
        response = client.delete(f"/memories/{created['id']}", params={"hard": "true"})
        assert response.status_code == 200
        assert client.get(f"/memories/{created['id']}").status_code == 404

    def test_provider_outage_reports_pending(self, client, provider):
        provider.failing = True
        created = _create_memory(client, scope="global", memory_type="fact", content="UTC-5")
        assert created["index_status"] == "pending"
        assert client.get("/health").json()["pending_index"] == 1


class TestMessages:
    def test_append_and_page(self, client):
        first = _append(client, "Hello")
        second = _append(client, "We are setting up the backend service")
        assert first["offset"] == 0
        assert first["learned_memory_ids"] == []

        body = client.get("/messages/asimov/project-setup").json()
        assert body["count"] == 2

        page = client.get(
            "/messages/asimov/project-setup", params={"from_offset": second["offset"]}
        ).json()
        assert [m["id"] for m in page["messages"]] == [second["message"]["id"]]

        last = client.get("/messages/asimov/project-setup", params={"last": 1}).json()
        assert last["messages"][0]["content"] == "We are setting up the backend service"

    def test_page_walk_with_next_offset(self, client):
        for i in range(5):
            _append(client, f"step {i}")

        contents: list[str] = []
        params = {"limit": 2}
        while True:
            body = client.get("/messages/asimov/project-setup", params=params).json()
            if body["count"] == 0:
                break
            contents.extend(m["content"] for m in body["messages"])
            params = {"limit": 2, "from_offset": body["next_offset"]}

        assert contents == [f"step {i}" for i in range(5)]

        # The final offset is the end of the log: an empty page, not an error
        response = client.get("/messages/asimov/project-setup", params=params)
        assert response.status_code == 200
        assert response.json()["messages"] == []
        assert response.json()["next_offset"] == params["from_offset"]

    def test_offset_inside_record_is_400(self, client):
        _append(client, "Hello")
        _append(client, "Again")
        response = client.get("/messages/asimov/project-setup", params={"from_offset": 3})
        assert response.status_code == 400
        assert "error" in response.json()

    def test_unknown_topic_is_404(self, client):
        response = client.get("/messages/asimov/missing")
        assert response.status_code == 404

    def test_learned_memory_ids(self, client):
        body = _append(client, "Never commit secrets")
        [memory_id] = body["learned_memory_ids"]
        memory = client.get(f"/memories/{memory_id}").json()
        assert memory["memory_type"] == "constraint"
        assert memory["agent_id"] == "asimov"

    def test_search(self, client):
        _append(client, "Hello")
        _append(client, "We use Postgres", role="assistant")
        body = client.get(
            "/messages/asimov/project-setup/search", params={"q": "postgres"}
        ).json()
        assert body["count"] == 1


class TestRetrieve:
    def test_retrieve_within_budget(self, client, provider):
        provider.override(QUERY, [1.0, 0.0])
        provider.override("use v2 API not v1", [0.9, 0.3])
        _append(client, "Hello")
        _create_memory(
            client,
            scope="topic",
            memory_type="correction",
            agent_id="asimov",
            topic_id="project-setup",
            content="use v2 API not v1",
        )

        response = client.post(
            "/retrieve",
            json={
                "query": QUERY,
                "agent_id": "asimov",
                "topic_id": "project-setup",
                "token_budget": 2000,
            },
        )
        assert response.status_code == 200
        body = response.json()
        assert body["degraded"] is False
        assert [m["content"] for m in body["memories"]] == ["use v2 API not v1"]
        assert [m["content"] for m in body["recent_messages"]] == ["Hello"]
        assert body["total_tokens"] <= 2000
        assert body["formatted_context"].startswith("## Relevant Memories\n")

    def test_degraded_when_provider_down(self, client, provider):
        _append(client, "Hello")
        provider.failing = True
        body = client.post(
            "/retrieve",
            json={"query": QUERY, "agent_id": "asimov", "topic_id": "project-setup"},
        ).json()
        assert body["degraded"] is True
        assert body["memories"] == []
        assert [m["content"] for m in body["recent_messages"]] == ["Hello"]

    def test_topic_without_agent_is_400(self, client):
        response = client.post("/retrieve", json={"query": QUERY, "topic_id": "project-setup"})
        assert response.status_code == 400
        assert set(response.json()) == {"error"}

    def test_negative_budget_rejected(self, client):
        response = client.post("/retrieve", json={"query": QUERY, "token_budget": -1})
        assert response.status_code == 422


class TestTokens:
    def test_count(self, client):
        body = client.post("/tokens/count", json={"text": "Hello, world"}).json()
        assert body["scheme"] == "estimate"
        assert body["tokens"] >= 1

    def test_budget_and_usage(self, client):
        client.post("/agents", json={"id": "asimov", "name": "Asimov", "context_limit": 1000})
        _append(client, "Hello")
        _append(client, "Hi there", role="assistant")

        budget = client.get("/tokens/budget/asimov/project-setup").json()
        assert budget["limit"] == 1000
        assert budget["status"] == "ok"
        assert budget["near_limit"] is False

        usage = client.get("/tokens/usage/asimov/project-setup").json()
        assert usage["user"] >= 1
        assert usage["assistant"] >= 1
        assert usage["total"] == usage["user"] + usage["assistant"]

    def test_budget_unknown_topic_is_404(self, client):
        client.post("/agents", json={"id": "asimov", "name": "Asimov"})
        response = client.get("/tokens/budget/asimov/missing")
        assert response.status_code == 404
