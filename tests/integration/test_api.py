"""Integration tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from docstore.core.errors import BackendError
from docstore.interface.api import create_app
from docstore.storage.analytical import AnalyticalAdapter
from docstore.storage.executors import SQLiteExecutor


@pytest.fixture
def relational_client(relational_store) -> TestClient:
    return TestClient(create_app(relational_store))


@pytest.fixture
def acme_adapter(temp_data_dir) -> AnalyticalAdapter:
    executor = SQLiteExecutor(db_path=temp_data_dir / "acme.sqlite")
    with AnalyticalAdapter(executor=executor, namespace="acme") as adapter:
        yield adapter


@pytest.fixture
def analytical_client(acme_adapter) -> TestClient:
    return TestClient(create_app(acme_adapter))


class TestDocumentRoutes:
    """Tests for the document endpoints."""

    def test_put_then_get(self, relational_client):
        response = relational_client.put("/posts/hello", json={
            "type": "Post",
            "data": {"title": "Hello"},
            "content": "# Hello",
        })
        assert response.status_code == 201
        assert response.json()["created"] is True

        response = relational_client.get("/posts/hello")
        assert response.status_code == 200
        body = response.json()
        assert body["id"] == "posts/hello"
        assert body["data"] == {"title": "Hello"}
        assert "createdAt" in body

    def test_replace_returns_200(self, relational_client):
        relational_client.put("/a", json={"content": "one"})
        response = relational_client.put("/a", json={"content": "two"})

        assert response.status_code == 200
        assert response.json()["version"] == 2

    def test_missing_content_is_400(self, relational_client):
        response = relational_client.put("/a", json={"data": {"x": 1}})
        assert response.status_code == 400

    def test_conflicts_are_409(self, relational_client):
        relational_client.put("/a", json={"content": "one"})

        assert relational_client.put("/a", json={"content": "x", "createOnly": True}).status_code == 409
        assert relational_client.put("/b", json={"content": "x", "updateOnly": True}).status_code == 409
        assert relational_client.put("/a", json={"content": "x", "version": 7}).status_code == 409

    def test_missing_document_is_404(self, relational_client):
        assert relational_client.get("/nope").status_code == 404

    def test_delete(self, relational_client):
        relational_client.put("/a", json={"content": "one"})

        response = relational_client.delete("/a", params={"soft": "true"})
        assert response.json() == {"id": "a", "deleted": True}
        assert relational_client.get("/a").status_code == 404
        assert relational_client.delete("/a").json()["deleted"] is False

    def test_list_and_search(self, relational_client):
        relational_client.put("/posts/a", json={"type": "Post", "data": {"rank": 2}, "content": "python"})
        relational_client.put("/posts/b", json={"type": "Post", "data": {"rank": 1}, "content": "rust"})
        relational_client.put("/pages/c", json={"type": "Page", "data": {"title": "Python"}, "content": ""})

        body = relational_client.get("/", params={"type": "Post", "sortBy": "rank"}).json()
        assert [d["id"] for d in body["documents"]] == ["posts/b", "posts/a"]
        assert body["hasMore"] is False

        body = relational_client.get("/", params={"where": '{"rank": 2}'}).json()
        assert [d["id"] for d in body["documents"]] == ["posts/a"]

        body = relational_client.get("/search", params={"q": "python"}).json()
        assert [d["id"] for d in body["documents"]] == ["pages/c", "posts/a"]
        assert body["documents"][0]["score"] == 3

    def test_bad_where_is_400(self, relational_client):
        assert relational_client.get("/", params={"where": "{not json"}).status_code == 400

    def test_action_routes_need_analytical_backend(self, relational_client):
        response = relational_client.post("/publish", json={"ns": "acme", "documents": [{"id": "a"}]})
        assert response.status_code == 400


class TestPublishFlow:
    """End-to-end: publish → process → inspect the Action → list."""

    def test_publish_process_list(self, analytical_client):
        response = analytical_client.post("/publish", json={
            "ns": "acme",
            "documents": [
                {"id": "a", "data": {}, "content": "# A"},
                {"id": "b", "data": {}, "content": "# B"},
            ],
        })
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        action_id = body["actionId"]

        pending = analytical_client.get("/actions", params={"ns": "acme"}).json()["actions"]
        assert [a["id"] for a in pending] == [action_id]

        processed = analytical_client.post("/process").json()
        assert processed["succeeded"] == 1
        assert processed["things"] == 2

        action = analytical_client.get(f"/actions/{action_id}").json()
        assert action["status"] == "completed"
        assert action["result"]["things"] == 2
        assert action["progress"] == action["total"] == 2

        listed = analytical_client.get("/").json()
        assert sorted(d["id"] for d in listed["documents"]) == ["a", "b"]
        assert analytical_client.get("/a").json()["content"] == "# A"

    def test_publish_without_documents_is_400(self, analytical_client):
        response = analytical_client.post("/publish", json={"ns": "acme", "documents": []})
        assert response.status_code == 400

    def test_unknown_action_is_404(self, analytical_client):
        assert analytical_client.get("/actions/missing").status_code == 404

    def test_actions_status_filter(self, analytical_client):
        analytical_client.post("/publish", json={"ns": "acme", "documents": [{"id": "a"}]})
        analytical_client.post("/process")

        assert analytical_client.get("/actions").json()["actions"] == []
        completed = analytical_client.get("/actions", params={"status": "completed"}).json()["actions"]
        assert len(completed) == 1
        assert analytical_client.get("/actions", params={"status": "bogus"}).status_code == 400


class TestNamespaces:
    """Documents published to another namespace stay readable."""

    @pytest.fixture
    def client(self, analytical_store) -> TestClient:
        return TestClient(create_app(analytical_store))

    def test_publish_to_other_namespace_then_list(self, client):
        client.post("/publish", json={"ns": "acme", "documents": [{"id": "a", "content": "# A"}]})
        assert client.post("/process").json()["succeeded"] == 1

        assert client.get("/").json()["total"] == 0
        listed = client.get("/", params={"ns": "acme"}).json()
        assert [d["id"] for d in listed["documents"]] == ["a"]

        assert client.get("/a").status_code == 404
        assert client.get("/a", params={"ns": "acme"}).json()["content"] == "# A"

        found = client.get("/search", params={"q": "A", "ns": "acme"}).json()
        assert [d["id"] for d in found["documents"]] == ["a"]

    def test_process_survives_backend_errors_while_claiming(self, client, analytical_store, monkeypatch):
        client.post("/publish", json={"ns": "acme", "documents": [{"id": "a"}]})

        def unavailable(table, rows):
            raise BackendError("connection reset")

        monkeypatch.setattr(analytical_store.executor, "insert", unavailable)
        response = client.post("/process")

        assert response.status_code == 200
        body = response.json()
        assert body["skipped"] == 1
        assert body["errors"]
