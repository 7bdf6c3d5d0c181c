"""
Pytest configuration and fixtures for docstore tests.
"""

import base64
import hashlib
import json
import os
import tempfile
from collections.abc import Generator
from pathlib import Path
from urllib.parse import unquote

import httpx
import pytest

# Set test environment before importing app modules
os.environ["DOCSTORE_DATA_DIR"] = tempfile.mkdtemp()
os.environ["DOCSTORE_NAMESPACE"] = "test"
os.environ["DOCSTORE_CLICKHOUSE_URL"] = ""

from docstore.storage.analytical import AnalyticalAdapter  # noqa: E402
from docstore.storage.content import ContentAdapter  # noqa: E402
from docstore.storage.executors import SQLiteExecutor  # noqa: E402
from docstore.storage.relational import RelationalAdapter  # noqa: E402


@pytest.fixture
def temp_data_dir() -> Generator[Path, None, None]:
    """Create a temporary data directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ============================================
# GitHub double
# ============================================

def blob_sha(text: str) -> str:
    """Git blob SHA of a file's content."""
    data = text.encode("utf-8")
    return hashlib.sha1(b"blob %d\0" % len(data) + data).hexdigest()


class FakeGitHub:
    """
    In-memory stand-in for the parts of the GitHub REST API the content
    adapter uses: contents, git trees and code search.
    """

    def __init__(self, owner: str = "acme", repo: str = "content"):
        self.owner = owner
        self.repo = repo
        self.files: dict[str, str] = {}
        self.requests: list[httpx.Request] = []
        self.search_status = 200
        self.search_results: list[str] | None = None
        self.search_total: int | None = None
        self.put_status: int | None = None

    @property
    def prefix(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    def sha(self, path: str) -> str:
        return blob_sha(self.files[path])

    def write(self, path: str, text: str) -> str:
        """Put a file straight into the repository, bypassing the adapter."""
        self.files[path] = text
        return blob_sha(text)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = unquote(request.url.path)

        if path == "/search/code":
            return self._search(request)
        if path.startswith(f"{self.prefix}/git/trees/"):
            return self._tree()
        if path.startswith(f"{self.prefix}/contents/"):
            file_path = path[len(f"{self.prefix}/contents/"):]
            if request.method == "GET":
                return self._get(file_path)
            if request.method == "PUT":
                return self._put(file_path, json.loads(request.content))
            if request.method == "DELETE":
                return self._delete(file_path, json.loads(request.content))
        return httpx.Response(404, json={"message": "Not Found"})

    def _get(self, path: str) -> httpx.Response:
        if path not in self.files:
            return httpx.Response(404, json={"message": "Not Found"})
        text = self.files[path]
        return httpx.Response(200, json={
            "type": "file",
            "path": path,
            "sha": blob_sha(text),
            "encoding": "base64",
            "content": base64.b64encode(text.encode("utf-8")).decode("ascii"),
        })

    def _put(self, path: str, body: dict) -> httpx.Response:
        if self.put_status:
            status, self.put_status = self.put_status, None
            return httpx.Response(status, json={"message": "simulated"})

        current = self.files.get(path)
        if current is not None and body.get("sha") != blob_sha(current):
            return httpx.Response(409, json={"message": f"{path} does not match {body.get('sha')}"})
        if current is None and body.get("sha"):
            return httpx.Response(422, json={"message": "sha supplied for a new file"})

        text = base64.b64decode(body["content"]).decode("utf-8")
        self.files[path] = text
        return httpx.Response(
            200 if current is not None else 201,
            json={"content": {"path": path, "sha": blob_sha(text)}, "commit": {"message": body["message"]}},
        )

    def _delete(self, path: str, body: dict) -> httpx.Response:
        current = self.files.get(path)
        if current is None:
            return httpx.Response(404, json={"message": "Not Found"})
        if body.get("sha") != blob_sha(current):
            return httpx.Response(409, json={"message": "sha does not match"})
        del self.files[path]
        return httpx.Response(200, json={"commit": {"message": body["message"]}})

    def _tree(self) -> httpx.Response:
        tree = [
            {"path": path, "type": "blob", "sha": blob_sha(text)}
            for path, text in sorted(self.files.items())
        ]
        return httpx.Response(200, json={"tree": tree, "truncated": False})

    def _search(self, request: httpx.Request) -> httpx.Response:
        if self.search_status != 200:
            return httpx.Response(self.search_status, json={"message": "search unavailable"})
        if self.search_results is not None:
            paths = self.search_results
        else:
            q = request.url.params["q"]
            terms = [t for t in q.split() if t != "OR" and ":" not in t]
            paths = [p for p, text in self.files.items() if any(t in text.lower() for t in terms)]
        total = self.search_total if self.search_total is not None else len(paths)
        return httpx.Response(200, json={
            "total_count": total,
            "incomplete_results": False,
            "items": [{"path": p} for p in paths],
        })


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def content_store(fake_github) -> Generator[ContentAdapter, None, None]:
    client = httpx.Client(transport=httpx.MockTransport(fake_github), base_url="https://api.github.test")
    store = ContentAdapter(
        owner=fake_github.owner,
        repo=fake_github.repo,
        branch="main",
        base_path="",
        client=client,
    )
    yield store
    client.close()


# ============================================
# Local backends
# ============================================

@pytest.fixture
def relational_store(temp_data_dir) -> Generator[RelationalAdapter, None, None]:
    with RelationalAdapter(db_path=temp_data_dir / "documents.sqlite", namespace="test") as store:
        yield store


@pytest.fixture
def analytical_store(temp_data_dir) -> Generator[AnalyticalAdapter, None, None]:
    executor = SQLiteExecutor(db_path=temp_data_dir / "analytical.sqlite")
    with AnalyticalAdapter(executor=executor, namespace="test") as store:
        yield store


@pytest.fixture(params=["relational", "content", "analytical"])
def store(request):
    """Every backend, for properties the contract guarantees everywhere."""
    return request.getfixturevalue(f"{request.param}_store")
