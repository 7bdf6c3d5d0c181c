"""
Content-addressed Adapter - documents as files in a GitHub repository.

Every document is one markdown file with YAML frontmatter:

---
$type: BlogPost
$context: https://schema.org
title: Hello
---

# Hello

The file path is `<base_path>/<id><ext>`; `.mdx` takes precedence over `.md`
when both exist for one id. The version token is the git blob SHA of the
file at the branch head, and writes send it back as a compare-and-swap
precondition.

There is no query language: list() walks the git tree and search() may
narrow candidates through remote code search, re-verified against the live
tree. Filtering and ranking happen in storage.query.

Every mutation is its own commit. Batches are not atomic; set_many reports
each item.
"""

import base64
import re
from typing import Any
from urllib.parse import quote

import frontmatter
import httpx
import yaml

from docstore.core.config import settings, get_logger
from docstore.core.errors import BackendError, ConflictError, ValidationError
from docstore.core.types import (
    DeleteResult,
    DocumentRecord,
    ListFilter,
    ListResult,
    SearchQuery,
    SearchResult,
    SetResult,
)
from docstore.storage.base import StorageAdapter, check_preconditions, coerce_record, normalize_id
from docstore.storage.query import apply_list, apply_search, tokenize

logger = get_logger("storage.content")

SOFT_DELETE_SUFFIX = ".deleted"
RESERVED_KEYS = ("$type", "$context", "$id")
CODE_SEARCH_PAGE = 100

# Leading YAML block up to and including the closing fence line
FRONTMATTER_BLOCK = re.compile(r"\A---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)", re.S | re.M)

_YAML = frontmatter.YAMLHandler()


class ContentAdapter(StorageAdapter):
    """
    GitHub repository store addressed by content hash.

    Uses the REST API:
    - contents: read, create/update (sha precondition), delete
    - git/trees: recursive listing at the branch head
    - search/code: optional candidate narrowing for search()
    """

    kind = "content"

    def __init__(
        self,
        owner: str | None = None,
        repo: str | None = None,
        branch: str | None = None,
        base_path: str | None = None,
        token: str | None = None,
        api_url: str | None = None,
        extensions: list[str] | None = None,
        use_code_search: bool | None = None,
        timeout: float | None = None,
        client: httpx.Client | None = None,
        commit_message: str = "Update {path}",
    ):
        """Initialize the content adapter."""
        self.owner = owner or settings.github_owner
        self.repo = repo or settings.github_repo
        self.branch = branch or settings.github_branch
        self.base_path = (base_path if base_path is not None else settings.github_base_path).strip("/")
        self.extensions = tuple(extensions or settings.extensions)
        self.use_code_search = settings.use_code_search if use_code_search is None else use_code_search
        self.commit_message = commit_message
        self.committer = {
            "name": settings.github_committer_name,
            "email": settings.github_committer_email,
        }

        self._owns_client = client is None
        if client is None:
            headers = {
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
            token = token or settings.github_token
            if token:
                headers["Authorization"] = f"Bearer {token}"
            client = httpx.Client(
                base_url=api_url or settings.github_api_url,
                headers=headers,
                timeout=timeout if timeout is not None else settings.http_timeout,
            )
        self._client = client

    def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client:
            self._client.close()

    # ============================================
    # Paths
    # ============================================

    def _id_to_path(self, doc_id: str, ext: str | None = None) -> str:
        path = f"{doc_id}{ext or self.extensions[0]}"
        return f"{self.base_path}/{path}" if self.base_path else path

    def _path_to_id(self, path: str) -> str | None:
        """Map a repository path back to an id, or None if it is not a document."""
        if self.base_path:
            if not path.startswith(f"{self.base_path}/"):
                return None
            path = path[len(self.base_path) + 1:]
        for ext in self.extensions:
            if path.endswith(ext) and len(path) > len(ext):
                return path[: -len(ext)]
        return None

    def _ext_rank(self, path: str) -> int:
        for rank, ext in enumerate(self.extensions):
            if path.endswith(ext):
                return rank
        return len(self.extensions)

    @property
    def _repo_url(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    def _contents_url(self, path: str) -> str:
        return f"{self._repo_url}/contents/{quote(path, safe='/')}"

    # ============================================
    # HTTP
    # ============================================

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, turning transport failures into BackendError."""
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"GitHub {method} {url} failed: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        try:
            detail = response.json().get("message", response.text)
        except ValueError:
            detail = response.text
        raise BackendError(f"{action} failed ({response.status_code}): {detail}", response.status_code)

    def _get_file(self, path: str) -> dict[str, Any] | None:
        """Read one file at the branch head. Returns {path, sha, text} or None."""
        response = self._request("GET", self._contents_url(path), params={"ref": self.branch})
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"Read {path}")

        data = response.json()
        if isinstance(data, list) or data.get("type") != "file":
            return None

        raw = data.get("content") or ""
        if data.get("encoding", "base64") == "base64":
            text = base64.b64decode(raw).decode("utf-8")
        else:
            text = raw
        return {"path": data["path"], "sha": data["sha"], "text": text}

    def _find_file(self, doc_id: str) -> dict[str, Any] | None:
        """Find the file for an id, trying each extension in precedence order."""
        for ext in self.extensions:
            found = self._get_file(self._id_to_path(doc_id, ext))
            if found:
                return found
        return None

    def _put_file(self, path: str, text: str, message: str, sha: str | None = None) -> str:
        """Create or update a file; sha is the compare-and-swap precondition. Returns the new blob sha."""
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(text.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
            "committer": self.committer,
        }
        if sha:
            body["sha"] = sha

        response = self._request("PUT", self._contents_url(path), json=body)
        if response.status_code in (409, 422):
            raise ConflictError(path, f"remote rejected write with sha {sha}")
        self._raise_for_status(response, f"Write {path}")
        return response.json()["content"]["sha"]

    def _delete_file(self, path: str, sha: str, message: str) -> bool:
        body = {
            "message": message,
            "sha": sha,
            "branch": self.branch,
            "committer": self.committer,
        }
        response = self._request("DELETE", self._contents_url(path), json=body)
        if response.status_code == 404:
            return False
        if response.status_code == 409:
            raise ConflictError(path, f"remote rejected delete with sha {sha}")
        self._raise_for_status(response, f"Delete {path}")
        return True

    def _tree(self) -> dict[str, dict[str, str]]:
        """
        List document files at the branch head.

        Returns {id: {"path", "sha"}} with extension precedence applied, in
        path order.
        """
        response = self._request(
            "GET", f"{self._repo_url}/git/trees/{quote(self.branch, safe='')}", params={"recursive": "1"}
        )
        if response.status_code in (404, 409):
            # Missing branch or empty repository
            return {}
        self._raise_for_status(response, "List tree")

        payload = response.json()
        if payload.get("truncated"):
            logger.warning(f"Tree listing for {self.owner}/{self.repo} was truncated by the remote")

        files: dict[str, dict[str, str]] = {}
        for entry in sorted(payload.get("tree", []), key=lambda e: e["path"]):
            if entry.get("type") != "blob":
                continue
            doc_id = self._path_to_id(entry["path"])
            if doc_id is None:
                continue
            current = files.get(doc_id)
            if current is None or self._ext_rank(entry["path"]) < self._ext_rank(current["path"]):
                files[doc_id] = {"path": entry["path"], "sha": entry["sha"]}
        return files

    def _code_search(self, query: str) -> set[str] | None:
        """
        Paths the remote search index reports for any query term.

        Returns None when the hits cannot be trusted as a complete candidate
        set: more matches than one page holds, or the remote flagged the
        results as incomplete.
        """
        terms = tokenize(query)
        if not terms:
            return set()
        q = " OR ".join(terms) + f" repo:{self.owner}/{self.repo}"
        if self.base_path:
            q += f" path:{self.base_path}"
        response = self._request("GET", "/search/code", params={"q": q, "per_page": CODE_SEARCH_PAGE})
        self._raise_for_status(response, "Code search")

        payload = response.json()
        items = payload.get("items", [])
        if payload.get("incomplete_results") or payload.get("total_count", len(items)) > len(items):
            return None
        return {item["path"] for item in items}

    # ============================================
    # Serialization
    # ============================================

    def _render(self, doc: DocumentRecord) -> str:
        metadata: dict[str, Any] = {}
        if doc.type:
            metadata["$type"] = doc.type
        if doc.context is not None:
            metadata["$context"] = doc.context
        for key, value in doc.data.items():
            if key not in RESERVED_KEYS:
                metadata[key] = value
        header = _YAML.export(metadata, sort_keys=False) if metadata else ""
        return f"---\n{header}\n---\n\n{doc.content}"

    @staticmethod
    def _split(text: str) -> tuple[dict[str, Any], str]:
        """
        Split a file into frontmatter and body.

        frontmatter.loads() strips the body, so the block is cut here and
        the body is returned unchanged apart from the blank line _render
        writes after the closing fence.
        """
        match = FRONTMATTER_BLOCK.match(text)
        if not match:
            return {}, text

        metadata = _YAML.load(match.group(1)) or {}
        if not isinstance(metadata, dict):
            raise ValueError("frontmatter is not a mapping")

        body = text[match.end():]
        for separator in ("\r\n", "\n"):
            if body.startswith(separator):
                body = body[len(separator):]
                break
        return metadata, body

    def _parse(self, doc_id: str, file: dict[str, Any]) -> DocumentRecord | None:
        try:
            metadata, body = self._split(file["text"])
        except (yaml.YAMLError, ValueError) as e:
            logger.error(f"Error parsing {file['path']}: {e}")
            return None

        metadata = dict(metadata)
        doc_type = metadata.pop("$type", None)
        context = metadata.pop("$context", None)
        metadata.pop("$id", None)
        return DocumentRecord(
            id=doc_id,
            type=str(doc_type) if doc_type is not None else None,
            context=context,
            data=metadata,
            content=body,
            version=file["sha"],
        )

    def _load(self, files: dict[str, dict[str, str]], ids: list[str]) -> list[DocumentRecord]:
        records = []
        for doc_id in ids:
            file = self._get_file(files[doc_id]["path"])
            if file is None:
                # Removed between listing and read
                continue
            record = self._parse(doc_id, file)
            if record:
                records.append(record)
        return records

    # ============================================
    # Contract
    # ============================================

    @staticmethod
    def _check_namespace(ns: str | None) -> None:
        # A repository is one namespace
        if ns:
            raise ValidationError("The content backend has no namespaces; use another repository")

    def get(self, doc_id: str, ns: str | None = None) -> DocumentRecord | None:
        self._check_namespace(ns)
        doc_id = normalize_id(doc_id, self.extensions)
        file = self._find_file(doc_id)
        if not file:
            return None
        return self._parse(doc_id, file)

    def set(
        self,
        doc_id: str,
        record: DocumentRecord | dict[str, Any],
        *,
        create_only: bool = False,
        update_only: bool = False,
        version: int | str | None = None,
    ) -> SetResult:
        """Write a document as one commit, using the current blob sha as precondition."""
        doc_id = normalize_id(doc_id, self.extensions)
        doc = coerce_record(record, doc_id)

        existing = self._find_file(doc_id)
        exists = existing is not None
        check_preconditions(
            doc_id, existing["sha"] if existing else None, exists, create_only, update_only, version
        )

        path = existing["path"] if existing else self._id_to_path(doc_id)
        sha = self._put_file(
            path,
            self._render(doc),
            self.commit_message.format(path=path),
            sha=existing["sha"] if existing else None,
        )
        logger.info(f"{'Created' if not exists else 'Updated'} {path} at {sha[:7]}")
        return SetResult(id=doc_id, created=not exists, version=sha)

    def delete(self, doc_id: str, *, soft: bool = False) -> DeleteResult:
        """
        Delete a document.

        soft=True copies the file to `<path>.deleted` and removes the
        original, so the content stays in the repository but is no longer a
        recognized document.
        """
        doc_id = normalize_id(doc_id, self.extensions)
        file = self._find_file(doc_id)
        if not file:
            return DeleteResult(id=doc_id, deleted=False)

        if soft:
            tombstone = f"{file['path']}{SOFT_DELETE_SUFFIX}"
            previous = self._get_file(tombstone)
            self._put_file(
                tombstone,
                file["text"],
                f"Soft delete {file['path']}",
                sha=previous["sha"] if previous else None,
            )
            deleted = self._delete_file(file["path"], file["sha"], f"Move to {tombstone}")
            logger.info(f"Soft deleted {file['path']} to {tombstone}")
        else:
            deleted = self._delete_file(file["path"], file["sha"], f"Delete {file['path']}")
            logger.info(f"Hard deleted {file['path']}")

        return DeleteResult(id=doc_id, deleted=deleted)

    def list(self, flt: ListFilter | None = None) -> ListResult:
        flt = flt or ListFilter()
        self._check_namespace(flt.ns)
        files = self._tree()
        ids = [i for i in files if not flt.prefix or i.startswith(flt.prefix)]
        return apply_list(self._load(files, ids), flt)

    def search(self, query: SearchQuery) -> SearchResult:
        """
        Search documents.

        Remote code search is eventually consistent, so its hits are only
        used to narrow the live tree listing; stale hits are dropped and a
        failing or truncated search falls back to the full listing.

        The remote index matches whole tokens while scoring here matches
        substrings, so with use_code_search a term that only occurs inside
        a longer word can miss documents the other backends would return.
        Disable use_code_search when that matters.
        """
        self._check_namespace(query.ns)
        files = self._tree()
        ids = [i for i in files if not query.prefix or i.startswith(query.prefix)]

        if self.use_code_search:
            try:
                hits = self._code_search(query.query)
            except BackendError as e:
                logger.warning(f"Code search unavailable, searching the full listing: {e}")
            else:
                if hits is None:
                    logger.info("Code search results incomplete, searching the full listing")
                else:
                    ids = [i for i in ids if files[i]["path"] in hits]

        return apply_search(self._load(files, ids), query)

    def raw(self, doc_id: str) -> dict[str, Any] | None:
        """The file behind an id, falling back to its soft-deleted copy."""
        doc_id = normalize_id(doc_id, self.extensions)
        file = self._find_file(doc_id)
        if file:
            return {**file, "deleted": False}
        for ext in self.extensions:
            tombstone = self._get_file(f"{self._id_to_path(doc_id, ext)}{SOFT_DELETE_SUFFIX}")
            if tombstone:
                return {**tombstone, "deleted": True}
        return None
