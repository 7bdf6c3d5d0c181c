"""Tests for the analytical adapter."""

import pytest

from docstore.core.errors import ConflictError, InvalidTransitionError, ValidationError
from docstore.core.types import ActionStatus, ListFilter, SearchQuery
from docstore.storage.analytical import infer_type, next_seq


class TestMergeOnRead:
    """Tests for append-and-shadow writes."""

    def test_seq_is_strictly_increasing(self):
        values = [next_seq() for _ in range(1000)]
        assert values == sorted(set(values))

    def test_update_appends_and_shadows(self, analytical_store):
        first = analytical_store.set("posts/a", {"type": "Post", "content": "one"})
        second = analytical_store.set("posts/a", {"type": "Post", "content": "two"})

        assert first.created and not second.created
        assert second.version > first.version

        record = analytical_store.get("posts/a")
        assert record.content == "two"
        assert record.version == second.version
        assert analytical_store.list().total == 1
        assert len(analytical_store.raw("posts/a")["rows"]) == 2

    def test_created_at_survives_updates(self, analytical_store):
        analytical_store.set("a", {"content": "one"})
        created = analytical_store.get("a").created_at
        analytical_store.set("a", {"content": "two"})

        assert analytical_store.get("a").created_at == created

    def test_type_change_keeps_one_record_per_id(self, analytical_store):
        analytical_store.set("a", {"type": "Draft", "content": "draft"})
        analytical_store.set("a", {"type": "Post", "content": "final"})

        assert analytical_store.get("a").type == "Post"
        assert [r.type for r in analytical_store.list().documents] == ["Post"]
        assert analytical_store.list(ListFilter(type="Draft")).total == 0

    def test_version_precondition(self, analytical_store):
        first = analytical_store.set("a", {"content": "one"})
        analytical_store.set("a", {"content": "two"})

        with pytest.raises(ConflictError):
            analytical_store.set("a", {"content": "stale"}, version=first.version)

    def test_soft_delete_appends_shadow_row(self, analytical_store):
        analytical_store.set("a", {"content": "one"})

        assert analytical_store.delete("a", soft=True).deleted
        assert analytical_store.get("a") is None
        assert analytical_store.search(SearchQuery(query="one")).total == 0

        rows = analytical_store.raw("a")["rows"]
        assert len(rows) == 2
        assert rows[-1]["deleted_at"] is not None
        assert rows[-1]["event"] == "deleted"

    def test_set_after_soft_delete_recreates(self, analytical_store):
        analytical_store.set("a", {"content": "one"})
        analytical_store.delete("a", soft=True)

        assert analytical_store.set("a", {"content": "again"}).created
        assert analytical_store.get("a").content == "again"

    def test_hard_delete_compacts(self, analytical_store):
        analytical_store.set("a", {"content": "one"})
        analytical_store.set("a", {"content": "two"})

        assert analytical_store.delete("a").deleted
        assert analytical_store.raw("a") is None
        assert not analytical_store.delete("a").deleted

    def test_raw_primitives(self, analytical_store):
        analytical_store.set("a", {"content": "one"})

        rows = analytical_store.query("SELECT count(*) AS n FROM things WHERE id = {id:String}", {"id": "a"})
        assert rows == [{"n": 1}]


class TestRelations:
    """Tests for relation traversal."""

    def test_outgoing_and_incoming(self, analytical_store):
        analytical_store.set("posts/a", {"content": "post"})
        analytical_store.set("people/ada", {"data": {"name": "Ada"}})
        analytical_store.relate("posts/a", "author", "people/ada", {"role": "lead"})

        outgoing = analytical_store.relationships("posts/a", "author")
        assert [(r.from_id, r.to_id) for r in outgoing] == [("posts/a", "people/ada")]
        assert outgoing[0].data == {"role": "lead"}

        incoming = analytical_store.related("people/ada", "author", direction="to")
        assert [r.id for r in incoming] == ["posts/a"]
        assert [r.id for r in analytical_store.related("posts/a")] == ["people/ada"]

    def test_duplicate_edges_keep_latest(self, analytical_store):
        analytical_store.relate("a", "links", "b", {"weight": 1})
        analytical_store.relate("a", "links", "b", {"weight": 2})

        edges = analytical_store.relationships("a")
        assert len(edges) == 1
        assert edges[0].data == {"weight": 2}

    def test_unrelate_is_a_tombstone(self, analytical_store):
        analytical_store.relate("a", "links", "b")

        assert analytical_store.unrelate("a", "links", "b")
        assert analytical_store.relationships("a") == []
        assert not analytical_store.unrelate("a", "links", "b")

        analytical_store.relate("a", "links", "b")
        assert len(analytical_store.relationships("a")) == 1

    def test_related_skips_missing_documents(self, analytical_store):
        analytical_store.relate("a", "links", "ghost")
        assert analytical_store.related("a") == []

    def test_bad_direction(self, analytical_store):
        with pytest.raises(ValidationError):
            analytical_store.relationships("a", direction="sideways")


class TestActionQueue:
    """Tests for publish and the Action state helpers."""

    def test_publish_stages_pending_action(self, analytical_store):
        action = analytical_store.publish(
            "acme",
            [{"id": "/a.mdx", "content": "# A"}, {"id": "b", "content": "# B"}],
            repo="acme/site",
            commit="abc123",
            commit_message="Publish",
        )

        assert action.status == ActionStatus.PENDING
        assert action.total == 2
        assert [d.id for d in action.documents] == ["a", "b"]

        stored = analytical_store.get_action(action.id)
        assert stored.status == ActionStatus.PENDING
        assert stored.commit == "abc123"
        assert stored.commit_message == "Publish"
        assert [d.content for d in stored.documents] == ["# A", "# B"]

        # Nothing is materialized until a Processor runs
        assert analytical_store.list().total == 0

    @pytest.mark.parametrize("ns, documents", [("", [{"id": "a"}]), ("acme", [])])
    def test_publish_validates(self, analytical_store, ns, documents):
        with pytest.raises(ValidationError):
            analytical_store.publish(ns, documents)

    def test_list_actions_filters_on_merged_status(self, analytical_store):
        first = analytical_store.publish("acme", [{"id": "a"}])
        second = analytical_store.publish("other", [{"id": "b"}])
        analytical_store.transition_action(first, ActionStatus.ACTIVE)

        assert [a.id for a in analytical_store.list_actions()] == [second.id]
        assert [a.id for a in analytical_store.list_actions(status="active")] == [first.id]
        assert [a.id for a in analytical_store.list_actions(ns="acme", status=None)] == [first.id]
        assert len(analytical_store.list_actions(status=None, limit=1)) == 1

    def test_invalid_transitions_raise(self, analytical_store):
        action = analytical_store.publish("acme", [{"id": "a"}])

        with pytest.raises(InvalidTransitionError):
            analytical_store.transition_action(action, ActionStatus.COMPLETED)

        active = analytical_store.transition_action(action, ActionStatus.ACTIVE)
        done = analytical_store.transition_action(active, ActionStatus.COMPLETED)

        for target in ActionStatus:
            with pytest.raises(InvalidTransitionError):
                analytical_store.transition_action(done, target)

    def test_get_missing_action(self, analytical_store):
        assert analytical_store.get_action("nope") is None

    def test_published_namespace_is_readable_with_ns(self, analytical_store):
        action = analytical_store.publish("acme", [{"id": "posts/a", "content": "hello acme"}])
        analytical_store.append_things(action)

        assert analytical_store.get("posts/a") is None
        assert analytical_store.get("posts/a", ns="acme").type == "Post"
        assert analytical_store.list(ListFilter(ns="acme")).total == 1
        assert analytical_store.search(SearchQuery(query="acme", ns="acme")).total == 1
        assert analytical_store.search(SearchQuery(query="acme")).total == 0


@pytest.mark.parametrize("doc_id, expected", [
    ("posts/hello-world", "Post"),
    ("tags/python", "Tag"),
    ("readme", "Document"),
])
def test_infer_type(doc_id, expected):
    assert infer_type(doc_id) == expected
