"""Tests for SQL executors."""

import json

import httpx
import pytest

from docstore.core.errors import BackendError
from docstore.storage.executors import ClickHouseExecutor, Executor, SQLiteExecutor, create_executor


@pytest.fixture
def sqlite_executor(temp_data_dir) -> SQLiteExecutor:
    executor = SQLiteExecutor(db_path=temp_data_dir / "exec.sqlite")
    executor.create_table("events", [("seq", "Int64"), ("name", "String"), ("note", "Nullable(String)")], ["name", "seq"])
    return executor


class TestSQLiteExecutor:
    """Tests for the embedded executor."""

    def test_placeholders_are_rewritten(self):
        sql = "SELECT * FROM t WHERE ns = {ns:String} AND n < {limit:UInt32}"
        assert SQLiteExecutor._rewrite(sql) == "SELECT * FROM t WHERE ns = :ns AND n < :limit"

    def test_insert_and_query(self, sqlite_executor):
        sqlite_executor.insert("events", [
            {"seq": 1, "name": "a", "note": None},
            {"seq": 2, "name": "b", "note": "hi"},
        ])

        rows = sqlite_executor.query("SELECT * FROM events WHERE name = {name:String}", {"name": "b"})
        assert rows == [{"seq": 2, "name": "b", "note": "hi"}]

    def test_delete_rows(self, sqlite_executor):
        sqlite_executor.insert("events", [{"seq": 1, "name": "a", "note": None}])
        sqlite_executor.delete_rows("events", "name = {name:String}", {"name": "a"})

        assert sqlite_executor.query("SELECT * FROM events") == []

    def test_sql_errors_become_backend_errors(self, sqlite_executor):
        with pytest.raises(BackendError):
            sqlite_executor.query("SELECT * FROM missing_table")

    def test_rejects_bad_identifiers(self, sqlite_executor):
        with pytest.raises(BackendError):
            sqlite_executor.insert("events; DROP TABLE events", [{"seq": 1}])

    def test_ping(self, sqlite_executor):
        assert sqlite_executor.ping()


class TestClickHouseExecutor:
    """Tests for the ClickHouse HTTP executor against a recorded handler."""

    @pytest.fixture
    def recorder(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if request.url.path == "/ping":
                return httpx.Response(200, text="Ok.\n")
            body = request.content.decode()
            if "missing" in body:
                return httpx.Response(404, text="Code: 60. DB::Exception: Table default.missing does not exist")
            if body.startswith("SELECT"):
                return httpx.Response(200, text='{"seq":1,"id":"a"}\n{"seq":2,"id":"b"}\n')
            return httpx.Response(200, text="")

        return calls, handler

    @pytest.fixture
    def executor(self, recorder):
        _, handler = recorder
        client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://clickhouse.test:8123")
        return ClickHouseExecutor(url="http://clickhouse.test:8123", database="docs", client=client)

    def test_query_sends_server_side_params(self, executor, recorder):
        calls, _ = recorder
        rows = executor.query("SELECT * FROM things WHERE ns = {ns:String}", {"ns": "acme"})

        assert rows == [{"seq": 1, "id": "a"}, {"seq": 2, "id": "b"}]
        params = calls[0].url.params
        assert params["param_ns"] == "acme"
        assert params["database"] == "docs"
        assert params["default_format"] == "JSONEachRow"
        assert params["output_format_json_quote_64bit_integers"] == "0"

    def test_insert_posts_json_each_row(self, executor, recorder):
        calls, _ = recorder
        executor.insert("things", [{"seq": 1, "id": "a"}, {"seq": 2, "id": "b"}])

        request = calls[0]
        assert request.url.params["query"] == "INSERT INTO things FORMAT JSONEachRow"
        lines = request.content.decode().splitlines()
        assert [json.loads(line)["id"] for line in lines] == ["a", "b"]

    def test_empty_insert_sends_nothing(self, executor, recorder):
        calls, _ = recorder
        executor.insert("things", [])
        assert calls == []

    def test_delete_rows_uses_mutation(self, executor, recorder):
        calls, _ = recorder
        executor.delete_rows("things", "id = {id:String}", {"id": "a"})

        body = calls[0].content.decode()
        assert body.startswith("ALTER TABLE things DELETE WHERE id = {id:String}")
        assert calls[0].url.params["param_id"] == "a"

    def test_create_table_uses_merge_tree(self, executor, recorder):
        calls, _ = recorder
        executor.create_table("things", [("seq", "Int64"), ("id", "String")], ["id", "seq"])

        body = calls[0].content.decode()
        assert "ENGINE = MergeTree ORDER BY (id, seq)" in body

    def test_server_errors_become_backend_errors(self, executor):
        with pytest.raises(BackendError) as exc_info:
            executor.command("SELECT * FROM missing")
        assert exc_info.value.status_code == 404

    def test_ping(self, executor):
        assert executor.ping()


def test_create_executor_prefers_clickhouse_url(temp_data_dir):
    assert isinstance(create_executor(url="", db_path=temp_data_dir / "x.sqlite"), SQLiteExecutor)
    assert isinstance(create_executor(url="http://clickhouse.test:8123"), ClickHouseExecutor)


def test_executor_without_create_table_is_abstract():
    class ReadOnly(Executor):
        def query(self, sql, params=None):
            return []

        def command(self, sql, params=None):
            pass

        def insert(self, table, rows):
            pass

        def ping(self):
            return True

    with pytest.raises(TypeError):
        ReadOnly()
