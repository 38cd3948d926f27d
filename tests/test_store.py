"""
Unit Tests for the relational store backends.

Tests the InMemoryStore and SupabaseStore:
- Filtering, ordering and limits
- Upsert keyed by conflict column
- Errors returned as data, never raised
- PostgREST request shape (filters, Prefer headers, counts)
"""

import json

import httpx
import pytest

from indexing_control.services import InMemoryStore, SupabaseStore


# ============================================================================
# Test InMemoryStore
# ============================================================================

class TestInMemoryStore:
    """In-memory store behaviour"""

    @pytest.mark.asyncio
    async def test_insert_generates_id_and_created_at(self):
        store = InMemoryStore()
        result = await store.insert("items", {"name": "a"})
        assert result.ok
        assert result.data["id"]
        assert result.data["created_at"]
        assert store.rows("items")[0]["name"] == "a"

    @pytest.mark.asyncio
    async def test_select_filters_orders_and_limits(self):
        store = InMemoryStore(
            {
                "items": [
                    {"id": "1", "kind": "x", "rank": 2},
                    {"id": "2", "kind": "y", "rank": 1},
                    {"id": "3", "kind": "x", "rank": 3},
                ]
            }
        )
        result = await store.select(
            "items", filters={"kind": "x"}, order_by="rank", descending=True, limit=1
        )
        assert [row["id"] for row in result.data] == ["3"]

    @pytest.mark.asyncio
    async def test_select_projects_columns(self):
        store = InMemoryStore({"items": [{"id": "1", "kind": "x", "secret": "s"}]})
        result = await store.select("items", columns="id, kind")
        assert result.data == [{"id": "1", "kind": "x"}]

    @pytest.mark.asyncio
    async def test_head_count(self):
        store = InMemoryStore({"videos": [{"s": "complete"}, {"s": "complete"}, {"s": "new"}]})
        result = await store.select("videos", filters={"s": "complete"}, count=True, head=True)
        assert result.data is None
        assert result.count == 2

    @pytest.mark.asyncio
    async def test_upsert_replaces_by_conflict_key(self):
        store = InMemoryStore()
        await store.upsert("outputs", {"test_run_id": "r1", "v": 1}, on_conflict="test_run_id")
        await store.upsert("outputs", {"test_run_id": "r1", "v": 2}, on_conflict="test_run_id")
        rows = store.rows("outputs")
        assert len(rows) == 1
        assert rows[0]["v"] == 2

    @pytest.mark.asyncio
    async def test_update_returns_first_matching_row(self):
        store = InMemoryStore({"items": [{"id": "1", "v": 1}]})
        result = await store.update("items", {"v": 5}, {"id": "1"})
        assert result.data["v"] == 5

        missing = await store.update("items", {"v": 5}, {"id": "nope"})
        assert missing.ok
        assert missing.data is None

    @pytest.mark.asyncio
    async def test_delete(self):
        store = InMemoryStore({"items": [{"id": "1"}, {"id": "2"}]})
        result = await store.delete("items", {"id": "1"})
        assert [row["id"] for row in result.data] == ["1"]
        assert [row["id"] for row in store.rows("items")] == ["2"]

    @pytest.mark.asyncio
    async def test_injected_error_is_returned(self):
        store = InMemoryStore()
        store.inject_error("insert", "items", "duplicate key")
        result = await store.insert("items", {"id": "1"})
        assert not result.ok
        assert result.error_message == "duplicate key"
        assert store.rows("items") == []

    @pytest.mark.asyncio
    async def test_returned_rows_are_copies(self):
        store = InMemoryStore({"items": [{"id": "1", "meta": {"a": 1}}]})
        result = await store.select_one("items", filters={"id": "1"})
        result.data["meta"]["a"] = 99
        assert store.rows("items")[0]["meta"]["a"] == 1

    @pytest.mark.asyncio
    async def test_write_count(self):
        store = InMemoryStore()
        await store.select("items")
        assert store.write_count == 0
        await store.insert("items", {})
        assert store.write_count == 1


# ============================================================================
# Test SupabaseStore
# ============================================================================

class TestSupabaseStore:
    """PostgREST store over a mock transport"""

    @staticmethod
    def make_store(handler):
        return SupabaseStore(
            supabase_url="http://supabase.test/",
            supabase_key="service-key",
            transport=httpx.MockTransport(handler),
        )

    def test_storage_initialization(self):
        store = SupabaseStore(supabase_url="http://supabase.test/", supabase_key="k")
        assert store.supabase_url == "http://supabase.test"
        assert store.supabase_key == "k"

    @pytest.mark.asyncio
    async def test_select_builds_postgrest_query(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, json=[{"id": "1"}])

        store = self.make_store(handler)
        result = await store.select(
            "indexing_test_logs",
            columns="id, msg",
            filters={"test_run_id": "r1", "archived": False, "deleted_at": None},
            order_by="t",
            limit=10,
        )
        await store.close()

        request = seen["request"]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/indexing_test_logs"
        params = request.url.params
        assert params["select"] == "id,msg"
        assert params["test_run_id"] == "eq.r1"
        assert params["archived"] == "eq.false"
        assert params["deleted_at"] == "is.null"
        assert params["order"] == "t.asc"
        assert params["limit"] == "10"
        assert request.headers["apikey"] == "service-key"
        assert request.headers["Authorization"] == "Bearer service-key"
        assert result.data == [{"id": "1"}]

    @pytest.mark.asyncio
    async def test_head_count_reads_content_range(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "HEAD"
            assert request.headers["Prefer"] == "count=exact"
            return httpx.Response(200, headers={"Content-Range": "*/3573"})

        store = self.make_store(handler)
        result = await store.select("videos", filters={"indexing_status": "complete"}, count=True, head=True)
        assert result.ok
        assert result.count == 3573
        assert result.data is None

    @pytest.mark.asyncio
    async def test_upsert_sends_merge_duplicates(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(201, json=[json.loads(request.content)])

        store = self.make_store(handler)
        result = await store.upsert(
            "indexing_test_outputs", {"test_run_id": "r1"}, on_conflict="test_run_id"
        )

        request = seen["request"]
        assert request.method == "POST"
        assert request.url.params["on_conflict"] == "test_run_id"
        assert "resolution=merge-duplicates" in request.headers["Prefer"]
        assert "return=representation" in request.headers["Prefer"]
        assert result.data == [{"test_run_id": "r1"}]

    @pytest.mark.asyncio
    async def test_insert_returns_single_row(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, json=[{"id": "new-id"}])

        store = self.make_store(handler)
        result = await store.insert("indexing_test_runs", {"status": "processing"})
        assert result.data == {"id": "new-id"}

    @pytest.mark.asyncio
    async def test_http_error_becomes_store_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                409,
                json={"message": "duplicate key value", "code": "23505", "details": "Key exists"},
            )

        store = self.make_store(handler)
        result = await store.insert("indexing_test_runs", {})
        assert not result.ok
        assert result.error.message == "duplicate key value"
        assert result.error.code == "23505"
        assert result.error.status == 409

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["select", "insert", "update", "upsert", "delete"])
    async def test_non_json_success_body_becomes_store_error(self, method):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>ok</html>")

        store = self.make_store(handler)
        calls = {
            "select": lambda: store.select("videos"),
            "insert": lambda: store.insert("videos", {"id": "v1"}),
            "update": lambda: store.update("videos", {"a": 1}, {"id": "v1"}),
            "upsert": lambda: store.upsert("videos", {"id": "v1"}, on_conflict="id"),
            "delete": lambda: store.delete("videos", {"id": "v1"}),
        }
        result = await calls[method]()

        assert not result.ok
        assert result.data is None
        assert result.error.code == "INVALID_RESPONSE"
        assert result.error.status == 200
        assert "non-JSON" in result.error_message

    @pytest.mark.asyncio
    async def test_transport_error_becomes_store_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        store = self.make_store(handler)
        result = await store.update("videos", {"a": 1}, {"id": "v1"})
        assert not result.ok
        assert result.error.code == "NETWORK_ERROR"
        assert "connection refused" in result.error_message

    @pytest.mark.asyncio
    async def test_close(self):
        store = self.make_store(lambda request: httpx.Response(200, json=[]))
        await store.select("videos")
        await store.close()
        assert store._client is None
