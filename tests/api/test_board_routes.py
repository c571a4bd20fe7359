"""HTTP surface: health/flush/stats and the board mutation routes."""

import asyncio

from httpx import AsyncClient

from boardcache.core.exceptions import CacheUnavailable

MOVE_T1 = {"op": "move_task", "task_id": "t-1", "column_id": "doing", "sort_order": 0}


class TestCacheRoutes:
    async def test_root(self, client: AsyncClient) -> None:
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["docs"] == "/docs"

    async def test_health(self, client: AsyncClient) -> None:
        """GET /health reports memory usage against the 20MB cap."""
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["maxMemoryMB"] == 20
        assert set(data) == {"status", "usedMemoryMB", "maxMemoryMB", "keyCount"}

    async def test_health_degraded_while_bypassing(self, client: AsyncClient, runtime) -> None:
        runtime.cache._enter_bypass(CacheUnavailable("down"))
        response = await client.get("/health")
        assert response.json()["status"] == "degraded"

    async def test_flush_clears_entries(self, client: AsyncClient, runtime) -> None:
        await runtime.store.set("medium:project:1", b"{}", ttl=60)

        response = await client.post("/flush")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert await runtime.store.key_count() == 0

    async def test_stats(self, client: AsyncClient) -> None:
        await client.get("/boards/p1/t1")
        response = await client.get("/cache/stats")
        assert response.status_code == 200
        data = response.json()
        assert data["misses"] == 1
        assert "memory" in data and "recommendations" in data


class TestBoardRoutes:
    async def test_get_board(self, client: AsyncClient) -> None:
        response = await client.get("/boards/p1/t1")
        assert response.status_code == 200
        assert [c["id"] for c in response.json()["columns"]] == ["todo", "doing", "done"]

    async def test_unknown_board_is_404(self, client: AsyncClient) -> None:
        response = await client.get("/boards/p9/t9")
        assert response.status_code == 404
        assert response.json()["retryable"] is False

    async def test_mutation_is_accepted_with_optimistic_board(self, client: AsyncClient, runtime) -> None:
        response = await client.post(
            "/boards/p1/t1/mutations", json={"actor": "alice", "payload": MOVE_T1}
        )
        assert response.status_code == 202
        data = response.json()
        assert data["mutation"]["status"] == "pending"
        assert data["mutation"]["type"] == "move"
        doing = next(c for c in data["board"]["columns"] if c["id"] == "doing")
        assert [t["id"] for t in doing["tasks"]] == ["t-1"]

        await runtime.engine.drain()
        status_response = await client.get(
            f"/boards/p1/t1/mutations/{data['mutation']['id']}"
        )
        assert status_response.json()["status"] == "confirmed"

    async def test_wait_returns_the_confirmed_mutation(self, client: AsyncClient) -> None:
        response = await client.post(
            "/boards/p1/t1/mutations?wait=true", json={"actor": "alice", "payload": MOVE_T1}
        )
        assert response.status_code == 202
        assert response.json()["mutation"]["status"] == "confirmed"

        timeline = await client.get("/boards/p1/t1/timeline")
        assert timeline.status_code == 200
        [event] = timeline.json()
        assert event["action"] == "move_task"
        assert event["actor"] == "alice"
        assert event["sequence"] == 1

    async def test_wait_maps_timeout_to_504(self, client: AsyncClient, runtime, board_source) -> None:
        async def hang(mutation):
            await asyncio.Event().wait()

        board_source.persist = hang
        runtime.engine.timeout_seconds = 0.05

        response = await client.post(
            "/boards/p1/t1/mutations?wait=true", json={"actor": "alice", "payload": MOVE_T1}
        )

        assert response.status_code == 504
        assert response.json()["retryable"] is True
        board = (await client.get("/boards/p1/t1")).json()
        todo = next(c for c in board["columns"] if c["id"] == "todo")
        assert [t["id"] for t in todo["tasks"]] == ["t-1", "t-2"]

    async def test_wait_maps_persist_failure_to_502(self, client: AsyncClient, board_source) -> None:
        async def fail(mutation):
            raise ConnectionError("database unreachable")

        board_source.persist = fail

        response = await client.post(
            "/boards/p1/t1/mutations?wait=true", json={"actor": "alice", "payload": MOVE_T1}
        )
        assert response.status_code == 502

    async def test_invalid_payload_is_422(self, client: AsyncClient) -> None:
        response = await client.post(
            "/boards/p1/t1/mutations",
            json={"actor": "alice", "payload": {"op": "move_task", "task_id": "t-404", "column_id": "doing", "sort_order": 0}},
        )
        assert response.status_code == 422
        assert "t-404" in response.json()["detail"]

    async def test_unknown_mutation_is_404(self, client: AsyncClient) -> None:
        response = await client.get("/boards/p1/t1/mutations/doesnotexist")
        assert response.status_code == 404

    async def test_invalidate(self, client: AsyncClient, runtime) -> None:
        await client.get("/boards/p1/t1")
        await runtime.cache.pool.join()
        assert await runtime.store.exists("high:board:p1:t1")

        response = await client.post("/boards/p1/t1/invalidate")

        assert response.status_code == 200
        assert not await runtime.store.exists("high:board:p1:t1")

    async def test_replace_board(self, client: AsyncClient, board) -> None:
        body = board.model_dump(mode="json")
        body["columns"][2]["name"] = "Shipped"

        response = await client.put("/boards/p1/t1", json=body)
        assert response.status_code == 204

        fetched = (await client.get("/boards/p1/t1")).json()
        assert fetched["columns"][2]["name"] == "Shipped"

    async def test_replace_board_with_mismatched_key_is_422(self, client: AsyncClient, board) -> None:
        response = await client.put("/boards/p2/t2", json=board.model_dump(mode="json"))
        assert response.status_code == 422
