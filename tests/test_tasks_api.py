"""HTTP tests for the task routes — create, list, get, update, delete."""

import json

import pytest

BASE = "http://testserver/api/v1/tasks"


class TestCreateTask:
    def test_defaults_applied(self, client, auth_headers):
        resp = client.post("/api/v1/tasks", json={"title": "Buy milk"}, headers=auth_headers)
        assert resp.status_code == 201
        task = resp.json()
        assert task["title"] == "Buy milk"
        assert task["status"] == "todo"
        assert task["priority"] == "medium"
        assert task["labels"] == []
        assert task["createdAt"] == task["updatedAt"]
        assert isinstance(task["createdAt"], int)
        assert len(task["id"]) == 21

    def test_links_built_from_request_url(self, create_task):
        task = create_task()
        assert task["links"]["self"] == f"{BASE}/{task['id']}"
        assert task["links"]["comments"] == f"{BASE}/{task['id']}/comments"

    def test_persisted_without_links(self, create_task, stores):
        task = create_task(labels=["home", "errand"], priority="high")
        stored = json.loads(stores["tasks"]._data[task["id"]][0])
        assert "links" not in stored
        assert stored["labels"] == ["home", "errand"]
        assert stored["priority"] == "high"

    def test_ids_are_unique(self, create_task):
        ids = {create_task(title=f"t{i}")["id"] for i in range(20)}
        assert len(ids) == 20

    def test_empty_title_rejected(self, client, auth_headers, stores):
        resp = client.post("/api/v1/tasks", json={"title": ""}, headers=auth_headers)
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "Validation failed"
        issue = body["issues"][0]
        assert issue["path"] == ["title"]
        assert issue["code"] == "string_too_short"
        assert issue["expected"] == "length >= 1"
        assert issue["message"]
        assert len(stores["tasks"]) == 0

    def test_title_too_long_rejected(self, client, auth_headers):
        resp = client.post("/api/v1/tasks", json={"title": "x" * 101}, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["issues"][0]["path"] == ["title"]

    def test_missing_title_rejected(self, client, auth_headers):
        resp = client.post("/api/v1/tasks", json={"status": "done"}, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["issues"][0]["path"] == ["title"]
        assert resp.json()["issues"][0]["code"] == "missing"

    def test_invalid_enum_rejected(self, client, auth_headers):
        resp = client.post(
            "/api/v1/tasks", json={"title": "x", "status": "blocked"}, headers=auth_headers
        )
        assert resp.status_code == 400
        issue = resp.json()["issues"][0]
        assert issue["path"] == ["status"]
        assert issue["code"] == "enum"

    def test_extra_field_rejected(self, client, auth_headers):
        resp = client.post(
            "/api/v1/tasks", json={"title": "x", "id": "mine"}, headers=auth_headers
        )
        assert resp.status_code == 400
        assert resp.json()["issues"][0]["code"] == "extra_forbidden"

    def test_malformed_json_rejected(self, client, auth_headers):
        resp = client.post(
            "/api/v1/tasks",
            content=b"{not json",
            headers={**auth_headers, "Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["issues"][0]["code"] == "json_invalid"


class TestGetTask:
    def test_round_trip(self, client, auth_headers, create_task):
        created = create_task(labels=["a"])
        resp = client.get(f"/api/v1/tasks/{created['id']}", headers=auth_headers)
        assert resp.status_code == 200
        fetched = resp.json()
        created.pop("links")
        links = fetched.pop("links")
        assert fetched == created
        assert links["self"] == f"{BASE}/{created['id']}"
        assert links["comments"] == f"{BASE}/{created['id']}/comments"

    def test_missing_task_404(self, client, auth_headers):
        resp = client.get("/api/v1/tasks/does-not-exist", headers=auth_headers)
        assert resp.status_code == 404
        assert resp.json() == {"error": "Task not found"}


class TestUpdateTask:
    def test_partial_merge(self, client, auth_headers, create_task):
        task = create_task(priority="high", labels=["x"])
        resp = client.put(
            f"/api/v1/tasks/{task['id']}", json={"status": "done"}, headers=auth_headers
        )
        assert resp.status_code == 200
        updated = resp.json()
        assert updated["status"] == "done"
        assert updated["title"] == task["title"]
        assert updated["priority"] == "high"
        assert updated["labels"] == ["x"]
        assert updated["id"] == task["id"]
        assert updated["createdAt"] == task["createdAt"]
        assert updated["links"]["self"] == f"{BASE}/{task['id']}"

    def test_updated_at_strictly_increases(self, client, auth_headers, create_task):
        task = create_task()
        last = task["updatedAt"]
        for title in ("a", "b", "c"):
            resp = client.put(
                f"/api/v1/tasks/{task['id']}", json={"title": title}, headers=auth_headers
            )
            assert resp.json()["updatedAt"] > last
            last = resp.json()["updatedAt"]

    def test_missing_task_404(self, client, auth_headers, stores):
        resp = client.put("/api/v1/tasks/nope", json={"title": "x"}, headers=auth_headers)
        assert resp.status_code == 404
        assert resp.json()["error"] == "Task not found"
        assert len(stores["tasks"]) == 0

    def test_invalid_field_400(self, client, auth_headers, create_task):
        task = create_task()
        resp = client.put(
            f"/api/v1/tasks/{task['id']}", json={"priority": "urgent"}, headers=auth_headers
        )
        assert resp.status_code == 400
        assert resp.json()["issues"][0]["path"] == ["priority"]

    def test_null_field_rejected(self, client, auth_headers, create_task):
        task = create_task()
        resp = client.put(
            f"/api/v1/tasks/{task['id']}", json={"title": None}, headers=auth_headers
        )
        assert resp.status_code == 400
        assert resp.json()["issues"][0]["code"] == "null_not_allowed"

    def test_cannot_overwrite_id(self, client, auth_headers, create_task):
        task = create_task()
        resp = client.put(
            f"/api/v1/tasks/{task['id']}", json={"id": "other"}, headers=auth_headers
        )
        assert resp.status_code == 400

    def test_validation_runs_before_lookup(self, client, auth_headers):
        # Invalid body on a missing task → 400, not 404
        resp = client.put("/api/v1/tasks/nope", json={"title": ""}, headers=auth_headers)
        assert resp.status_code == 400


class TestDeleteTask:
    def test_delete_existing(self, client, auth_headers, create_task):
        task = create_task()
        resp = client.delete(f"/api/v1/tasks/{task['id']}", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json() == {"message": "Task deleted successfully"}
        assert client.get(f"/api/v1/tasks/{task['id']}", headers=auth_headers).status_code == 404

    def test_delete_is_idempotent(self, client, auth_headers):
        for _ in range(2):
            resp = client.delete("/api/v1/tasks/never-existed", headers=auth_headers)
            assert resp.status_code == 200

    def test_comments_survive_task_delete(self, client, auth_headers, create_task):
        task = create_task()
        client.post(
            f"/api/v1/tasks/{task['id']}/comments", json={"content": "hi"}, headers=auth_headers
        )
        client.delete(f"/api/v1/tasks/{task['id']}", headers=auth_headers)
        resp = client.get(f"/api/v1/tasks/{task['id']}/comments", headers=auth_headers)
        assert resp.json()["metadata"]["total"] == 0


class TestListTasks:
    def test_defaults(self, client, auth_headers, create_task):
        for i in range(3):
            create_task(title=f"t{i}")
        resp = client.get("/api/v1/tasks", headers=auth_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["metadata"] == {"total": 3, "page": 1, "limit": 10}
        assert len(body["tasks"]) == 3
        for task in body["tasks"]:
            assert task["links"]["self"] == f"{BASE}/{task['id']}"
        assert body["links"]["self"] == BASE
        assert body["links"]["next"] == f"{BASE}?page=2&limit=10"
        assert body["links"]["prev"] is None

    def test_pagination_pages_are_disjoint(self, client, auth_headers, create_task):
        for i in range(5):
            create_task(title=f"t{i}")
        page1 = client.get("/api/v1/tasks?page=1&limit=2", headers=auth_headers).json()
        page2 = client.get("/api/v1/tasks?page=2&limit=2", headers=auth_headers).json()
        page3 = client.get("/api/v1/tasks?page=3&limit=2", headers=auth_headers).json()
        ids = [t["id"] for p in (page1, page2, page3) for t in p["tasks"]]
        assert len(ids) == 5
        assert len(set(ids)) == 5
        assert page2["links"]["prev"] == f"{BASE}?page=1&limit=2"
        assert page3["links"]["next"] == f"{BASE}?page=4&limit=2"

    def test_next_link_uncapped_past_end(self, client, auth_headers):
        body = client.get("/api/v1/tasks?page=7", headers=auth_headers).json()
        assert body["tasks"] == []
        assert body["links"]["next"] == f"{BASE}?page=8&limit=10"

    def test_status_filter(self, client, auth_headers, create_task):
        done = create_task(title="done one", status="done")
        create_task(title="open one")
        body = client.get("/api/v1/tasks?status=done", headers=auth_headers).json()
        assert [t["id"] for t in body["tasks"]] == [done["id"]]
        assert body["metadata"]["total"] == 1

    def test_status_and_priority_filter(self, client, auth_headers, create_task):
        match = create_task(status="done", priority="low")
        create_task(status="done", priority="high")
        create_task(status="todo", priority="low")
        body = client.get(
            "/api/v1/tasks?status=done&priority=low", headers=auth_headers
        ).json()
        assert [t["id"] for t in body["tasks"]] == [match["id"]]

    def test_filter_applies_after_pagination(self, client, auth_headers, stores):
        # Keys sort lexically, so ids control page membership
        for i, status in enumerate(["todo", "todo", "done", "done"]):
            stores["tasks"]._data[f"task{i}"] = (json.dumps({
                "id": f"task{i}", "title": f"t{i}", "status": status,
                "priority": "medium", "labels": [], "createdAt": 1, "updatedAt": 1,
            }), None)
        body = client.get(
            "/api/v1/tasks?status=done&limit=2&page=1", headers=auth_headers
        ).json()
        # Page 1 holds task0/task1, neither done; done tasks exist on page 2
        assert body["tasks"] == []
        assert body["metadata"]["total"] == 0

    def test_filter_links_keep_filters(self, client, auth_headers):
        body = client.get("/api/v1/tasks?status=done&page=2", headers=auth_headers).json()
        assert "status=done" in body["links"]["next"]
        assert "page=3" in body["links"]["next"]
        assert "page=1" in body["links"]["prev"]

    def test_vanished_key_skipped(self, client, auth_headers, create_task, stores):
        task = create_task()

        real_get = stores["tasks"].get

        async def flaky_get(key):
            if key == task["id"]:
                return None
            return await real_get(key)

        stores["tasks"].get = flaky_get
        body = client.get("/api/v1/tasks", headers=auth_headers).json()
        assert body["tasks"] == []

    @pytest.mark.parametrize("query", [
        "page=0", "limit=0", "page=abc", "limit=-3",
        "page=10000000000000000000", "page=1000001", "limit=1001",
    ])
    def test_bad_paging_params(self, client, auth_headers, query):
        resp = client.get(f"/api/v1/tasks?{query}", headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "Validation failed"

    def test_paging_bounds_inclusive(self, client, auth_headers, create_task):
        create_task(title="only")
        resp = client.get("/api/v1/tasks?page=1000000&limit=1000", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["tasks"] == []
        assert resp.json()["metadata"]["total"] == 0


class TestBuyMilkScenario:
    def test_create_update_filter(self, client, auth_headers):
        created = client.post("/api/v1/tasks", json={"title": "Buy milk"}, headers=auth_headers)
        assert created.status_code == 201
        task = created.json()
        assert (task["status"], task["priority"], task["labels"]) == ("todo", "medium", [])

        updated = client.put(
            f"/api/v1/tasks/{task['id']}", json={"status": "done"}, headers=auth_headers
        )
        assert updated.status_code == 200
        assert updated.json()["status"] == "done"
        assert updated.json()["title"] == "Buy milk"

        listed = client.get("/api/v1/tasks?status=done", headers=auth_headers).json()
        assert [t["id"] for t in listed["tasks"]] == [task["id"]]
