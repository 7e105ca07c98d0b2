import asyncio

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from specscraper.config import Settings
from specscraper.errors import TransportError
from specscraper.runtime import build_runtime

from conftest import DEVICE_HTML, FakeSearchSource, FakeSessions, candidate

SLUG = "samsung-galaxy-s24-ultra"


@pytest.fixture
def runtime():
    source = FakeSearchSource([candidate("Samsung Galaxy S24 Ultra", SLUG)])
    return asyncio.run(build_runtime(Settings(oracle="none"), search_source=source, sessions=FakeSessions(DEVICE_HTML)))


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


def call(ws, request_id, method, params=None, events=None):
    """Send one request and return its response frame; event frames go to ``events``."""
    ws.send_json({"id": request_id, "method": method, "params": params or {}})
    while True:
        frame = ws.receive_json()
        if "event" in frame:
            if events is not None:
                events.append(frame["event"])
            continue
        assert frame["id"] == request_id
        return frame


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.text == "ok"


def test_health_check_method(client):
    with client.websocket_connect("/ws") as ws:
        frame = call(ws, "1", "health.check")
    assert frame["result"] == {"status": "ok", "store": "memory", "workers": False, "workerCount": 0, "browser": True}


def test_numeric_ids_are_echoed_as_strings(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"id": 7, "method": "queue.stats"})
        frame = ws.receive_json()
    assert frame == {"id": "7", "result": {}}


def test_unknown_method(client):
    with client.websocket_connect("/ws") as ws:
        frame = call(ws, "1", "job.explode")
    assert frame["error"]["code"] == "unknown_method"


def test_invalid_params_list_the_failing_fields(client):
    with client.websocket_connect("/ws") as ws:
        frame = call(ws, "1", "job.start", {"deviceId": "dev-1"})
    error = frame["error"]
    assert error["code"] == "invalid_params"
    fields = {entry["field"] for entry in error["details"]["errors"]}
    assert fields == {"userId", "query"}


def test_malformed_frames_get_an_error_frame(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("{nope")
        not_json = ws.receive_json()
        ws.send_json({"method": "health.check"})
        no_id = ws.receive_json()
    assert not_json == {"id": None, "error": {"code": "invalid_params", "message": "Request is not valid JSON"}}
    assert no_id["id"] is None
    assert no_id["error"]["code"] == "invalid_params"


def test_job_start_rejects_duplicates(client):
    params = {"deviceId": "dev-1", "userId": "user-1", "query": "Galaxy S24 Ultra", "brand": "Samsung"}
    with client.websocket_connect("/ws") as ws:
        started = call(ws, "1", "job.start", params)
        duplicate = call(ws, "2", "job.start", params)
    assert started["result"]["step"] == "searching"
    assert started["result"]["deviceId"] == "dev-1"
    assert started["result"]["request"] == {"query": "Galaxy S24 Ultra", "brand": "Samsung"}
    assert duplicate["error"]["code"] == "duplicate_active_job"
    assert duplicate["error"]["details"]["jobId"] == started["result"]["id"]


def test_cancel_is_owner_only_and_publishes_state(client):
    events = []
    with client.websocket_connect("/ws") as ws:
        call(ws, "1", "job.start", {"deviceId": "dev-1", "userId": "user-1", "query": "Pixel 8"})
        forbidden = call(ws, "2", "job.cancel", {"deviceId": "dev-1", "userId": "user-2"}, events)
        cancelled = call(ws, "3", "job.cancel", {"deviceId": "dev-1", "userId": "user-1"}, events)
        fetched = call(ws, "4", "job.get", {"deviceId": "dev-1"}, events)
    assert forbidden["error"]["code"] == "forbidden"
    assert cancelled["result"]["step"] == "interrupted"
    assert fetched["result"]["error"] == "Cancelled by user"


def test_job_get_for_unknown_device(client):
    with client.websocket_connect("/ws") as ws:
        frame = call(ws, "1", "job.get", {"deviceId": "nope"})
    assert frame["error"]["code"] == "not_found"


def test_job_list_and_queue_items(client):
    with client.websocket_connect("/ws") as ws:
        job = call(ws, "1", "job.start", {"deviceId": "dev-1", "userId": "user-1", "query": "Pixel 8"})["result"]
        call(ws, "2", "job.start", {"deviceId": "dev-2", "userId": "user-2", "query": "Pixel 8"})
        listed = call(ws, "3", "job.list", {"userId": "user-1"})
        items = call(ws, "4", "job.queueItems", {"jobId": job["id"]})
        bad_limit = call(ws, "5", "job.list", {"limit": 0})
    assert [entry["deviceId"] for entry in listed["result"]["jobs"]] == ["dev-1"]
    assert [(item["kind"], item["status"]) for item in items["result"]["items"]] == [("search", "pending")]
    assert bad_limit["error"]["code"] == "invalid_params"

    response = client.get("/jobs", params={"userId": "user-2", "activeOnly": "true"})
    assert response.status_code == 200
    assert [entry["deviceId"] for entry in response.json()["jobs"]] == ["dev-2"]


def test_search_by_name(client):
    with client.websocket_connect("/ws") as ws:
        frame = call(ws, "1", "search.byName", {"query": "Galaxy S24 Ultra", "brand": "Samsung"})
    result = frame["result"]
    assert result["query"] == "Samsung Galaxy S24 Ultra"
    assert result["picked"]["targetId"] == SLUG
    assert result["usedFallback"] is False


def test_preview_then_create_device(client):
    with client.websocket_connect("/ws") as ws:
        missing = call(ws, "1", "device.createFromPreview", {"targetId": SLUG, "userId": "user-1"})
        preview = call(ws, "2", "scrape.preview", {"targetId": SLUG})
        again = call(ws, "3", "scrape.preview", {"targetId": SLUG})
        created = call(ws, "4", "device.createFromPreview", {"targetId": SLUG, "userId": "user-1"})
    assert missing["error"]["code"] == "not_found"
    assert preview["result"]["specs"]["name"] == "Galaxy S24 Ultra"
    assert preview["result"]["fromCache"] is False
    assert again["result"]["fromCache"] is True
    assert created["result"]["name"] == "Samsung Galaxy S24 Ultra"
    assert created["result"]["targetId"] == SLUG


def test_subscribe_streams_events_of_other_connections(client):
    with client.websocket_connect("/ws") as watcher:
        subscribed = call(watcher, "1", "job.subscribe", {"deviceId": "dev-9"})
        with client.websocket_connect("/ws") as starter:
            call(starter, "1", "job.start", {"deviceId": "dev-9", "userId": "user-9", "query": "Pixel 8"})
        frame = watcher.receive_json()
    assert subscribed["result"] == {"deviceId": "dev-9", "job": None}
    assert frame["event"]["type"] == "state"
    assert frame["event"]["step"] == "searching"
    assert frame["event"]["deviceId"] == "dev-9"


def test_job_start_follows_before_the_first_state_event(client):
    events = []
    with client.websocket_connect("/ws") as ws:
        started = call(ws, "1", "job.start", {"deviceId": "dev-1", "userId": "user-1", "query": "Pixel 8"}, events)
        call(ws, "2", "job.get", {"deviceId": "dev-1"}, events)
    states = [e for e in events if e["type"] == "state"]
    assert states[0]["step"] == "searching"
    assert states[0]["jobId"] == started["result"]["id"]


def test_failed_start_does_not_leave_a_subscription_behind(client, runtime):
    params = {"deviceId": "dev-1", "userId": "user-1", "query": "Pixel 8"}
    with client.websocket_connect("/ws") as owner:
        call(owner, "1", "job.start", params)
        with client.websocket_connect("/ws") as other:
            duplicate = call(other, "1", "job.start", params)
            followers = runtime.bus._index.get("dev-1")
            assert duplicate["error"]["code"] == "duplicate_active_job"
            assert followers is not None and len(followers) == 1


def test_search_streams_retry_events_before_the_result():
    source = FakeSearchSource(
        TransportError("busy"),
        TransportError("busy"),
        [candidate("Samsung Galaxy S24 Ultra", SLUG)],
    )
    settings = Settings(oracle="none", search_retry_delay=0.0)
    runtime = asyncio.run(build_runtime(settings, search_source=source, sessions=FakeSessions(DEVICE_HTML)))
    events = []
    with TestClient(create_app(runtime=runtime)) as client:
        with client.websocket_connect("/ws") as ws:
            frame = call(ws, "1", "search.byName", {"query": "Galaxy S24 Ultra", "brand": "Samsung"}, events)
    assert frame["result"]["picked"]["targetId"] == SLUG
    assert [e["type"] for e in events] == ["log", "retry", "retry"]
    assert [(e["attempt"], e["maxAttempts"]) for e in events[1:]] == [(1, 3), (2, 3)]
    assert events[1]["reason"] == "busy"


def test_preview_streams_progress_to_the_caller_only(client):
    events, watched = [], []
    with client.websocket_connect("/ws") as ws, client.websocket_connect("/ws") as bystander:
        call(ws, "1", "scrape.preview", {"targetId": SLUG}, events)
        call(bystander, "1", "queue.stats", events=watched)
    progress = [e for e in events if e["type"] == "progress"]
    assert [e["percent"] for e in progress] == [10, 40, 70, 100]
    assert progress[0]["stage"] == "navigating"
    assert watched == []


def test_bulk_start_pause_resume_and_list(client):
    events = []
    with client.websocket_connect("/ws") as ws:
        started = call(ws, "1", "bulk.start", {"userId": "user-1", "targetIds": [SLUG, "xiaomi-14", SLUG]}, events)
        bulk_id = started["result"]["id"]
        paused = call(ws, "2", "bulk.pause", {"bulkId": bulk_id}, events)
        paused_again = call(ws, "3", "bulk.pause", {"bulkId": bulk_id}, events)
        resumed = call(ws, "4", "bulk.resume", {"bulkId": bulk_id}, events)
        listed = call(ws, "5", "bulk.list", {}, events)
        fetched = call(ws, "6", "bulk.subscribe", {"bulkId": bulk_id}, events)
        missing = call(ws, "7", "bulk.subscribe", {"bulkId": "nope"}, events)
    assert started["result"]["status"] == "running"
    assert started["result"]["total"] == 2
    assert started["result"]["stats"] == {"total": 2, "active": 2, "done": 0, "failed": 0}
    assert paused["result"]["status"] == "paused"
    assert paused_again["error"]["code"] == "invalid_transition"
    assert resumed["result"]["status"] == "running"
    assert [entry["id"] for entry in listed["result"]["bulks"]] == [bulk_id]
    assert listed["result"]["workerCount"] == 0
    assert fetched["result"]["stats"]["active"] == 2
    assert missing["error"]["code"] == "not_found"
    updates = [e["status"] for e in events if e["type"] == "bulk.jobUpdate"]
    assert updates[:3] == ["running", "paused", "running"]
    assert all(e["bulkId"] == bulk_id for e in events if e["type"].startswith("bulk."))


def test_bulk_start_requires_targets(client):
    with client.websocket_connect("/ws") as ws:
        frame = call(ws, "1", "bulk.start", {"userId": "user-1", "targetIds": []})
    assert frame["error"]["code"] == "invalid_params"


def test_set_workers_needs_a_local_pool(client):
    with client.websocket_connect("/ws") as ws:
        frame = call(ws, "1", "bulk.setWorkers", {"workerCount": 3})
    assert frame["error"]["code"] == "configuration_error"


def test_set_workers_resizes_the_running_pool(runtime):
    with TestClient(create_app(runtime=runtime, start_workers=True)) as client:
        with client.websocket_connect("/ws") as ws:
            grown = call(ws, "1", "bulk.setWorkers", {"workerCount": 4})
            health = call(ws, "2", "health.check")
            too_many = call(ws, "3", "bulk.setWorkers", {"workerCount": 51})
            shrunk = call(ws, "4", "bulk.setWorkers", {"workerCount": 1})
    assert grown["result"] == {"workerCount": 4}
    assert health["result"]["workers"] is True
    assert health["result"]["workerCount"] == 4
    assert too_many["error"]["code"] == "invalid_params"
    assert shrunk["result"] == {"workerCount": 1}
    assert runtime.pool.size == 1
