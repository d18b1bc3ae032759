import asyncio

from fastapi.testclient import TestClient

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from gateway.main import app
from gateway.schemas import GenerationResult
from gateway.settings import Settings
from providers.base import GenerationProvider, ProviderError
from router import BatchDispatcher, ModelSelector, QuotaExhaustedError, Router, TaskRunner, UsageRecorder
from state.call_log import CallLogStore
from state.models import Task
from state.quota import QuotaStore
from state.tasks import TaskStore
from fakes import FakeCollection, model_doc


class _EchoProvider(GenerationProvider):
    def __init__(self):
        self.temperatures = []

    async def generate(self, model_id, credential, prompt, temperature=0.7):
        self.temperatures.append(temperature)
        if prompt == "explode":
            raise ProviderError("Gemini API error: overloaded", status_code=503)
        if prompt == "garbage":
            return GenerationResult(text="<html>", input_tokens=1, output_tokens=1)
        return GenerationResult(text='{"echo": "%s"}' % prompt, input_tokens=2, output_tokens=3)


class _ExhaustedRouter:
    async def run_single(self, prompt, options=None, response_model=None):
        raise QuotaExhaustedError("No AI models available. All quota limits reached.")


def _wire(default_api_key="k", settings=None):
    models = FakeCollection([model_doc("a", "gemini-2.5-flash", priority=1, rpm=60)])
    quota = QuotaStore(collection=models, config_collection=FakeCollection())
    logs = CallLogStore(collection=FakeCollection())
    recorder = UsageRecorder(ModelSelector(quota), quota, logs)
    provider = _EchoProvider()
    router = Router(provider, recorder, quota, default_api_key=default_api_key)
    dispatcher = BatchDispatcher(router)

    app.state.settings = settings or Settings()  # type: ignore[attr-defined]
    app.state.provider = provider  # type: ignore[attr-defined]
    app.state.quota = quota  # type: ignore[attr-defined]
    app.state.logs = logs  # type: ignore[attr-defined]
    app.state.router = router  # type: ignore[attr-defined]
    app.state.dispatcher = dispatcher  # type: ignore[attr-defined]
    app.state.tasks = TaskRunner(dispatcher, TaskStore(collection=FakeCollection()))  # type: ignore[attr-defined]
    return TestClient(app)


def test_health():
    client = _wire()
    assert client.get("/health").json() == {"status": "ok"}


def test_generate_ok_and_usage_visible():
    client = _wire()
    res = client.post("/v1/generate", json={"prompt": "hi", "options": {"operation": "script"}})
    assert res.status_code == 200, res.text
    assert res.json() == {"data": {"echo": "hi"}}

    models = client.get("/v1/models").json()
    assert models[0]["usage"]["minute_requests"] == 1
    assert models[0]["usage"]["minute_tokens"] == 5

    stats = client.get("/v1/usage/stats").json()
    assert stats["total_calls"] == 1
    assert stats["by_operation"]["script"]["tokens"] == 5

    logs = client.get("/v1/usage/logs", params={"status": "SUCCESS"}).json()
    assert logs["total"] == 1


def test_generate_error_mapping():
    client = _wire()
    assert client.post("/v1/generate", json={"prompt": "explode"}).status_code == 503
    assert client.post("/v1/generate", json={"prompt": "garbage"}).status_code == 502

    client = _wire(default_api_key=None)
    res = client.post("/v1/generate", json={"prompt": "hi"})
    assert res.status_code == 400
    assert "API key" in res.json()["detail"]

    app.state.router = _ExhaustedRouter()  # type: ignore[attr-defined]
    assert client.post("/v1/generate", json={"prompt": "hi"}).status_code == 429


def test_generate_validation_error():
    client = _wire()
    res = client.post("/v1/generate", json={"prompt": "hi", "options": {"operation": "poem"}})
    assert res.status_code == 422


def test_batch_returns_per_item_results():
    client = _wire()
    body = {
        "items": [{"id": 1, "prompt": "a"}, {"id": "two", "prompt": "explode"}],
        "options": {"operation": "image-prompts"},
    }
    res = client.post("/v1/batch", json=body)
    assert res.status_code == 200, res.text
    data = res.json()
    by_id = {r["id"]: r for r in data["results"]}
    assert by_id[1]["success"] is True and by_id[1]["data"] == {"echo": "a"}
    assert by_id["two"]["success"] is False
    assert data["succeeded"] == 1 and data["failed"] == 1


def test_task_lookup_and_cancel_unknown():
    client = _wire()
    assert client.get("/v1/tasks/nope").status_code == 404
    assert client.post("/v1/tasks/nope/cancel").status_code == 409


class _StubRunner:
    def __init__(self):
        self.submitted = []

    async def submit(self, requests, task_type, project_id=None, max_concurrency=None):
        self.submitted.append((requests, task_type, project_id, max_concurrency))
        return Task(id="t1", project_id=project_id, type=task_type, total=len(requests))


def test_task_submission_hands_batch_to_runner():
    client = _wire()
    runner = _StubRunner()
    app.state.tasks = runner  # type: ignore[attr-defined]

    body = {"items": [{"id": 1, "prompt": "a"}, {"id": 2, "prompt": "b"}], "project_id": "proj", "max_concurrency": 2}
    res = client.post("/v1/tasks", json=body)

    assert res.status_code == 202
    assert res.json()["status"] == "PENDING"
    requests, task_type, project_id, max_concurrency = runner.submitted[0]
    assert task_type == "GENERATE_BATCH"
    assert project_id == "proj"
    assert max_concurrency == 2
    assert all(r.options.project_id == "proj" for r in requests)


def test_configured_temperature_fills_unset_option():
    client = _wire(settings=Settings(default_temperature=0.1))
    provider = app.state.provider

    client.post("/v1/generate", json={"prompt": "a"})
    client.post("/v1/generate", json={"prompt": "b", "options": {"temperature": 1.2}})
    client.post("/v1/batch", json={"items": [{"id": 1, "prompt": "c"}]})

    assert provider.temperatures == [0.1, 1.2, 0.1]


def test_model_management_routes():
    client = _wire()
    body = {"model_id": "gemini-2.5-pro", "rpm": 5, "tpm": 125000, "rpd": 100, "priority": 2}
    res = client.post("/v1/models", json=body)
    assert res.status_code == 200, res.text
    pro = res.json()
    assert pro["display_name"] == "gemini-2.5-pro"
    assert pro["limits"] == {"rpm": 5, "tpm": 125000, "rpd": 100}
    assert pro["usage"]["day_requests"] == 0

    res = client.post("/v1/models", json={**body, "display_name": "Pro", "enabled": False})
    assert res.json()["id"] == pro["id"]
    assert res.json()["enabled"] is False

    assert client.post("/v1/models/reorder", json={"model_ids": [pro["id"], "a"]}).status_code == 200
    assert [m["id"] for m in client.get("/v1/models").json()] == [pro["id"], "a"]

    assert client.delete(f"/v1/models/{pro['id']}").status_code == 200
    assert client.delete(f"/v1/models/{pro['id']}").status_code == 404
    assert [m["id"] for m in client.get("/v1/models").json()] == ["a"]

    assert client.post("/v1/models", json={**body, "rpm": 0}).status_code == 422


def test_stored_global_credential_is_used_for_generation():
    client = _wire(default_api_key=None)
    assert client.post("/v1/generate", json={"prompt": "hi"}).status_code == 400

    res = client.put("/v1/config/credential", json={"api_key": "stored-key"})
    assert res.json() == {"status": "ok", "scope": "global", "configured": True}
    assert client.post("/v1/generate", json={"prompt": "hi"}).status_code == 200


def test_running_tasks_for_project():
    client = _wire()
    store = app.state.tasks.store
    running = asyncio.run(store.create_task("GENERATE_SCRIPTS", project_id="proj", total=3))
    asyncio.run(store.create_task("GENERATE_OUTLINE", project_id="other", total=1))

    res = client.get("/v1/tasks/running", params={"project_id": "proj"})
    assert res.status_code == 200
    assert [t["id"] for t in res.json()] == [running.id]
    assert client.get("/v1/tasks/running").status_code == 422
