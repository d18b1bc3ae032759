import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from gateway.schemas import (
    BatchRunRequest,
    BatchRunResponse,
    CredentialRequest,
    GenerateRequest,
    GenerationOptions,
    ModelUpsertRequest,
    ModelUsageView,
    ReorderRequest,
    TaskSubmitRequest,
)
from gateway.settings import Settings, load_settings
from providers.gemini import GeminiProvider
from router import (
    BatchDispatcher,
    ConfigurationError,
    ModelSelector,
    ProviderError,
    QuotaExhaustedError,
    Router,
    TaskRunner,
    UsageRecorder,
    create_batch_requests,
)
from state.call_log import CallLogStore
from state.models import CallStatus, ModelConfig, Operation
from state.mongo import close_mongo, init_mongo
from state.quota import QuotaStore
from state.tasks import TaskStore

logger = logging.getLogger(__name__)

app = FastAPI(title="GenRelay Gateway", version="0.1.0")


@app.on_event("startup")
async def startup_event() -> None:
    settings = load_settings()
    db = await init_mongo()

    quota = QuotaStore(db=db)
    logs = CallLogStore(
        db=db,
        preview_max_chars=settings.preview_max_chars,
        input_cost_per_m=settings.input_cost_per_m,
        output_cost_per_m=settings.output_cost_per_m,
    )
    provider = GeminiProvider(base_url=settings.gemini_base_url, timeout=settings.gemini_timeout)
    recorder = UsageRecorder(ModelSelector(quota), quota, logs)
    router = Router(
        provider,
        recorder,
        quota,
        default_api_key=settings.default_api_key,
        preview_max_chars=settings.preview_max_chars,
    )
    dispatcher = BatchDispatcher(router, default_concurrency=settings.default_concurrency)

    app.state.settings = settings
    app.state.quota = quota
    app.state.logs = logs
    app.state.provider = provider
    app.state.router = router
    app.state.dispatcher = dispatcher
    app.state.tasks = TaskRunner(dispatcher, TaskStore(db=db))

    logger.info("Gateway initialized (default credential %s)", "set" if settings.default_api_key else "unset")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    provider = getattr(app.state, "provider", None)
    if provider is not None:
        await provider.aclose()
    await close_mongo()


def _model_view(m: ModelConfig) -> Dict[str, Any]:
    return ModelUsageView(
        id=m.id,
        model_id=m.model_id,
        display_name=m.display_name,
        priority=m.priority,
        enabled=m.enabled,
        limits={"rpm": m.rpm, "tpm": m.tpm, "rpd": m.rpd},
        usage={
            "minute_requests": m.current_minute_requests,
            "minute_tokens": m.current_minute_tokens,
            "day_requests": m.current_day_requests,
        },
    ).model_dump()


def _with_defaults(options: GenerationOptions) -> GenerationOptions:
    # Configured temperature applies only when the request left it unset
    settings: Optional[Settings] = getattr(app.state, "settings", None)
    if settings is None or "temperature" in options.model_fields_set:
        return options
    return options.model_copy(update={"temperature": settings.default_temperature})


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}


@app.get("/v1/models")
async def list_models(user_id: Optional[str] = None):
    quota: QuotaStore = app.state.quota
    models = await quota.list_models(user_id)
    views: List[Dict[str, Any]] = [_model_view(m) for m in models]
    return JSONResponse(views)


@app.post("/v1/models")
async def upsert_model(req: ModelUpsertRequest):
    quota: QuotaStore = app.state.quota
    model = await quota.upsert_model(
        req.model_id,
        req.display_name or req.model_id,
        rpm=req.rpm,
        tpm=req.tpm,
        rpd=req.rpd,
        priority=req.priority,
        api_key=req.api_key,
        enabled=req.enabled,
        user_id=req.user_id,
    )
    return _model_view(model)


@app.post("/v1/models/reorder")
async def reorder_models(req: ReorderRequest):
    quota: QuotaStore = app.state.quota
    await quota.reorder_models(req.model_ids)
    return {"status": "ok"}


@app.delete("/v1/models/{model_id}")
async def delete_model(model_id: str):
    quota: QuotaStore = app.state.quota
    if not await quota.delete_model(model_id):
        raise HTTPException(status_code=404, detail="Model not found")
    return {"status": "deleted"}


@app.put("/v1/config/credential")
async def set_credential(req: CredentialRequest):
    quota: QuotaStore = app.state.quota
    await quota.set_scope_credential(req.user_id, req.api_key)
    return {"status": "ok", "scope": req.user_id or "global", "configured": bool(req.api_key)}


@app.post("/v1/generate")
async def generate(req: GenerateRequest):
    router: Router = app.state.router
    try:
        data = await router.run_single(req.prompt, _with_defaults(req.options))
    except QuotaExhaustedError as e:
        raise HTTPException(status_code=429, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderError as e:
        status = e.status_code if e.status_code and e.status_code >= 400 else 502
        raise HTTPException(status_code=status, detail=e.message)
    return {"data": data}


@app.post("/v1/batch", response_model=BatchRunResponse)
async def run_batch(req: BatchRunRequest):
    dispatcher: BatchDispatcher = app.state.dispatcher
    requests = create_batch_requests((item.as_pair() for item in req.items), _with_defaults(req.options))
    results = await dispatcher.run_batch(requests, max_concurrency=req.max_concurrency)
    return BatchRunResponse.from_results(results)


@app.post("/v1/tasks", status_code=202)
async def submit_task(req: TaskSubmitRequest):
    runner: TaskRunner = app.state.tasks
    options = _with_defaults(req.options)
    project_id = req.project_id or options.project_id
    if project_id and not options.project_id:
        options = options.model_copy(update={"project_id": project_id})
    requests = create_batch_requests((item.as_pair() for item in req.items), options)
    task = await runner.submit(requests, req.type, project_id=project_id, max_concurrency=req.max_concurrency)
    return task.model_dump(mode="json")


@app.get("/v1/tasks/running")
async def running_tasks(project_id: str):
    runner: TaskRunner = app.state.tasks
    tasks = await runner.store.list_running(project_id)
    return [t.model_dump(mode="json") for t in tasks]


@app.get("/v1/tasks/{task_id}")
async def get_task(task_id: str):
    runner: TaskRunner = app.state.tasks
    task = await runner.store.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task.model_dump(mode="json")


@app.post("/v1/tasks/{task_id}/cancel")
async def cancel_task(task_id: str):
    runner: TaskRunner = app.state.tasks
    task = await runner.cancel(task_id)
    if task is None:
        raise HTTPException(status_code=409, detail="Task is not running")
    return task.model_dump(mode="json")


@app.get("/v1/usage/stats")
async def usage_stats(project_id: Optional[str] = None, operation: Optional[Operation] = None):
    logs: CallLogStore = app.state.logs
    return await logs.get_usage_stats(project_id=project_id, operation=operation)


@app.get("/v1/usage/logs")
async def usage_logs(
    page: int = 1,
    limit: int = 50,
    project_id: Optional[str] = None,
    operation: Optional[Operation] = None,
    status: Optional[CallStatus] = None,
):
    logs: CallLogStore = app.state.logs
    return await logs.list_logs(page=page, limit=limit, project_id=project_id, operation=operation, status=status)
