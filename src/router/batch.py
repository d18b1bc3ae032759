import asyncio
import inspect
import logging
import math
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple, Type, Union

from pydantic import BaseModel

from gateway.schemas import BatchRequest, BatchResponse, GenerationOptions, RequestId
from .core import Router
from .errors import BatchCancelledError

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5
MIN_CONCURRENCY = 3
MAX_CONCURRENCY = 10
RPM_SAFETY_FACTOR = 0.6
EST_REQUEST_SECONDS = 5

ProgressCallback = Callable[[int, int], Union[None, Awaitable[None]]]


def concurrency_for_rpm(rpm: int) -> int:
    """Requests in flight that keep a model at ~60% of its RPM, clamped to [3, 10]."""
    safe = math.floor(rpm * RPM_SAFETY_FACTOR * EST_REQUEST_SECONDS / 60)
    return min(MAX_CONCURRENCY, max(MIN_CONCURRENCY, safe))


def create_batch_requests(
    prompts: Iterable[Tuple[RequestId, str]],
    options: GenerationOptions,
) -> List[BatchRequest]:
    return [BatchRequest(id=rid, prompt=prompt, options=options) for rid, prompt in prompts]


class BatchDispatcher:
    """Run many generation requests in sequential waves of bounded size.

    A request that fails becomes a ``success=False`` response; only
    cancellation aborts the batch. Results keep submission order, but callers
    should correlate by ``id``.
    """

    def __init__(self, router: Router, default_concurrency: int = DEFAULT_CONCURRENCY) -> None:
        self._router = router
        self._default_concurrency = default_concurrency

    async def resolve_concurrency(self, user_id: Optional[str] = None) -> int:
        try:
            models = await self._router.quota.list_enabled_models(user_id)
        except Exception as e:
            logger.warning("Could not read model limits, using default concurrency: %s", e)
            return self._default_concurrency
        if not models:
            return self._default_concurrency
        return concurrency_for_rpm(models[0].rpm)

    async def run_batch(
        self,
        requests: List[BatchRequest],
        on_progress: Optional[ProgressCallback] = None,
        max_concurrency: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        response_model: Optional[Type[BaseModel]] = None,
    ) -> List[BatchResponse]:
        if not requests:
            return []

        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        if max_concurrency:
            concurrency = max_concurrency
        else:
            concurrency = await self.resolve_concurrency(requests[0].options.user_id)

        total = len(requests)
        waves = math.ceil(total / concurrency)
        logger.info("Dispatching %d requests in %d waves of up to %d", total, waves, concurrency)

        results: List[BatchResponse] = []
        completed = 0

        async def run_one(request: BatchRequest) -> BatchResponse:
            nonlocal completed
            response = await self._execute(request, response_model)
            completed += 1
            await _notify(on_progress, completed, total)
            return response

        for index in range(0, total, concurrency):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Batch cancelled before wave %d/%d", index // concurrency + 1, waves)
                raise BatchCancelledError("Generation cancelled by user")

            wave = requests[index : index + concurrency]
            logger.debug("Starting wave %d/%d (%d requests)", index // concurrency + 1, waves, len(wave))
            results.extend(await asyncio.gather(*(run_one(r) for r in wave)))

        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.warning("Batch finished with %d/%d failed requests", failed, total)
        return results

    async def _execute(self, request: BatchRequest, response_model: Optional[Type[BaseModel]]) -> BatchResponse:
        try:
            data, tokens = await self._router.execute(request.prompt, request.options, response_model=response_model)
        except Exception as e:
            logger.warning("Request %s failed: %s", request.id, e)
            return BatchResponse(id=request.id, success=False, error=str(e))
        return BatchResponse(id=request.id, success=True, data=data, tokens=tokens)


async def _notify(callback: Optional[ProgressCallback], completed: int, total: int) -> None:
    if callback is None:
        return
    try:
        outcome: Any = callback(completed, total)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.warning("Progress callback failed at %d/%d: %s", completed, total, e)
