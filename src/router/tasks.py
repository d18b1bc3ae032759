import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Set

from gateway.schemas import BatchRequest
from state.models import Task, TaskStatus
from state.tasks import TaskStore
from .batch import BatchDispatcher
from .errors import BatchCancelledError

logger = logging.getLogger(__name__)


class TaskRunner:
    """Runs batches in the background and mirrors their progress into TaskStore.

    ``submit`` returns as soon as the task record exists. Failures of the
    background job land on the task record and in the log, never with the
    caller that submitted it.
    """

    def __init__(self, dispatcher: BatchDispatcher, store: TaskStore) -> None:
        self._dispatcher = dispatcher
        self._store = store
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._jobs: Set["asyncio.Task[None]"] = set()

    @property
    def store(self) -> TaskStore:
        return self._store

    async def submit(
        self,
        requests: List[BatchRequest],
        task_type: str,
        project_id: Optional[str] = None,
        max_concurrency: Optional[int] = None,
    ) -> Task:
        task = await self._store.create_task(task_type, project_id=project_id, total=len(requests))
        cancel_event = asyncio.Event()
        self._cancel_events[task.id] = cancel_event

        job = asyncio.create_task(self._run(task.id, requests, max_concurrency, cancel_event))
        self._jobs.add(job)
        job.add_done_callback(self._jobs.discard)
        return task

    async def cancel(self, task_id: str) -> Optional[Task]:
        event = self._cancel_events.get(task_id)
        if event is not None:
            event.set()
        return await self._store.cancel_task(task_id)

    async def wait_idle(self) -> None:
        """Wait for every submitted job to finish."""
        if self._jobs:
            await asyncio.gather(*list(self._jobs), return_exceptions=True)

    async def _run(
        self,
        task_id: str,
        requests: List[BatchRequest],
        max_concurrency: Optional[int],
        cancel_event: asyncio.Event,
    ) -> None:
        async def on_progress(completed: int, total: int) -> None:
            await self._store.update_task(
                task_id,
                completed=completed,
                progress=int(completed * 100 / total) if total else 100,
                message=f"Generated {completed}/{total}",
            )

        try:
            await self._store.update_task(task_id, status=TaskStatus.RUNNING, started_at=datetime.utcnow())
            results = await self._dispatcher.run_batch(
                requests,
                on_progress=on_progress,
                max_concurrency=max_concurrency,
                cancel_event=cancel_event,
            )
            failed = sum(1 for r in results if not r.success)
            await self._store.complete_task(
                task_id,
                completed=len(results),
                progress=100,
                completed_at=datetime.utcnow(),
                message=f"Completed with {failed} failed request(s)" if failed else "Completed",
                results=[r.model_dump(mode="json") for r in results],
            )
            logger.info("Task %s completed (%d results, %d failed)", task_id, len(results), failed)
        except BatchCancelledError:
            await self._store.cancel_task(task_id)
            logger.info("Task %s stopped after cancellation", task_id)
        except Exception as e:
            logger.exception("Task %s failed: %s", task_id, e)
            try:
                await self._store.update_task(
                    task_id,
                    status=TaskStatus.FAILED,
                    completed_at=datetime.utcnow(),
                    error=str(e),
                    message="Failed",
                )
            except Exception as store_err:
                logger.warning("Failed to mark task %s as failed: %s", task_id, store_err)
        finally:
            self._cancel_events.pop(task_id, None)
