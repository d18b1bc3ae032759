import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument

from .models import Task, TaskStatus

logger = logging.getLogger(__name__)

_ACTIVE = [TaskStatus.PENDING.value, TaskStatus.RUNNING.value]


class TaskStore:
    """Progress records for long-running background generations."""

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db["tasks"]
        else:
            raise ValueError("TaskStore requires a db or collection")

    async def create_task(self, task_type: str, project_id: Optional[str] = None, total: int = 0) -> Task:
        task = Task(
            id=uuid.uuid4().hex,
            project_id=project_id,
            type=task_type,
            total=total,
            message="Initializing",
        )
        doc = task.model_dump(exclude={"id"}, mode="python")
        doc["_id"] = task.id
        doc["status"] = task.status.value
        await self._col.insert_one(doc)
        logger.info("Task created: %s (%s)", task.id, task_type)
        return task

    async def update_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        """Apply field updates unless the task is already CANCELLED."""
        if "status" in fields and fields["status"] is not None:
            fields["status"] = TaskStatus(fields["status"]).value
        doc = await self._col.find_one_and_update(
            {"_id": task_id, "status": {"$ne": TaskStatus.CANCELLED.value}},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None
        return Task.from_doc(doc)

    async def complete_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        """Mark the task COMPLETED, also over a cancel that came in during the last wave.

        Cancellation only stops waves that have not started, so a batch that ran
        to the end keeps its results. FAILED and COMPLETED tasks are left alone.
        """
        fields["status"] = TaskStatus.COMPLETED.value
        doc = await self._col.find_one_and_update(
            {"_id": task_id, "status": {"$in": _ACTIVE + [TaskStatus.CANCELLED.value]}},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return Task.from_doc(doc) if doc else None

    async def cancel_task(self, task_id: str) -> Optional[Task]:
        doc = await self._col.find_one_and_update(
            {"_id": task_id, "status": {"$in": _ACTIVE}},
            {
                "$set": {
                    "status": TaskStatus.CANCELLED.value,
                    "completed_at": datetime.utcnow(),
                    "message": "Cancelled by user",
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            logger.info("Task cancelled: %s", task_id)
        return Task.from_doc(doc) if doc else None

    async def get_task(self, task_id: str) -> Optional[Task]:
        doc = await self._col.find_one({"_id": task_id})
        return Task.from_doc(doc) if doc else None

    async def list_running(self, project_id: str) -> List[Task]:
        cursor = self._col.find({"project_id": project_id, "status": {"$in": _ACTIVE}}).sort("created_at", -1)
        docs: List[Dict[str, Any]] = await cursor.to_list(length=None)
        return [Task.from_doc(d) for d in docs]
