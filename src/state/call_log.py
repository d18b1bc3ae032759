import logging
import math
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument

from .models import CallLog, CallStatus, Operation

logger = logging.getLogger(__name__)

PREVIEW_MAX_CHARS = 500

# USD per 1M tokens
DEFAULT_INPUT_COST_PER_M = 0.075
DEFAULT_OUTPUT_COST_PER_M = 0.30


def _preview(text: Optional[str], limit: int) -> Optional[str]:
    if text is None:
        return None
    return text[:limit]


class CallLogStore:
    """Append/update log with one document per generation attempt."""

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
        preview_max_chars: int = PREVIEW_MAX_CHARS,
        input_cost_per_m: float = DEFAULT_INPUT_COST_PER_M,
        output_cost_per_m: float = DEFAULT_OUTPUT_COST_PER_M,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db["api_call_logs"]
        else:
            raise ValueError("CallLogStore requires a db or collection")
        self._preview_max = preview_max_chars
        self._input_cost = input_cost_per_m
        self._output_cost = output_cost_per_m

    async def insert_log(
        self,
        operation: Operation,
        model_id: Optional[str],
        user_id: Optional[str] = None,
        project_id: Optional[str] = None,
        prompt_preview: Optional[str] = None,
    ) -> str:
        log_id = uuid.uuid4().hex
        doc = {
            "_id": log_id,
            "operation": Operation(operation).value,
            "status": CallStatus.PENDING.value,
            "model_id": model_id,
            "user_id": user_id,
            "project_id": project_id,
            "input_tokens": 0,
            "output_tokens": 0,
            "total_tokens": 0,
            "prompt_preview": _preview(prompt_preview, self._preview_max),
            "response_preview": None,
            "error": None,
            "started_at": datetime.utcnow(),
            "completed_at": None,
            "duration_ms": None,
            "estimated_cost": None,
        }
        await self._col.insert_one(doc)
        return log_id

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        cost = input_tokens / 1_000_000 * self._input_cost + output_tokens / 1_000_000 * self._output_cost
        return round(cost, 6)

    async def update_log(
        self,
        log_id: str,
        status: CallStatus,
        input_tokens: int = 0,
        output_tokens: int = 0,
        response_preview: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[CallLog]:
        """Finalize a PENDING log. A log that is already terminal is left untouched."""
        status = CallStatus(status)
        if status == CallStatus.PENDING:
            raise ValueError("update_log requires a terminal status")

        existing = await self._col.find_one({"_id": log_id})
        if not existing:
            logger.warning("Call log %s not found", log_id)
            return None

        completed_at = datetime.utcnow()
        started_at = existing.get("started_at") or completed_at
        input_tokens = int(input_tokens or 0)
        output_tokens = int(output_tokens or 0)

        doc = await self._col.find_one_and_update(
            {"_id": log_id, "status": CallStatus.PENDING.value},
            {
                "$set": {
                    "status": status.value,
                    "completed_at": completed_at,
                    "duration_ms": int((completed_at - started_at).total_seconds() * 1000),
                    "input_tokens": input_tokens,
                    "output_tokens": output_tokens,
                    "total_tokens": input_tokens + output_tokens,
                    "estimated_cost": self.estimate_cost(input_tokens, output_tokens),
                    "response_preview": _preview(response_preview, self._preview_max),
                    "error": error,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            logger.warning("Call log %s already finalized; ignoring %s", log_id, status.value)
            return None
        return CallLog.from_doc(doc)

    async def get_log(self, log_id: str) -> Optional[CallLog]:
        doc = await self._col.find_one({"_id": log_id})
        return CallLog.from_doc(doc) if doc else None

    async def get_usage_stats(
        self,
        project_id: Optional[str] = None,
        operation: Optional[Operation] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        filt: Dict[str, Any] = {"status": CallStatus.SUCCESS.value}
        if project_id:
            filt["project_id"] = project_id
        if operation:
            filt["operation"] = Operation(operation).value
        if start or end:
            window: Dict[str, datetime] = {}
            if start:
                window["$gte"] = start
            if end:
                window["$lte"] = end
            filt["started_at"] = window

        cursor = self._col.find(filt).sort("started_at", -1)
        calls = [CallLog.from_doc(d) for d in await cursor.to_list(length=None)]

        total_calls = len(calls)
        by_model: Dict[str, Dict[str, Any]] = {}
        by_operation: Dict[str, Dict[str, Any]] = {}
        for call in calls:
            for key, bucket in ((call.model_id or "unknown", by_model), (call.operation.value, by_operation)):
                agg = bucket.setdefault(key, {"calls": 0, "tokens": 0, "cost": 0.0})
                agg["calls"] += 1
                agg["tokens"] += call.total_tokens
                agg["cost"] += call.estimated_cost or 0.0

        return {
            "total_calls": total_calls,
            "total_tokens": sum(c.total_tokens for c in calls),
            "total_cost": sum(c.estimated_cost or 0.0 for c in calls),
            "avg_duration_ms": (sum(c.duration_ms or 0 for c in calls) / total_calls) if total_calls else 0,
            "by_model": by_model,
            "by_operation": by_operation,
            "recent_calls": [c.model_dump(mode="json") for c in calls[:100]],
        }

    async def list_logs(
        self,
        page: int = 1,
        limit: int = 50,
        project_id: Optional[str] = None,
        operation: Optional[Operation] = None,
        status: Optional[CallStatus] = None,
    ) -> Dict[str, Any]:
        filt: Dict[str, Any] = {}
        if project_id:
            filt["project_id"] = project_id
        if operation:
            filt["operation"] = Operation(operation).value
        if status:
            filt["status"] = CallStatus(status).value

        page = max(1, page)
        cursor = self._col.find(filt).sort("started_at", -1).skip((page - 1) * limit).limit(limit)
        docs = await cursor.to_list(length=limit)
        total = await self._col.count_documents(filt)
        calls: List[CallLog] = [CallLog.from_doc(d) for d in docs]
        return {
            "calls": [c.model_dump(mode="json") for c in calls],
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if limit else 0,
        }
