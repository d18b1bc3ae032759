import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument

from .models import ModelConfig

logger = logging.getLogger(__name__)

GLOBAL_CONFIG_ID = "global_config"


def _scope_config_id(user_id: Optional[str]) -> str:
    return f"user:{user_id}" if user_id else GLOBAL_CONFIG_ID


class QuotaStore:
    """Persisted model configurations and their usage counters.

    Counters are only ever changed through single-document atomic updates so
    that concurrent callers (in this process or others) never lose increments.
    """

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
        config_collection: Optional[AsyncIOMotorCollection] = None,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db["ai_models"]
        else:
            raise ValueError("QuotaStore requires a db or collection")

        if config_collection is not None:
            self._config = config_collection
        elif db is not None:
            self._config = db["system_config"]
        else:
            self._config = None

    async def list_enabled_models(self, user_id: Optional[str] = None) -> List[ModelConfig]:
        cursor = self._col.find({"enabled": True, "user_id": user_id}).sort("priority", 1)
        docs = await cursor.to_list(length=None)
        return [ModelConfig.from_doc(d) for d in docs]

    async def list_models(self, user_id: Optional[str] = None) -> List[ModelConfig]:
        cursor = self._col.find({"user_id": user_id}).sort("priority", 1)
        docs = await cursor.to_list(length=None)
        return [ModelConfig.from_doc(d) for d in docs]

    async def get_model(self, model_id: str) -> Optional[ModelConfig]:
        doc = await self._col.find_one({"_id": model_id})
        return ModelConfig.from_doc(doc) if doc else None

    async def reset_and_increment(
        self,
        model_id: str,
        reset_minute: bool = False,
        reset_day: bool = False,
        inc_requests: int = 0,
        inc_tokens: int = 0,
        now: Optional[datetime] = None,
        expected: Optional[Dict[str, Optional[datetime]]] = None,
    ) -> Optional[ModelConfig]:
        """Reset elapsed windows and add usage in one atomic update.

        A reset field is set straight to the increment amount, so resetting and
        counting the same request never needs two writes. ``expected`` carries
        the reset timestamps the caller observed; they join the filter so only
        one caller wins a window reset. Returns the updated model, or None when
        the model is gone or the compare-and-swap lost.
        """
        now = now or datetime.utcnow()
        filt: Dict[str, Any] = {"_id": model_id}
        if expected:
            filt.update(expected)

        set_ops: Dict[str, Any] = {}
        inc_ops: Dict[str, int] = {}
        minute_amounts = {
            "current_minute_requests": int(inc_requests or 0),
            "current_minute_tokens": int(inc_tokens or 0),
        }

        if reset_minute:
            set_ops.update(minute_amounts)
            set_ops["last_reset_minute"] = now
        else:
            inc_ops.update({k: v for k, v in minute_amounts.items() if v})

        if reset_day:
            set_ops["current_day_requests"] = int(inc_requests or 0)
            set_ops["last_reset_day"] = now
        elif inc_requests:
            inc_ops["current_day_requests"] = int(inc_requests)

        update: Dict[str, Any] = {}
        if set_ops:
            update["$set"] = set_ops
        if inc_ops:
            update["$inc"] = inc_ops
        if not update:
            return await self.get_model(model_id)

        doc = await self._col.find_one_and_update(filt, update, return_document=ReturnDocument.AFTER)
        return ModelConfig.from_doc(doc) if doc else None

    async def upsert_model(
        self,
        model_id: str,
        display_name: str,
        rpm: int,
        tpm: int,
        rpd: int,
        priority: int,
        api_key: Optional[str] = None,
        enabled: bool = True,
        user_id: Optional[str] = None,
    ) -> ModelConfig:
        fields = {
            "model_id": model_id,
            "display_name": display_name,
            "api_key": api_key,
            "rpm": int(rpm),
            "tpm": int(tpm),
            "rpd": int(rpd),
            "priority": int(priority),
            "enabled": bool(enabled),
            "user_id": user_id,
        }
        doc = await self._col.find_one_and_update(
            {"model_id": model_id, "user_id": user_id},
            {
                "$set": fields,
                "$setOnInsert": {
                    "_id": uuid.uuid4().hex,
                    "current_minute_requests": 0,
                    "current_minute_tokens": 0,
                    "current_day_requests": 0,
                    "last_reset_minute": None,
                    "last_reset_day": None,
                },
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Upserted model %s (scope=%s, priority=%d)", model_id, user_id or "global", priority)
        return ModelConfig.from_doc(doc)

    async def delete_model(self, model_id: str) -> bool:
        result = await self._col.delete_one({"_id": model_id})
        return bool(getattr(result, "deleted_count", 0))

    async def reorder_models(self, model_ids: List[str]) -> None:
        for position, mid in enumerate(model_ids):
            await self._col.update_one({"_id": mid}, {"$set": {"priority": position + 1}})

    async def get_scope_credential(self, user_id: Optional[str] = None) -> Optional[str]:
        """Owner credential if one is stored, else the global one."""
        if self._config is None:
            return None
        ids = [_scope_config_id(user_id)]
        if user_id:
            ids.append(GLOBAL_CONFIG_ID)
        for cid in ids:
            doc = await self._config.find_one({"_id": cid})
            key = (doc or {}).get("api_key")
            if key:
                return key
        return None

    async def set_scope_credential(self, user_id: Optional[str], api_key: Optional[str]) -> None:
        if self._config is None:
            raise RuntimeError("QuotaStore has no system_config collection")
        await self._config.update_one(
            {"_id": _scope_config_id(user_id)},
            {"$set": {"api_key": api_key, "updated_at": datetime.utcnow()}},
            upsert=True,
        )
