import logging
import os
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

logger = logging.getLogger(__name__)

DEFAULT_URI = "mongodb://localhost:27017/genrelay"

# collection -> (keys, index options)
INDEXES: Dict[str, List[Tuple[List[Tuple[str, int]], Dict[str, Any]]]] = {
    "ai_models": [
        ([("user_id", 1), ("enabled", 1), ("priority", 1)], {"name": "scope_enabled_priority_v1"}),
        ([("model_id", 1), ("user_id", 1)], {"name": "model_scope_unique_v1", "unique": True}),
    ],
    "api_call_logs": [
        ([("started_at", -1)], {"name": "started_at_desc_v1"}),
        ([("project_id", 1), ("operation", 1), ("status", 1)], {"name": "project_op_status_v1"}),
    ],
    "tasks": [
        ([("project_id", 1), ("status", 1), ("created_at", -1)], {"name": "project_status_v1"}),
    ],
}

_client: Optional[AsyncIOMotorClient] = None


def _db_name(uri: str) -> str:
    path = urlparse(uri).path.lstrip("/")
    return path or os.getenv("MONGODB_DB", "genrelay")


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


async def init_mongo(uri: Optional[str] = None) -> AsyncIOMotorDatabase:
    """Connect, ping, and create the indexes the stores query by.

    The URI comes from MONGODB_URI unless given; pool sizes and timeouts from
    MONGODB_MAX_POOL_SIZE, MONGODB_MIN_POOL_SIZE, MONGODB_CONNECT_TIMEOUT_MS
    and MONGODB_SOCKET_TIMEOUT_MS.
    """
    global _client

    uri = uri or os.getenv("MONGODB_URI", DEFAULT_URI)
    _client = AsyncIOMotorClient(
        uri,
        maxPoolSize=_int_env("MONGODB_MAX_POOL_SIZE", 100),
        minPoolSize=_int_env("MONGODB_MIN_POOL_SIZE", 0),
        connectTimeoutMS=_int_env("MONGODB_CONNECT_TIMEOUT_MS", 10000),
        socketTimeoutMS=_int_env("MONGODB_SOCKET_TIMEOUT_MS", 20000),
    )
    name = _db_name(uri)
    db = _client[name]

    try:
        await db.command("ping")
        logger.info("Connected to MongoDB database '%s'", name)
    except Exception as e:  # pragma: no cover
        logger.warning("MongoDB ping failed: %s", e)

    await _ensure_indexes(db)
    return db


async def close_mongo() -> None:
    global _client
    if _client is not None:
        _client.close()
    _client = None


async def _ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    for collection, specs in INDEXES.items():
        for keys, options in specs:
            try:
                await db[collection].create_index(keys, **options)
            except Exception as e:  # pragma: no cover - a missing index only slows queries
                logger.warning("Failed to ensure index %s on %s: %s", options.get("name"), collection, e)
    logger.info("MongoDB indexes ensured for %s", ", ".join(INDEXES))
