import asyncio
import copy
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument


def _matches(doc: Dict[str, Any], filt: Dict[str, Any]) -> bool:
    for key, cond in filt.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in cond):
                return False
            continue
        value = doc.get(key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            for op, arg in cond.items():
                if op == "$in":
                    ok = value in arg
                elif op == "$ne":
                    ok = value != arg
                elif op == "$gte":
                    ok = value is not None and value >= arg
                elif op == "$lte":
                    ok = value is not None and value <= arg
                else:
                    raise NotImplementedError(op)
                if not ok:
                    return False
        elif value != cond:
            return False
    return True


def _apply(doc: Dict[str, Any], update: Dict[str, Any], inserting: bool = False) -> None:
    for op, fields in update.items():
        if op == "$set":
            doc.update(fields)
        elif op == "$inc":
            for k, v in fields.items():
                doc[k] = doc.get(k, 0) + v
        elif op == "$setOnInsert":
            if inserting:
                doc.update(fields)
        else:
            raise NotImplementedError(op)


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, key: str, direction: int = 1) -> "FakeCursor":
        present = [d for d in self._docs if d.get(key) is not None]
        missing = [d for d in self._docs if d.get(key) is None]
        present.sort(key=lambda d: d[key], reverse=direction < 0)
        self._docs = present + missing
        return self

    def skip(self, n: int) -> "FakeCursor":
        self._docs = self._docs[n:]
        return self

    def limit(self, n: int) -> "FakeCursor":
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length: Optional[int] = None):
        return copy.deepcopy(self._docs[: length or len(self._docs)])


class _DeleteResult:
    def __init__(self, deleted_count: int):
        self.deleted_count = deleted_count


class FakeCollection:
    """In-memory stand-in for the subset of AsyncIOMotorCollection we use.

    Every write yields to the event loop first, then applies the whole update
    in one step, like a single-document server-side update.
    """

    def __init__(self, docs: Optional[List[Dict[str, Any]]] = None):
        self.docs: List[Dict[str, Any]] = [copy.deepcopy(d) for d in docs or []]

    def _find(self, filt: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for d in self.docs:
            if _matches(d, filt):
                return d
        return None

    async def insert_one(self, doc: Dict[str, Any]):
        await asyncio.sleep(0)
        self.docs.append(copy.deepcopy(doc))

    async def find_one(self, filt: Dict[str, Any]):
        doc = self._find(filt)
        return copy.deepcopy(doc) if doc else None

    def find(self, filt: Dict[str, Any]) -> FakeCursor:
        return FakeCursor([d for d in self.docs if _matches(d, filt)])

    async def count_documents(self, filt: Dict[str, Any]) -> int:
        return sum(1 for d in self.docs if _matches(d, filt))

    async def find_one_and_update(self, filt, update, upsert=False, return_document=ReturnDocument.BEFORE):
        await asyncio.sleep(0)
        doc = self._find(filt)
        if doc is None:
            if not upsert:
                return None
            doc = {k: v for k, v in filt.items() if not isinstance(v, dict)}
            _apply(doc, update, inserting=True)
            self.docs.append(doc)
            return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else None
        before = copy.deepcopy(doc)
        _apply(doc, update)
        return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else before

    async def update_one(self, filt, update, upsert=False):
        await self.find_one_and_update(filt, update, upsert=upsert)

    async def delete_one(self, filt):
        doc = self._find(filt)
        if doc is None:
            return _DeleteResult(0)
        self.docs.remove(doc)
        return _DeleteResult(1)


class BrokenCollection(FakeCollection):
    """Reads work, every write raises."""

    async def insert_one(self, doc):
        raise RuntimeError("write failed")

    async def find_one_and_update(self, *args, **kwargs):
        raise RuntimeError("write failed")


def model_doc(_id: str, model_id: str, priority: int, **overrides: Any) -> Dict[str, Any]:
    doc = {
        "_id": _id,
        "model_id": model_id,
        "display_name": model_id,
        "api_key": None,
        "rpm": 10,
        "tpm": 100000,
        "rpd": 100,
        "priority": priority,
        "enabled": True,
        "current_minute_requests": 0,
        "current_minute_tokens": 0,
        "current_day_requests": 0,
        "last_reset_minute": None,
        "last_reset_day": None,
        "user_id": None,
    }
    doc.update(overrides)
    return doc
