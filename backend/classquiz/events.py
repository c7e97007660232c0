from __future__ import annotations

from typing import Any, List, Optional

from pymongo import ReturnDocument

from .db import InMemoryDatabase
from .utils import now_ts


class EventStore:
    """Ordered log of every frame broadcast to a quiz room.

    Polling clients read it with ``after=<last seq they saw>``; sequence numbers
    start at 1 and have no gaps within one quiz.
    """

    def __init__(self, db: InMemoryDatabase):
        self.counters = db.quiz_event_counters
        self.log = db.quiz_events

    async def _next_seq(self, quiz_id: str) -> int:
        counter = await self.counters.find_one_and_update(
            {"_id": quiz_id},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    async def append(self, quiz_id: str, payload: dict[str, Any]) -> int:
        seq = await self._next_seq(quiz_id)
        await self.log.insert_one({"quiz_id": quiz_id, "seq": seq, "timestamp": now_ts(), "payload": payload})
        return seq

    async def list(self, quiz_id: str, after: Optional[int] = None, limit: int = 200) -> List[dict[str, Any]]:
        query: dict[str, Any] = {"quiz_id": quiz_id}
        if after is not None:
            query["seq"] = {"$gt": after}
        docs = await self.log.find(query).sort("seq", 1).limit(limit).to_list()
        return [{"seq": d["seq"], "timestamp": d["timestamp"], "payload": d["payload"]} for d in docs]

    async def clear(self, quiz_id: str) -> None:
        await self.log.delete_many({"quiz_id": quiz_id})
        await self.counters.delete_many({"_id": quiz_id})
