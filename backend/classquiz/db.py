from __future__ import annotations

import asyncio
import copy
from functools import lru_cache
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    NOTIFY_TIMEOUT: float = 10.0

    # Session timing, all in seconds. TIME_SCALE multiplies every wait.
    INTER_QUESTION_PAUSE: float = 2.0
    DEFAULT_QUESTION_TIME: int = 10
    TIME_SCALE: float = 1.0

    TOKEN_BYTES: int = 32
    BCRYPT_ROUNDS: int = 12


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


class InMemoryCursor:
    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._sort: List[Tuple[str, int]] = []
        self._limit: Optional[int] = None
        self._materialised: Optional[Iterator[Dict[str, Any]]] = None

    def sort(self, key: str | Sequence[Tuple[str, int]], direction: int = 1):
        if isinstance(key, str):
            self._sort = [(key, direction)]
        else:
            self._sort = list(key)
        return self

    def limit(self, limit: int):
        self._limit = limit
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = [doc async for doc in self]
        return docs if length is None else docs[:length]

    async def _ensure_materialised(self):
        if self._materialised is not None:
            return

        docs = await self._collection._find_all(self._query)

        # Stable sort applied from the least significant key outwards.
        for key, direction in reversed(self._sort):
            docs.sort(key=lambda d: d.get(key), reverse=direction < 0)

        if self._limit is not None:
            docs = docs[: self._limit]

        self._materialised = iter(docs)

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._ensure_materialised()
        assert self._materialised is not None
        try:
            return next(self._materialised)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class InMemoryCollection:
    """Async subset of the pymongo collection API backed by a list of dicts.

    Supports unique compound indexes: an insert or update that would produce two
    documents with the same values for an indexed key tuple raises
    ``pymongo.errors.DuplicateKeyError``, just as a real server would.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._unique: List[Tuple[Tuple[str, ...], Dict[str, Any]]] = []

    def create_index(self, keys: Iterable[str] | str, unique: bool = False, partial: Dict[str, Any] | None = None):
        fields = (keys,) if isinstance(keys, str) else tuple(keys)
        if unique:
            self._unique.append((fields, partial or {}))
        return "_".join(fields)

    async def _find_all(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if self._matches(doc, query)]

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for doc in self._docs:
                if self._matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    def find(self, query: Dict[str, Any] | None = None):
        return InMemoryCursor(self, query or {})

    async def count_documents(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            return sum(1 for doc in self._docs if self._matches(doc, query))

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._check_unique(updated, skip=idx)
                    self._docs[idx] = updated
                    return

            if upsert:
                new_doc = copy.deepcopy(query)
                new_doc = self._apply_update(new_doc, update)
                self._check_unique(new_doc)
                self._docs.append(new_doc)

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._check_unique(document)
            self._docs.append(copy.deepcopy(document))

    async def delete_one(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    del self._docs[idx]
                    return 1
        return 0

    async def delete_many(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            before = len(self._docs)
            self._docs = [doc for doc in self._docs if not self._matches(doc, query)]
            return before - len(self._docs)

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    original = copy.deepcopy(doc)
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._check_unique(updated, skip=idx)
                    self._docs[idx] = updated
                    return copy.deepcopy(updated if return_document == ReturnDocument.AFTER else original)

            if upsert:
                new_doc = copy.deepcopy(query)
                new_doc = self._apply_update(new_doc, update)
                self._check_unique(new_doc)
                self._docs.append(new_doc)
                if return_document == ReturnDocument.AFTER:
                    return copy.deepcopy(new_doc)
                return None

        return None

    def _check_unique(self, candidate: Dict[str, Any], skip: int | None = None) -> None:
        for fields, partial in self._unique:
            if not self._matches(candidate, partial):
                continue
            key = tuple(candidate.get(f) for f in fields)
            for idx, doc in enumerate(self._docs):
                if idx == skip or not self._matches(doc, partial):
                    continue
                if tuple(doc.get(f) for f in fields) == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {'_'.join(fields)}"
                    )

    def _apply_update(self, doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        for op, payload in update.items():
            if op == "$set":
                for key, value in payload.items():
                    doc[key] = copy.deepcopy(value)
            elif op == "$inc":
                for key, value in payload.items():
                    current = doc.get(key, 0)
                    doc[key] = current + value
            else:  # pragma: no cover - only the above operators are used today
                raise ValueError(f"Unsupported update operator: {op}")
        return doc

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        for key, expected in (query or {}).items():
            actual = doc.get(key)
            if isinstance(expected, dict):
                for op, operand in expected.items():
                    if op == "$gt":
                        if actual is None or actual <= operand:
                            return False
                    elif op == "$ne":
                        if actual == operand:
                            return False
                    elif op == "$in":
                        if actual not in operand:
                            return False
                    else:  # pragma: no cover - extend as new operators are required
                        raise ValueError(f"Unsupported query operator(s): {expected}")
            else:
                if actual != expected:
                    return False
        return True


class InMemoryDatabase:
    def __init__(self):
        self.users = InMemoryCollection("users")
        self.tokens = InMemoryCollection("tokens")
        self.quizzes = InMemoryCollection("quizzes")
        self.questions = InMemoryCollection("questions")
        self.participants = InMemoryCollection("participants")
        self.answers = InMemoryCollection("answers")
        self.teams = InMemoryCollection("teams")
        self.team_members = InMemoryCollection("team_members")
        self.quiz_event_counters = InMemoryCollection("quiz_event_counters")
        self.quiz_events = InMemoryCollection("quiz_events")
        self.ensure_indexes()

    def ensure_indexes(self) -> None:
        self.users.create_index("phone_number", unique=True)
        self.tokens.create_index("token", unique=True)
        self.participants.create_index(["quiz_id", "user_id"], unique=True)
        self.answers.create_index(["question_id", "user_id"], unique=True)
        self.team_members.create_index(["team_id", "user_id"], unique=True)
        # Join codes only need to be unique while a quiz can still be joined.
        self.quizzes.create_index("code", unique=True, partial={"status": {"$ne": "COMPLETED"}})
