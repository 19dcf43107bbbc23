from __future__ import annotations

import asyncio
import copy
import operator
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import ReturnDocument


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    CORS_ORIGINS: str = "http://localhost:5173,http://127.0.0.1:5173"
    CORS_ORIGIN_REGEX: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_STORAGE_CONTAINER: str = "quiz-media"

    LEDGER_URL: Optional[str] = None
    LEDGER_API_KEY: Optional[str] = None
    LEDGER_TIMEOUT_SEC: float = 10.0

    DEFAULT_TIME_PER_QUESTION: int = 30
    DEFAULT_MAX_PLAYERS: int = 10
    MAX_PLAYERS_LIMIT: int = 100
    DEFAULT_QUESTION_POINTS: int = 10
    TIMER_TICK_SECONDS: float = 1.0
    EXPERT_SCORE_PERCENT: int = 80


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


Document = Dict[str, Any]

# Comparison operators understood in queries, e.g. {"seq": {"$gt": 3}}
_QUERY_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$ne": operator.ne,
    "$in": lambda actual, allowed: actual in allowed,
}


def _matches(doc: Document, query: Optional[Document]) -> bool:
    for key, expected in (query or {}).items():
        actual = doc.get(key)
        if isinstance(expected, dict):
            for op, operand in expected.items():
                compare = _QUERY_OPERATORS.get(op)
                if compare is None:
                    raise ValueError(f"Unsupported query operator: {op}")
                if actual is None and op != "$ne":
                    return False
                if not compare(actual, operand):
                    return False
        elif actual != expected:
            return False
    return True


def _apply_update(doc: Document, update: Document, *, inserting: bool = False) -> Document:
    for op, fields in update.items():
        if op == "$set":
            doc.update(copy.deepcopy(fields))
        elif op == "$inc":
            for key, amount in fields.items():
                doc[key] = doc.get(key, 0) + amount
        elif op == "$setOnInsert":
            if inserting:
                doc.update(copy.deepcopy(fields))
        else:
            raise ValueError(f"Unsupported update operator: {op}")
    return doc


def _seed(query: Document) -> Document:
    """Plain equality fields of an upsert query become fields of the new document."""
    return {key: copy.deepcopy(value) for key, value in query.items() if not isinstance(value, dict)}


class InMemoryCursor:
    """Lazy result set supporting the ``sort``/``limit`` chaining used by the stores."""

    def __init__(self, collection: "InMemoryCollection", query: Document):
        self._collection = collection
        self._query = query
        self._order: List[Tuple[str, int]] = []
        self._limit: Optional[int] = None
        self._buffer: Optional[List[Document]] = None

    def sort(self, key: str, direction: int = 1) -> "InMemoryCursor":
        self._order.append((key, direction))
        return self

    def limit(self, limit: int) -> "InMemoryCursor":
        self._limit = limit
        return self

    async def _load(self) -> List[Document]:
        if self._buffer is None:
            docs = await self._collection._select(self._query)
            # Apply the last sort key first so earlier keys take precedence.
            for key, direction in reversed(self._order):
                docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
            if self._limit is not None:
                docs = docs[: self._limit]
            self._buffer = docs
        return self._buffer

    async def to_list(self) -> List[Document]:
        return list(await self._load())

    def __aiter__(self):
        return self

    async def __anext__(self) -> Document:
        docs = await self._load()
        if not docs:
            raise StopAsyncIteration
        return docs.pop(0)


class InMemoryCollection:
    """Async collection with the subset of the pymongo/motor API the stores rely on."""

    def __init__(self):
        self._docs: List[Document] = []
        self._lock = asyncio.Lock()

    async def _select(self, query: Document) -> List[Document]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if _matches(doc, query)]

    def _index_of(self, query: Document) -> Optional[int]:
        return next((i for i, doc in enumerate(self._docs) if _matches(doc, query)), None)

    def find(self, query: Optional[Document] = None) -> InMemoryCursor:
        return InMemoryCursor(self, query or {})

    async def find_one(self, query: Document) -> Optional[Document]:
        async with self._lock:
            idx = self._index_of(query)
            return None if idx is None else copy.deepcopy(self._docs[idx])

    async def insert_one(self, document: Document) -> None:
        async with self._lock:
            self._docs.append(copy.deepcopy(document))

    async def update_one(self, query: Document, update: Document, upsert: bool = False) -> None:
        await self.find_one_and_update(query, update, upsert=upsert)

    async def find_one_and_update(
        self,
        query: Document,
        update: Document,
        *,
        upsert: bool = False,
        return_document: ReturnDocument = ReturnDocument.BEFORE,
    ) -> Optional[Document]:
        async with self._lock:
            idx = self._index_of(query)
            if idx is None:
                if not upsert:
                    return None
                created = _apply_update(_seed(query), update, inserting=True)
                self._docs.append(created)
                return copy.deepcopy(created) if return_document == ReturnDocument.AFTER else None

            before = self._docs[idx]
            after = _apply_update(copy.deepcopy(before), update)
            self._docs[idx] = after
            return copy.deepcopy(after if return_document == ReturnDocument.AFTER else before)

    async def delete_many(self, query: Document) -> int:
        async with self._lock:
            kept = [doc for doc in self._docs if not _matches(doc, query)]
            removed = len(self._docs) - len(kept)
            self._docs = kept
            return removed


class InMemoryDatabase:
    """Process-local stand-in for the document database."""

    def __init__(self):
        self.rooms = InMemoryCollection()
        self.badges = InMemoryCollection()
        self.room_event_counters = InMemoryCollection()
        self.room_events = InMemoryCollection()
