from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping

from .db import InMemoryDatabase
from .errors import NotFound, QuizValidationError, Unauthorized
from .models import QuizDefinition, parse_quiz_definition
from .rewards import RewardDispatcher
from .schemas import RoomSummary
from .session import EventPublisher, RoomSession
from .utils import generate_room_code

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Owns the live rooms, keyed by their shareable code."""

    def __init__(
        self,
        publisher: EventPublisher,
        dispatcher: RewardDispatcher,
        database: InMemoryDatabase,
        *,
        tick_interval: float = 1.0,
        code_factory: Callable[[], str] = generate_room_code,
    ):
        self.publisher = publisher
        self.dispatcher = dispatcher
        self.database = database
        self.tick_interval = tick_interval
        self._code_factory = code_factory
        self._rooms: Dict[str, RoomSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, quiz: QuizDefinition | Mapping[str, Any], host_identity: str) -> RoomSession:
        quiz = parse_quiz_definition(quiz)
        if not host_identity or not host_identity.strip():
            raise QuizValidationError("A host address is required")

        async with self._lock:
            code = self._code_factory()
            while code in self._rooms:
                logger.info("Room code %s already in use, generating another", code)
                code = self._code_factory()
            session = RoomSession(
                code,
                quiz,
                host_identity,
                self.publisher,
                self.dispatcher,
                tick_interval=self.tick_interval,
                on_change=self.snapshot,
            )
            self._rooms[code] = session

        logger.info("Room %s created by %s (%d questions)", code, host_identity, len(quiz.questions))
        await self.snapshot(session)
        return session

    def get(self, room_code: str) -> RoomSession:
        session = self._rooms.get(room_code.strip().upper())
        if session is None:
            raise NotFound("Room not found")
        return session

    def list(self) -> List[RoomSummary]:
        return [session.summary() for session in self._rooms.values()]

    def hosted_by(self, address: str) -> int:
        return sum(1 for session in self._rooms.values() if session.host_identity == address)

    async def delete(self, room_code: str, requester: str) -> None:
        code = room_code.strip().upper()
        async with self._lock:
            session = self._rooms.get(code)
            if session is None:
                raise NotFound("Room not found")
            if requester != session.host_identity:
                raise Unauthorized("Only the host can close the room")
            del self._rooms[code]

        await session.close()
        try:
            await self.database.rooms.delete_many({"room_code": code})
        except Exception:
            logger.exception("Failed to drop snapshot of room %s", code)
        logger.info("Room %s closed by %s", code, requester)

    async def snapshot(self, session: RoomSession) -> None:
        if session.closed:
            return
        try:
            await self.database.rooms.update_one(
                {"room_code": session.room_code, "id": session.id},
                {"$set": session.snapshot()},
                upsert=True,
            )
        except Exception:
            logger.exception("Failed to snapshot room %s", session.room_code)

    async def shutdown(self) -> None:
        async with self._lock:
            sessions = list(self._rooms.values())
            self._rooms.clear()
        for session in sessions:
            session.timer.cancel()
            if session.reward_task is not None and not session.reward_task.done():
                session.reward_task.cancel()
