from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .errors import InvalidState, NotFound, QuizRoomError, QuizValidationError
from .events import ErrorEvent, Event, EventStore, LeaderboardUpdate, Pong, event_payload
from .registry import RoomRegistry
from .schemas import JoinRoomIn, SubmitAnswerIn
from .session import RoomSession

logger = logging.getLogger(__name__)


class EventGateway:
    """Binds WebSocket connections to rooms and fans room events out to them."""

    def __init__(self, event_store: EventStore):
        self.event_store = event_store
        self.connections: Dict[str, WebSocket] = {}
        self.subscribers: Dict[str, Set[str]] = {}
        self.bindings: Dict[str, str] = {}

    # -- publisher side ----------------------------------------------------

    async def subscribe(self, room_id: str, connection_id: str) -> None:
        self.subscribers.setdefault(room_id, set()).add(connection_id)

    async def unsubscribe(self, room_id: str, connection_id: str) -> None:
        # A connection belongs to one room at a time, so leaving it frees the binding.
        self.bindings.pop(connection_id, None)
        members = self.subscribers.get(room_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.subscribers[room_id]

    async def close_room(self, room_id: str) -> None:
        for connection_id in self.subscribers.pop(room_id, set()):
            self.bindings.pop(connection_id, None)
        await self.event_store.drop(room_id)

    async def send(self, connection_id: str, event: Event) -> None:
        websocket = self.connections.get(connection_id)
        if websocket is None:
            return
        try:
            await websocket.send_json(event_payload(event))
        except Exception:
            logger.warning("Could not deliver %s to %s", event.type, connection_id)
            self._forget(connection_id)

    async def broadcast(self, room_id: str, event: Event) -> None:
        payload = event_payload(event)
        await self.event_store.append(room_id, payload)
        for connection_id in list(self.subscribers.get(room_id, ())):
            websocket = self.connections.get(connection_id)
            if websocket is None:
                continue
            try:
                await websocket.send_json(payload)
            except Exception:
                logger.warning("Dropping subscriber %s of room %s after failed send", connection_id, room_id)
                self._forget(connection_id)

    def _forget(self, connection_id: str) -> None:
        self.connections.pop(connection_id, None)
        self._drop_subscriptions(connection_id)

    def _release(self, connection_id: str) -> None:
        self.bindings.pop(connection_id, None)
        self._drop_subscriptions(connection_id)

    def _drop_subscriptions(self, connection_id: str) -> None:
        for room_id in [r for r, members in self.subscribers.items() if connection_id in members]:
            self.subscribers[room_id].discard(connection_id)
            if not self.subscribers[room_id]:
                del self.subscribers[room_id]

    # -- connection side ---------------------------------------------------

    async def serve(self, websocket: WebSocket, registry: RoomRegistry) -> None:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self.connections[connection_id] = websocket
        logger.info("Connection %s opened", connection_id)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle(connection_id, raw, registry)
        except WebSocketDisconnect:
            pass
        finally:
            await self.drop(connection_id, registry)

    async def drop(self, connection_id: str, registry: RoomRegistry) -> None:
        self._forget(connection_id)
        room_code = self.bindings.pop(connection_id, None)
        logger.info("Connection %s closed", connection_id)
        if room_code is None:
            return
        try:
            session = registry.get(room_code)
        except NotFound:
            return
        await session.disconnect(connection_id)

    async def handle(self, connection_id: str, raw: str, registry: RoomRegistry) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self.send(connection_id, ErrorEvent(message="Message is not valid JSON", code="validation-error"))
            return
        try:
            await self._dispatch(connection_id, message, registry)
        except QuizRoomError as exc:
            await self.send(connection_id, ErrorEvent(message=exc.message, code=exc.code))
        except ValidationError as exc:
            logger.debug("Rejected malformed message from %s: %s", connection_id, exc)
            await self.send(connection_id, ErrorEvent(message="Malformed message", code="validation-error"))

    async def _dispatch(self, connection_id: str, message: Any, registry: RoomRegistry) -> None:
        kind = message.get("type") if isinstance(message, dict) else None

        if kind == "ping":
            await self.send(connection_id, Pong())
        elif kind == "join-room":
            payload = JoinRoomIn.model_validate(message)
            bound = self.bindings.get(connection_id)
            session = registry.get(payload.room_code)
            if bound is not None and bound != session.room_code:
                if self._seated(connection_id, bound, registry):
                    raise InvalidState(f"Already in room {bound}; leave it first")
                self._release(connection_id)
            await session.join(connection_id, payload.address, payload.nickname)
            self.bindings[connection_id] = session.room_code
        elif kind == "leave-room":
            session = self._bound_session(connection_id, registry)
            try:
                await session.leave(connection_id)
            finally:
                self._release(connection_id)
        elif kind == "submit-answer":
            payload = SubmitAnswerIn.model_validate(message)
            session = self._bound_session(connection_id, registry)
            await session.submit_answer(connection_id, payload.question_index, payload.answer_index)
        elif kind == "start-quiz":
            session = self._bound_session(connection_id, registry)
            await session.start(session.player_for(connection_id).identity)
        elif kind == "next-question":
            session = self._bound_session(connection_id, registry)
            await session.advance(session.player_for(connection_id).identity)
        elif kind == "stop-quiz":
            session = self._bound_session(connection_id, registry)
            await session.stop(session.player_for(connection_id).identity)
        elif kind == "request-leaderboard":
            session = self._bound_session(connection_id, registry)
            await self.send(
                connection_id,
                LeaderboardUpdate(leaderboard=session.leaderboard(), total_players=len(session.players)),
            )
        else:
            raise QuizValidationError(f"Unknown message type: {kind}")

    def _bound_session(self, connection_id: str, registry: RoomRegistry) -> RoomSession:
        room_code = self.bindings.get(connection_id)
        if room_code is None:
            raise InvalidState("Join a room first")
        return registry.get(room_code)

    @staticmethod
    def _seated(connection_id: str, room_code: str, registry: RoomRegistry) -> bool:
        try:
            return connection_id in registry.get(room_code).players
        except NotFound:
            return False
