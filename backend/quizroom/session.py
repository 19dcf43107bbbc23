from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from .errors import InvalidState, NotFound, QuizValidationError, Unauthorized
from .events import (
    AnswerSubmitted,
    Event,
    HostDisconnected,
    LeaderboardUpdate,
    NextQuestion,
    PlayerJoined,
    PlayerLeft,
    QuizFinished,
    QuizStarted,
    QuizStopped,
    RewardsDistributed,
    RoomClosed,
    RoomState,
    TimerUpdate,
)
from .models import GameState, LeaderboardEntry, Player, QuizDefinition
from .rewards import QuizOutcome, RewardDispatcher
from .schemas import RoomDetail, RoomSummary
from .scoring import compute_leaderboard, score_answer
from .timer import RoomTimer
from .utils import now_ts

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    """Push side of the event gateway, addressed by room id or connection id."""

    async def subscribe(self, room_id: str, connection_id: str) -> None:
        ...

    async def unsubscribe(self, room_id: str, connection_id: str) -> None:
        ...

    async def broadcast(self, room_id: str, event: Event) -> None:
        ...

    async def send(self, connection_id: str, event: Event) -> None:
        ...

    async def close_room(self, room_id: str) -> None:
        ...


ChangeCallback = Callable[["RoomSession"], Awaitable[None]]


class RoomSession:
    """Authoritative state of one quiz room.

    Every mutation runs under ``self._lock`` so joins, answers, timer ticks
    and host commands for the same room are applied one at a time. Calls to
    the ledger happen in ``reward_task``, outside the lock.
    """

    def __init__(
        self,
        room_code: str,
        quiz: QuizDefinition,
        host_identity: str,
        publisher: EventPublisher,
        dispatcher: RewardDispatcher,
        *,
        tick_interval: float = 1.0,
        on_change: Optional[ChangeCallback] = None,
    ):
        self.id = uuid.uuid4().hex
        self.room_code = room_code
        self.quiz = quiz
        self.host_identity = host_identity
        self.players: Dict[str, Player] = {}
        self.game_state: GameState = "waiting"
        self.current_question_index = 0
        self.time_remaining = 0
        self.created_at = now_ts()
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.rewards_distributed = False
        self.reward_task: Optional[asyncio.Task] = None
        self.closed = False

        self._publisher = publisher
        self._dispatcher = dispatcher
        self._on_change = on_change
        self._lock = asyncio.Lock()
        self._timer = RoomTimer(room_code, self._on_tick, tick_interval)

    # -- queries -----------------------------------------------------------

    @property
    def timer(self) -> RoomTimer:
        return self._timer

    def leaderboard(self) -> List[LeaderboardEntry]:
        return compute_leaderboard(self.players.values())

    def player_for(self, connection_id: str) -> Player:
        player = self.players.get(connection_id)
        if player is None:
            raise NotFound("You are not a player in this room")
        return player

    def summary(self) -> RoomSummary:
        return RoomSummary(
            id=self.id,
            room_code=self.room_code,
            title=self.quiz.title,
            host_address=self.host_identity,
            current_players=len(self.players),
            max_players=self.quiz.max_players,
            status=self.game_state,
            created_at=self.created_at,
        )

    def detail(self) -> RoomDetail:
        return RoomDetail(
            **self.summary().model_dump(),
            description=self.quiz.description,
            cover_media_id=self.quiz.cover_media_id,
            total_questions=len(self.quiz.questions),
            time_per_question=self.quiz.time_per_question,
            current_question_index=self.current_question_index,
            time_remaining=self.time_remaining,
            started_at=self.started_at,
            finished_at=self.finished_at,
            reward_kind=self.quiz.reward_policy.kind,
            rewards_distributed=self.rewards_distributed,
            leaderboard=self.leaderboard(),
        )

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "room_code": self.room_code,
            "title": self.quiz.title,
            "host_address": self.host_identity,
            "game_state": self.game_state,
            "players": len(self.players),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "rewards_distributed": self.rewards_distributed,
        }

    # -- player commands ---------------------------------------------------

    async def join(self, connection_id: str, identity: str, display_name: str) -> Player:
        async with self._lock:
            self._ensure_open()
            if self.game_state != "waiting":
                raise InvalidState("Game has already started")
            if len(self.players) >= self.quiz.max_players:
                raise InvalidState("Room is full")
            if connection_id in self.players or any(p.identity == identity for p in self.players.values()):
                raise InvalidState("Already joined this room")

            player = Player(
                connection_id=connection_id,
                identity=identity,
                display_name=display_name,
                is_host=identity == self.host_identity,
                answers_given=[None] * len(self.quiz.questions),
            )
            self.players[connection_id] = player
            logger.info("%s (%s) joined room %s", display_name, identity, self.room_code)

            await self._publisher.subscribe(self.id, connection_id)
            await self._broadcast(
                PlayerJoined(
                    player_id=connection_id,
                    nickname=display_name,
                    address=identity,
                    current_players=len(self.players),
                )
            )
            await self._broadcast(self._leaderboard_update())
            await self._broadcast(self._room_state())
            await self._send(connection_id, self._room_state(include_players=True))
        await self._changed()
        return player

    async def leave(self, connection_id: str) -> Player:
        async with self._lock:
            player = self.players.pop(connection_id, None)
            if player is None:
                raise NotFound("You are not a player in this room")
            logger.info("%s left room %s", player.display_name, self.room_code)
            await self._publisher.unsubscribe(self.id, connection_id)
            await self._broadcast(self._player_left(connection_id, player))
            await self._broadcast(self._leaderboard_update())
        await self._changed()
        return player

    async def disconnect(self, connection_id: str) -> None:
        """Handle a dropped connection. A host drop resets the room."""
        async with self._lock:
            player = self.players.pop(connection_id, None)
            if player is None:
                return
            await self._publisher.unsubscribe(self.id, connection_id)

            if player.is_host and self.game_state != "finished":
                logger.info("Host %s disconnected from room %s, resetting", player.identity, self.room_code)
                released = list(self.players)
                self._reset()
                await self._broadcast(HostDisconnected(room_code=self.room_code, game_state=self.game_state))
                # The reset emptied the room; its former players must join again.
                for other in released:
                    await self._publisher.unsubscribe(self.id, other)
            else:
                await self._broadcast(self._player_left(connection_id, player))
                await self._broadcast(self._leaderboard_update())
        await self._changed()

    async def submit_answer(self, connection_id: str, question_index: int, answer_index: int) -> AnswerSubmitted:
        async with self._lock:
            self._ensure_open()
            player = self.player_for(connection_id)
            if self.game_state != "playing":
                raise InvalidState("Quiz is not in progress")
            if player.is_host:
                raise InvalidState("The host does not answer questions")
            if question_index != self.current_question_index:
                raise InvalidState(f"Question {question_index} is not the current question")

            question = self.quiz.questions[question_index]
            if not 0 <= answer_index < len(question.options):
                raise QuizValidationError("Answer index is out of range")
            if player.answers_given[question_index] is not None:
                raise InvalidState("Answer already recorded for this question")

            points = score_answer(question, answer_index)
            player.answers_given[question_index] = answer_index
            player.score += points

            reply = AnswerSubmitted(
                question_index=question_index,
                answer=answer_index,
                is_correct=answer_index == question.correct_index,
                points=points,
            )
            await self._send(connection_id, reply)
            await self._broadcast(self._leaderboard_update())
            return reply

    # -- host commands -----------------------------------------------------

    async def start(self, requester: str) -> None:
        async with self._lock:
            self._ensure_open()
            self._require_host(requester)
            if self.game_state != "waiting":
                raise InvalidState(f"Cannot start a quiz that is {self.game_state}")
            if not self.quiz.questions:
                raise InvalidState("Quiz has no questions")
            if not any(not p.is_host for p in self.players.values()):
                raise InvalidState("At least one player must join before starting")

            self.game_state = "playing"
            self.current_question_index = 0
            self.time_remaining = self.quiz.time_per_question
            self.started_at = now_ts()
            self.finished_at = None
            self._timer.arm()
            logger.info("Quiz started in room %s with %d players", self.room_code, len(self.players))

            await self._broadcast(
                QuizStarted(
                    room_code=self.room_code,
                    quiz_title=self.quiz.title,
                    total_questions=len(self.quiz.questions),
                    time_per_question=self.quiz.time_per_question,
                    question_index=0,
                    question=self.quiz.questions[0].public(),
                    time_remaining=self.time_remaining,
                )
            )
        await self._changed()

    async def stop(self, requester: str) -> None:
        """Pause the quiz. Players, scores and recorded answers are kept."""
        async with self._lock:
            self._ensure_open()
            self._require_host(requester)
            if self.game_state != "playing":
                raise InvalidState("Quiz is not in progress")

            self._timer.cancel()
            self.game_state = "waiting"
            self.current_question_index = 0
            self.time_remaining = 0
            logger.info("Quiz stopped in room %s", self.room_code)

            await self._broadcast(QuizStopped(room_code=self.room_code, game_state=self.game_state))
            await self._broadcast(self._room_state())
        await self._changed()

    async def advance(self, requester: str) -> None:
        async with self._lock:
            self._ensure_open()
            self._require_host(requester)
            if self.game_state != "playing":
                raise InvalidState("Quiz is not in progress")
            await self._advance()
        await self._changed()

    async def finish(self) -> List[LeaderboardEntry]:
        """Finish the quiz. Calling it again on a finished room changes nothing."""
        async with self._lock:
            self._ensure_open()
            if self.game_state == "finished":
                return self.leaderboard()
            if self.game_state != "playing":
                raise InvalidState("Quiz is not in progress")
            leaderboard = await self._finish()
        await self._changed()
        return leaderboard

    async def close(self) -> None:
        async with self._lock:
            if self.closed:
                return
            self.closed = True
            self._timer.cancel()
            await self._broadcast(RoomClosed(room_code=self.room_code))
            await self._publisher.close_room(self.id)

    # -- transitions -------------------------------------------------------

    async def _on_tick(self, generation: int) -> None:
        advanced = False
        async with self._lock:
            if self.game_state != "playing" or not self._timer.is_current(generation):
                return
            self.time_remaining = max(0, self.time_remaining - 1)
            await self._broadcast(
                TimerUpdate(time_remaining=self.time_remaining, current_question=self.current_question_index)
            )
            if self.time_remaining == 0:
                logger.info(
                    "Time up for question %d/%d in room %s",
                    self.current_question_index + 1,
                    len(self.quiz.questions),
                    self.room_code,
                )
                await self._advance()
                advanced = True
        if advanced:
            await self._changed()

    async def _advance(self) -> None:
        if self.current_question_index + 1 < len(self.quiz.questions):
            self.current_question_index += 1
            self.time_remaining = self.quiz.time_per_question
            self._timer.arm()
            await self._broadcast(
                NextQuestion(
                    question_index=self.current_question_index,
                    time_remaining=self.time_remaining,
                    question=self.quiz.questions[self.current_question_index].public(),
                )
            )
        else:
            await self._finish()

    async def _finish(self) -> List[LeaderboardEntry]:
        self._timer.cancel()
        self.game_state = "finished"
        self.finished_at = now_ts()
        leaderboard = self.leaderboard()
        outcome = self._claim_rewards(leaderboard)
        logger.info("Quiz finished in room %s", self.room_code)

        await self._broadcast(
            QuizFinished(
                room_code=self.room_code,
                leaderboard=leaderboard,
                total_questions=len(self.quiz.questions),
                total_players=len(leaderboard),
                reward_kind=self.quiz.reward_policy.kind,
                completion_time_ms=self._completion_time_ms(),
            )
        )
        if outcome is not None:
            self.reward_task = asyncio.create_task(
                self._distribute_rewards(outcome), name=f"room-rewards-{self.room_code}"
            )
        return leaderboard

    def _claim_rewards(self, leaderboard: List[LeaderboardEntry]) -> Optional[QuizOutcome]:
        if self.rewards_distributed:
            return None
        self.rewards_distributed = True
        return QuizOutcome(
            room_id=self.id,
            room_code=self.room_code,
            quiz_title=self.quiz.title,
            host_identity=self.host_identity,
            reward_policy=self.quiz.reward_policy,
            leaderboard=tuple(leaderboard),
            total_possible=self.quiz.total_points,
            completion_time_ms=self._completion_time_ms(),
        )

    async def _distribute_rewards(self, outcome: QuizOutcome) -> None:
        try:
            report = await self._dispatcher.dispatch(outcome)
        except Exception as exc:
            logger.exception("Reward dispatch crashed for room %s", self.room_code)
            event = RewardsDistributed(
                room_code=self.room_code, success=False, successes=0, failures=0, results=[], error=str(exc)
            )
        else:
            event = RewardsDistributed(
                room_code=self.room_code,
                success=report.failures == 0,
                successes=report.successes,
                failures=report.failures,
                results=report.results,
            )
        async with self._lock:
            if self.closed:
                logger.info("Room %s closed before rewards settled; outcome not broadcast", self.room_code)
                return
            await self._broadcast(event)

    def _reset(self) -> None:
        self._timer.cancel()
        self.game_state = "waiting"
        self.current_question_index = 0
        self.time_remaining = 0
        self.started_at = None
        self.finished_at = None
        self.players.clear()

    # -- helpers -----------------------------------------------------------

    def _ensure_open(self) -> None:
        if self.closed:
            raise NotFound("Room has been closed")

    def _require_host(self, requester: str) -> None:
        if requester != self.host_identity:
            raise Unauthorized("Only the host can control this quiz")

    def _completion_time_ms(self) -> int:
        if self.started_at is None or self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at) * 1000)

    def _leaderboard_update(self) -> LeaderboardUpdate:
        return LeaderboardUpdate(leaderboard=self.leaderboard(), total_players=len(self.players))

    def _player_left(self, connection_id: str, player: Player) -> PlayerLeft:
        return PlayerLeft(
            player_id=connection_id,
            nickname=player.display_name,
            address=player.identity,
            current_players=len(self.players),
        )

    def _room_state(self, include_players: bool = False) -> RoomState:
        return RoomState(
            room_code=self.room_code,
            quiz_title=self.quiz.title,
            game_state=self.game_state,
            current_players=len(self.players),
            max_players=self.quiz.max_players,
            current_question_index=self.current_question_index,
            time_remaining=self.time_remaining,
            leaderboard=self.leaderboard(),
            players=list(self.players.values()) if include_players else None,
        )

    async def _broadcast(self, event: Event) -> None:
        try:
            await self._publisher.broadcast(self.id, event)
        except Exception:
            logger.exception("Failed to broadcast %s to room %s", event.type, self.room_code)

    async def _send(self, connection_id: str, event: Event) -> None:
        try:
            await self._publisher.send(connection_id, event)
        except Exception:
            logger.exception("Failed to send %s to %s", event.type, connection_id)

    async def _changed(self) -> None:
        if self._on_change is not None:
            await self._on_change(self)
