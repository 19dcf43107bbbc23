from __future__ import annotations

import math
from typing import Any, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .db import settings
from .errors import QuizValidationError
from .utils import now_ts

GameState = Literal["waiting", "playing", "finished"]
RewardKind = Literal["none", "certificate", "token", "both"]
DistributionRule = Literal["top3", "manual"]

OPTIONS_PER_QUESTION = 4
TOP3_SHARES = [50.0, 30.0, 20.0]
# 1 token = 10^9 base units on the ledger
BASE_UNITS_PER_TOKEN = 1_000_000_000


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Question(CamelModel):
    text: str = Field(min_length=1)
    options: List[str]
    correct_index: int
    points: int = Field(default_factory=lambda: settings.DEFAULT_QUESTION_POINTS, ge=0)
    media_id: Optional[str] = None

    @field_validator("options")
    @classmethod
    def _exactly_four_options(cls, value: List[str]) -> List[str]:
        if len(value) != OPTIONS_PER_QUESTION:
            raise ValueError(f"a question needs exactly {OPTIONS_PER_QUESTION} options")
        return value

    @model_validator(mode="after")
    def _correct_index_in_range(self) -> "Question":
        if not 0 <= self.correct_index < len(self.options):
            raise ValueError("correct_index must point at one of the options")
        return self

    def public(self) -> "PublicQuestion":
        return PublicQuestion(text=self.text, options=list(self.options), points=self.points, media_id=self.media_id)


class PublicQuestion(CamelModel):
    """A question as players see it, without the answer key."""

    text: str
    options: List[str]
    points: int
    media_id: Optional[str] = None


class RewardPolicy(CamelModel):
    kind: RewardKind = "none"
    distribution: DistributionRule = "top3"
    manual_percentages: Optional[List[float]] = None
    pool_amount: float = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_distribution(self) -> "RewardPolicy":
        if self.distribution == "manual":
            if not self.manual_percentages:
                raise ValueError("manual distribution needs a percentage list")
            if any(p <= 0 for p in self.manual_percentages):
                raise ValueError("manual percentages must be positive")
            if not math.isclose(sum(self.manual_percentages), 100.0, abs_tol=1e-9):
                raise ValueError("manual percentages must sum to 100")
        if self.kind in ("token", "both") and self.pool_amount <= 0:
            raise ValueError("token rewards need a positive pool amount")
        return self

    @property
    def pays_tokens(self) -> bool:
        return self.kind in ("token", "both") and self.pool_amount > 0

    def shares(self) -> List[float]:
        if self.distribution == "manual":
            return list(self.manual_percentages or [])
        return list(TOP3_SHARES)

    def pool_base_units(self) -> int:
        return int(self.pool_amount * BASE_UNITS_PER_TOKEN)


class QuizDefinition(CamelModel):
    title: str = "Quiz Challenge"
    description: Optional[str] = None
    cover_media_id: Optional[str] = None
    questions: List[Question] = Field(default_factory=list)
    time_per_question: int = Field(default_factory=lambda: settings.DEFAULT_TIME_PER_QUESTION, ge=1)
    max_players: int = Field(default_factory=lambda: settings.DEFAULT_MAX_PLAYERS, ge=2)
    reward_policy: RewardPolicy = Field(default_factory=RewardPolicy)

    @field_validator("max_players")
    @classmethod
    def _below_limit(cls, value: int) -> int:
        if value > settings.MAX_PLAYERS_LIMIT:
            raise ValueError(f"max_players cannot exceed {settings.MAX_PLAYERS_LIMIT}")
        return value

    @property
    def total_points(self) -> int:
        return sum(q.points for q in self.questions)


def parse_quiz_definition(data: QuizDefinition | Mapping[str, Any]) -> QuizDefinition:
    if isinstance(data, QuizDefinition):
        return data
    try:
        return QuizDefinition.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ()))
        raise QuizValidationError(f"Invalid quiz definition ({where}): {first.get('msg')}") from exc


class Player(CamelModel):
    connection_id: str
    identity: str
    display_name: str
    is_host: bool = False
    score: int = 0
    answers_given: List[Optional[int]] = Field(default_factory=list)
    joined_at: float = Field(default_factory=now_ts)


class LeaderboardEntry(CamelModel):
    identity: str
    display_name: str
    score: int
    rank: int


class Payout(CamelModel):
    identity: str
    display_name: str
    position: int
    percentage: float
    amount: int


class BadgeRequest(CamelModel):
    badge_type: str
    rarity: str
    color: str
    quiz_id: str
    room_id: str
    quiz_title: str
    winner: str
    display_name: str
    score: int
    total_possible: int
    completion_time_ms: int
    position: int
    reward_percentage: float = 0
    reward_amount: int = 0
    media_id: str


class BadgeRecord(BadgeRequest):
    id: str
    ledger_ref: Optional[str] = None
    earned_at: float = Field(default_factory=now_ts)
    is_sealed: bool = False
    sealed_by: Optional[str] = None
    sealed_at: Optional[float] = None


class DispatchItem(CamelModel):
    kind: Literal["badge", "distribution"]
    identity: Optional[str] = None
    ok: bool
    reference: Optional[str] = None
    error: Optional[str] = None


class DispatchReport(CamelModel):
    room_code: str
    results: List[DispatchItem] = Field(default_factory=list)
    payouts: List[Payout] = Field(default_factory=list)

    @property
    def failures(self) -> int:
        return sum(1 for item in self.results if not item.ok)

    @property
    def successes(self) -> int:
        return sum(1 for item in self.results if item.ok)
