"""Answer scoring and leaderboard derivation.

Scores only ever grow: a correct answer earns the question's configured
points, anything else earns nothing. There is no speed bonus.
"""

from __future__ import annotations

from typing import Iterable, List

from .models import LeaderboardEntry, Player, Question


def score_answer(question: Question, answer_index: int) -> int:
    return question.points if answer_index == question.correct_index else 0


def compute_leaderboard(players: Iterable[Player]) -> List[LeaderboardEntry]:
    """Rank non-host players by descending score.

    ``players`` must be given in join order; ``sorted`` is stable, so equal
    scores keep that order and ranks stay sequential (1, 2, 3, ...).
    """
    competitors = [p for p in players if not p.is_host]
    ranked = sorted(competitors, key=lambda p: -p.score)
    return [
        LeaderboardEntry(identity=p.identity, display_name=p.display_name, score=p.score, rank=position)
        for position, p in enumerate(ranked, start=1)
    ]
