"""Quiz answer checking and attempt scoring."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from engines.progress import percent


def check_answer(submitted: Any, correct: Any) -> bool:
    """Case-insensitive, whitespace-trimmed exact match for every question type."""
    if submitted is None or correct is None:
        return False
    return str(submitted).strip().lower() == str(correct).strip().lower()


@dataclass
class ScoredAnswer:
    question_id: str
    answer: str
    is_correct: bool
    points: int
    correct_answer: str
    explanation: Optional[str] = None


@dataclass
class ScoredAttempt:
    score: int
    is_passed: bool
    earned_points: int
    total_points: int
    answers: List[ScoredAnswer] = field(default_factory=list)


def score_answers(
    questions: Sequence[Mapping[str, Any]],
    answers: Sequence[Mapping[str, Any]],
    passing_score: int,
) -> ScoredAttempt:
    """Score submitted answers against ``questions``.

    Only questions that received an answer count toward the total, and
    answers naming an unknown question id are ignored. A zero total scores 0.
    """
    by_id: Dict[str, Mapping[str, Any]] = {str(q["id"]): q for q in questions}
    scored: List[ScoredAnswer] = []
    earned = 0
    total = 0
    for submitted in answers:
        question = by_id.get(str(submitted.get("question_id")))
        if question is None:
            continue
        worth = int(question.get("points") or 0)
        correct = check_answer(submitted.get("answer"), question.get("correct_answer"))
        total += worth
        if correct:
            earned += worth
        scored.append(
            ScoredAnswer(
                question_id=str(question["id"]),
                answer=str(submitted.get("answer") or ""),
                is_correct=correct,
                points=worth if correct else 0,
                correct_answer=str(question.get("correct_answer") or ""),
                explanation=question.get("explanation"),
            )
        )
    score = percent(earned, total)
    return ScoredAttempt(
        score=score,
        is_passed=score >= int(passing_score),
        earned_points=earned,
        total_points=total,
        answers=scored,
    )
