import pytest

from engines.progress import calculate_progress, derived_milestone_completion, percent
from engines.quiz_scoring import check_answer, score_answers


@pytest.mark.parametrize("submitted", ["Paris", " paris ", "PARIS"])
def test_answer_matching_ignores_case_and_whitespace(submitted):
    assert check_answer(submitted, "Paris")


@pytest.mark.parametrize("submitted", ["Pariss", "Lyon", "", None])
def test_answer_matching_has_no_partial_credit(submitted):
    assert not check_answer(submitted, "Paris")


QUESTIONS = [
    {"id": "q1", "correct_answer": "Paris", "points": 1, "explanation": "Capital."},
    {"id": "q2", "correct_answer": "True", "points": 1},
    {"id": "q3", "correct_answer": "4", "points": 1},
]


def test_score_counts_only_answered_questions():
    result = score_answers(QUESTIONS, [{"question_id": "q1", "answer": "paris"}, {"question_id": "q2", "answer": "False"}], 70)
    assert result.total_points == 2
    assert result.earned_points == 1
    assert result.score == 50
    assert not result.is_passed
    assert [a.is_correct for a in result.answers] == [True, False]
    assert result.answers[0].explanation == "Capital."


def test_score_rounds_to_nearest_integer():
    answers = [
        {"question_id": "q1", "answer": "Paris"},
        {"question_id": "q2", "answer": "True"},
        {"question_id": "q3", "answer": "5"},
    ]
    result = score_answers(QUESTIONS, answers, 67)
    assert result.score == 67
    assert result.is_passed


def test_passing_is_inclusive_of_threshold():
    result = score_answers(QUESTIONS, [{"question_id": "q1", "answer": "Paris"}], 100)
    assert result.score == 100
    assert result.is_passed


def test_unknown_question_ids_are_ignored_and_empty_total_scores_zero():
    result = score_answers(QUESTIONS, [{"question_id": "nope", "answer": "x"}], 0)
    assert result.total_points == 0
    assert result.score == 0
    assert result.answers == []


def test_zero_point_questions_score_zero():
    result = score_answers([{"id": "z", "correct_answer": "a", "points": 0}], [{"question_id": "z", "answer": "a"}], 70)
    assert result.score == 0
    assert not result.is_passed


def test_percent_rounds_half_up():
    assert percent(1, 2) == 50
    assert percent(1, 8) == 13
    assert percent(2, 3) == 67
    assert percent(5, 0) == 0


def test_plan_progress_from_milestones():
    assert calculate_progress([]) == 0
    assert calculate_progress([{"is_completed": True}, {"is_completed": False}, {"is_completed": False}]) == 33
    assert calculate_progress([{"is_completed": True}, {"is_completed": True}]) == 100


def test_milestone_completion_follows_courses():
    assert derived_milestone_completion([]) is None
    assert derived_milestone_completion([{"is_completed": True}, {"is_completed": False}]) is False
    assert derived_milestone_completion([{"is_completed": True}]) is True
