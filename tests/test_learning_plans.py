import json

import pytest

from errors import NotFoundError, UpstreamServiceError, ValidationFailed
from learning_plans import LearningPlanService
from fakes import FakeAI, FakeYouTube


def _milestones(n):
    return [{"title": f"Milestone {i + 1}", "subjectId": "math", "orderIndex": i} for i in range(n)]


def _course_json(title="Solving equations", answers=("4", "True")):
    return json.dumps(
        [
            {
                "title": title,
                "description": "Balance both sides.",
                "content": "## Introduction\n...",
                "duration": 200,
                "difficulty": "intermediate",
                "orderIndex": 0,
                "youtubeVideo": {
                    "title": "Equations",
                    "url": "https://www.youtube.com/watch?v=abc",
                    "channelName": "Khan Academy",
                    "duration": "12:00",
                    "description": "Intro",
                },
                "quiz": {
                    "title": "Equations quiz",
                    "passingScore": 50,
                    "questions": [
                        {"question": "2 + 2?", "type": "short_answer", "correctAnswer": answers[0], "points": 1, "orderIndex": 0},
                        {"question": "x = x?", "type": "true_false", "options": ["True", "False"], "correctAnswer": answers[1], "points": 1, "orderIndex": 1},
                    ],
                },
            }
        ]
    )


@pytest.fixture
def service_factory(database, gamification):
    def _factory(ai=None, youtube=None):
        return LearningPlanService(database, ai or FakeAI(), gamification, youtube)

    return _factory


@pytest.fixture
def owner(make_user):
    return make_user()


def test_two_milestone_plan_progress_goes_from_zero_to_hundred(service_factory, owner):
    service = service_factory()
    plan = service.create_plan(owner["id"], "Algebra", "Basics", ["math"], _milestones(2))
    assert plan["progress"] == 0
    assert len(plan["milestones"]) == 2

    first, second = plan["milestones"]
    service.update_milestone(owner["id"], plan["id"], first["id"], {"isCompleted": True})
    assert service.get_plan(owner["id"], plan["id"])["progress"] == 50
    service.update_milestone(owner["id"], plan["id"], second["id"], {"isCompleted": True})
    assert service.get_plan(owner["id"], plan["id"])["progress"] == 100


def test_progress_recompute_is_idempotent(service_factory, owner):
    service = service_factory()
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(3))
    service.update_milestone(owner["id"], plan["id"], plan["milestones"][0]["id"], {"isCompleted": True})

    assert service.recompute_progress(plan["id"]) == 33
    assert service.recompute_progress(plan["id"]) == 33


def test_create_plan_reports_field_errors(service_factory, owner):
    service = service_factory()
    bad = [{"title": "", "subjectId": "math", "orderIndex": 0}, {"title": "Ok", "orderIndex": -1}]
    with pytest.raises(ValidationFailed) as info:
        service.create_plan(owner["id"], "  ", None, [], bad)

    fields = info.value.fields
    assert set(fields) == {"title", "milestones[0].title", "milestones[1].subjectId", "milestones[1].orderIndex"}


def test_other_users_cannot_see_or_mutate_plan(service_factory, owner, make_user):
    service = service_factory()
    intruder = make_user()
    plan = service.create_plan(owner["id"], "Private", None, [], _milestones(1))

    with pytest.raises(NotFoundError):
        service.get_plan(intruder["id"], plan["id"])
    with pytest.raises(NotFoundError):
        service.delete_plan(intruder["id"], plan["id"])
    with pytest.raises(NotFoundError):
        service.update_milestone(intruder["id"], plan["id"], plan["milestones"][0]["id"], {"isCompleted": True})


def test_generate_courses_persists_course_quiz_and_questions(service_factory, owner):
    ai = FakeAI(replies=["Sure! " + _course_json() + " Enjoy."])
    service = service_factory(ai=ai)
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(1))
    milestone_id = plan["milestones"][0]["id"]

    courses = service.generate_courses(owner["id"], plan["id"], milestone_id, count=1)

    assert len(ai.calls) == 1
    assert ai.calls[0]["temperature"] == 0.6
    assert len(courses) == 1
    course = courses[0]
    assert course["title"] == "Solving equations"
    assert course["duration"] == 90
    assert course["youtubeVideo"]["channelName"] == "Khan Academy"
    assert course["quiz"]["passingScore"] == 50
    assert [q["question"] for q in course["quiz"]["questions"]] == ["2 + 2?", "x = x?"]
    assert "correctAnswer" not in course["quiz"]["questions"][0]


def test_generate_courses_reformats_once_then_falls_back(service_factory, owner):
    ai = FakeAI(replies=["not json at all", "still not json"])
    service = service_factory(ai=ai)
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(1))
    milestone = plan["milestones"][0]

    courses = service.generate_courses(owner["id"], plan["id"], milestone["id"], count=2, difficulty="beginner")

    assert len(ai.calls) == 2
    assert ai.calls[1]["temperature"] == 0.1
    assert [c["title"] for c in courses] == ["Milestone 1 - Part 1", "Milestone 1 - Part 2"]
    assert all(c["duration"] == 45 for c in courses)


def test_generate_courses_uses_reformatted_output(service_factory, owner):
    ai = FakeAI(replies=["Course: Equations, 60 minutes", _course_json(title="Reformatted")])
    service = service_factory(ai=ai)
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(1))

    courses = service.generate_courses(owner["id"], plan["id"], plan["milestones"][0]["id"], count=1)
    assert [c["title"] for c in courses] == ["Reformatted"]


def test_generate_courses_survives_upstream_failure(service_factory, owner):
    ai = FakeAI(replies=[UpstreamServiceError("AI service temporarily unavailable")])
    service = service_factory(ai=ai)
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(1))

    courses = service.generate_courses(owner["id"], plan["id"], plan["milestones"][0]["id"], count=1)
    assert courses[0]["title"] == "Milestone 1 - Part 1"


def test_generate_courses_validates_request(service_factory, owner):
    service = service_factory()
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(1))
    milestone_id = plan["milestones"][0]["id"]

    with pytest.raises(ValidationFailed):
        service.generate_courses(owner["id"], plan["id"], milestone_id, count=0)
    with pytest.raises(ValidationFailed):
        service.generate_courses(owner["id"], plan["id"], milestone_id, difficulty="expert")
    with pytest.raises(NotFoundError):
        service.generate_courses(owner["id"], plan["id"], "missing")


def test_missing_videos_are_searched(service_factory, owner):
    raw = json.loads(_course_json())
    del raw[0]["youtubeVideo"]
    youtube = FakeYouTube(
        videos=[
            {
                "title": "Found",
                "url": "https://www.youtube.com/watch?v=found",
                "channelName": "CrashCourse",
                "duration": "10:00",
                "description": "",
            }
        ]
    )
    service = service_factory(ai=FakeAI(replies=[json.dumps(raw)]), youtube=youtube)
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(1))

    course = service.generate_courses(owner["id"], plan["id"], plan["milestones"][0]["id"], count=1)[0]
    assert youtube.queries == ["Solving equations"]
    assert course["youtubeVideo"]["url"] == "https://www.youtube.com/watch?v=found"


def test_milestone_cannot_complete_with_open_courses(service_factory, owner):
    service = service_factory()
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(1))
    milestone_id = plan["milestones"][0]["id"]
    service.add_course(owner["id"], plan["id"], milestone_id, {"title": "Open course", "duration": 10})

    with pytest.raises(ValidationFailed) as info:
        service.update_milestone(owner["id"], plan["id"], milestone_id, {"isCompleted": True})
    assert "isCompleted" in info.value.fields


def test_completing_all_courses_completes_milestone(database, service_factory, owner):
    service = service_factory()
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(2))
    milestone_id = plan["milestones"][0]["id"]
    course = service.add_course(owner["id"], plan["id"], milestone_id, {"title": "Only course", "difficulty": "beginner"})
    assert course["duration"] == 30

    updated = service.update_course(owner["id"], plan["id"], milestone_id, course["id"], {"isCompleted": True})

    assert updated["isCompleted"] is True
    assert database.get_milestone(milestone_id)["is_completed"] is True
    assert service.get_plan(owner["id"], plan["id"])["progress"] == 50
    # 20 for the course plus 10 for the "First Steps" badge.
    assert database.get_user(owner["id"])["points"] == 30


def test_removing_milestone_recomputes_progress(service_factory, owner):
    service = service_factory()
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(2))
    first, second = plan["milestones"]
    service.update_milestone(owner["id"], plan["id"], first["id"], {"isCompleted": True})

    service.remove_milestone(owner["id"], plan["id"], second["id"])
    assert service.get_plan(owner["id"], plan["id"])["progress"] == 100


class TestQuizAttempts:
    @pytest.fixture
    def generated(self, service_factory, owner):
        service = service_factory(ai=FakeAI(replies=[_course_json()]))
        plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(1))
        course = service.generate_courses(owner["id"], plan["id"], plan["milestones"][0]["id"], count=1)[0]
        return service, plan, course

    def test_passing_required_quiz_completes_course_and_plan(self, database, generated, owner):
        service, plan, course = generated
        quiz = course["quiz"]
        q1, q2 = quiz["questions"]

        result = service.submit_quiz_attempt(
            owner["id"],
            quiz["id"],
            [{"questionId": q1["id"], "answer": " 4 "}, {"questionId": q2["id"], "answer": "false"}],
        )

        assert result["score"] == 50
        assert result["isPassed"] is True
        assert result["courseCompleted"] is True
        assert result["answers"][1]["correctAnswer"] == "True"
        assert service.get_plan(owner["id"], plan["id"])["progress"] == 100
        # quiz 10 + course 20 + First Steps 10 + Quiz Master 15
        assert database.get_user(owner["id"])["points"] == 55

    def test_quiz_points_awarded_on_first_pass_only(self, database, generated, owner):
        service, _plan, course = generated
        quiz = course["quiz"]
        answers = [{"questionId": q["id"], "answer": a} for q, a in zip(quiz["questions"], ["4", "True"])]

        service.submit_quiz_attempt(owner["id"], quiz["id"], answers)
        points_after_first = database.get_user(owner["id"])["points"]
        second = service.submit_quiz_attempt(owner["id"], quiz["id"], answers)

        assert second["courseCompleted"] is False
        assert database.get_user(owner["id"])["points"] == points_after_first
        assert len(service.list_quiz_attempts(owner["id"], quiz["id"])) == 2

    def test_failing_attempt_leaves_course_open(self, generated, owner):
        service, plan, course = generated
        quiz = course["quiz"]
        answers = [{"questionId": q["id"], "answer": "wrong"} for q in quiz["questions"]]

        result = service.submit_quiz_attempt(owner["id"], quiz["id"], answers)

        assert result["score"] == 0
        assert result["isPassed"] is False
        assert service.get_plan(owner["id"], plan["id"])["progress"] == 0

    def test_quiz_of_another_user_is_not_found(self, generated, make_user):
        service, _plan, course = generated
        with pytest.raises(NotFoundError):
            service.submit_quiz_attempt(make_user()["id"], course["quiz"]["id"], [])


def test_generate_courses_tolerates_oversized_numbers(service_factory, owner):
    raw = json.loads(_course_json())
    raw[0]["orderIndex"] = 1e20
    raw[0]["quiz"]["passingScore"] = 150
    raw[0]["quiz"]["questions"][0]["points"] = 1e20
    service = service_factory(ai=FakeAI(replies=[json.dumps(raw)]))
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(1))

    courses = service.generate_courses(owner["id"], plan["id"], plan["milestones"][0]["id"], count=1)

    assert courses[0]["orderIndex"] == 0
    assert courses[0]["quiz"]["passingScore"] == 100


def test_failed_generated_insert_leaves_no_course_behind(database, service_factory, owner):
    service = service_factory()
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(1))
    milestone_id = plan["milestones"][0]["id"]
    courses = [
        {
            "title": "Half written",
            "duration": 45,
            "difficulty": "beginner",
            "order_index": 0,
            "quiz": {
                "title": "Quiz",
                "passing_score": 70,
                "questions": [
                    {"question": "Q1?", "type": "short_answer", "correct_answer": "a", "points": 1},
                    {"question": "Q2?", "type": "short_answer", "correct_answer": "b", "points": "many"},
                ],
            },
        }
    ]

    with pytest.raises(ValueError):
        database.insert_generated_courses(milestone_id, courses)

    assert database.list_courses(milestone_id) == []


@pytest.mark.parametrize("order_index", [-1, 2**31, True])
def test_course_order_index_is_validated(service_factory, owner, order_index):
    service = service_factory()
    plan = service.create_plan(owner["id"], "Algebra", None, [], _milestones(1))
    milestone_id = plan["milestones"][0]["id"]

    with pytest.raises(ValidationFailed) as info:
        service.add_course(owner["id"], plan["id"], milestone_id, {"title": "C", "orderIndex": order_index})
    assert "orderIndex" in info.value.fields

    course = service.add_course(owner["id"], plan["id"], milestone_id, {"title": "C"})
    assert course["orderIndex"] == 0
    with pytest.raises(ValidationFailed):
        service.update_course(owner["id"], plan["id"], milestone_id, course["id"], {"orderIndex": order_index})
