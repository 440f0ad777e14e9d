"""Learning plans, milestones, courses, AI course generation and quiz attempts.

Every mutation below a plan ends with a full progress recompute of that
plan. Milestone completion follows its courses whenever it has any.
"""
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from db import utcnow_iso
from engines.course_parser import (
    DEFAULT_DIFFICULTY,
    DIFFICULTIES,
    build_generation_prompt,
    build_reformat_prompt,
    clamp_duration,
    fallback_courses,
    normalize_courses,
    normalize_difficulty,
    parse_courses_json,
)
from engines.progress import calculate_progress, derived_milestone_completion
from engines.quiz_scoring import score_answers
from errors import NotFoundError, UpstreamServiceError, ValidationFailed
from gamification import COURSE_COMPLETED_POINTS, QUIZ_PASSED_POINTS

logger = logging.getLogger(__name__)

DEFAULT_COURSE_COUNT = 5
MAX_COURSE_COUNT = 20
GENERATION_TEMPERATURE = 0.6
REFORMAT_TEMPERATURE = 0.1
GENERATION_MAX_TOKENS = 2500
MAX_ORDER_INDEX = 2**31 - 1
ORDER_INDEX_MESSAGE = "orderIndex must be a non-negative integer"


def _question_view(question: Mapping[str, Any], reveal: bool = False) -> Dict[str, Any]:
    view = {
        "id": question["id"],
        "question": question["question"],
        "type": question["type"],
        "options": question.get("options"),
        "points": question["points"],
        "orderIndex": question["order_index"],
    }
    if reveal:
        view["correctAnswer"] = question["correct_answer"]
        view["explanation"] = question.get("explanation")
    return view


def _attempt_view(attempt: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": attempt["id"],
        "quizId": attempt["quiz_id"],
        "score": attempt["score"],
        "isPassed": attempt["is_passed"],
        "createdAt": attempt["created_at"],
    }


def _valid_order_index(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= MAX_ORDER_INDEX


def _milestone_fields(raw: Mapping[str, Any], prefix: str, fields: Dict[str, str]) -> Dict[str, Any]:
    title = str(raw.get("title") or "").strip()
    subject_id = str(raw.get("subjectId") or raw.get("subject_id") or "").strip()
    order_index = raw.get("orderIndex", raw.get("order_index"))
    if not title:
        fields[f"{prefix}title"] = "title is required"
    if not subject_id:
        fields[f"{prefix}subjectId"] = "subjectId is required"
    if not _valid_order_index(order_index):
        fields[f"{prefix}orderIndex"] = ORDER_INDEX_MESSAGE
    return {
        "title": title,
        "description": raw.get("description"),
        "subject_id": subject_id,
        "order_index": order_index,
    }


class LearningPlanService:
    def __init__(self, database, ai_client, gamification, youtube=None):
        self.db = database
        self.ai = ai_client
        self.gamification = gamification
        self.youtube = youtube

    # ---------- views ----------
    def _course_view(self, course: Mapping[str, Any]) -> Dict[str, Any]:
        quizzes = self.db.list_quizzes_for_course(course["id"])
        quiz = None
        if quizzes:
            first = quizzes[0]
            quiz = {
                "id": first["id"],
                "title": first["title"],
                "description": first.get("description"),
                "passingScore": first["passing_score"],
                "isRequired": first["is_required"],
                "questions": [_question_view(q) for q in self.db.list_questions(first["id"])],
            }
        return {
            "id": course["id"],
            "milestoneId": course["milestone_id"],
            "title": course["title"],
            "description": course.get("description"),
            "content": course.get("content"),
            "duration": course["duration"],
            "difficulty": course["difficulty"],
            "orderIndex": course["order_index"],
            "isCompleted": course["is_completed"],
            "completedAt": course.get("completed_at"),
            "youtubeVideo": course.get("youtube_video"),
            "quiz": quiz,
            "createdAt": course["created_at"],
        }

    def _milestone_view(self, milestone: Mapping[str, Any], with_courses: bool = True) -> Dict[str, Any]:
        view = {
            "id": milestone["id"],
            "planId": milestone["plan_id"],
            "title": milestone["title"],
            "description": milestone.get("description"),
            "subjectId": milestone["subject_id"],
            "orderIndex": milestone["order_index"],
            "isCompleted": milestone["is_completed"],
            "completedAt": milestone.get("completed_at"),
        }
        if with_courses:
            view["courses"] = [self._course_view(c) for c in self.db.list_courses(milestone["id"])]
        return view

    def _plan_view(self, plan: Mapping[str, Any]) -> Dict[str, Any]:
        milestones = self.db.list_milestones(plan["id"])
        return {
            "id": plan["id"],
            "userId": plan["user_id"],
            "title": plan["title"],
            "description": plan.get("description"),
            "subjects": plan.get("subjects") or [],
            "progress": plan["progress"],
            "isActive": plan["is_active"],
            "createdAt": plan["created_at"],
            "updatedAt": plan["updated_at"],
            "milestones": [self._milestone_view(m) for m in milestones],
        }

    # ---------- lookups ----------
    def _owned_plan(self, user_id: str, plan_id: str) -> Dict[str, Any]:
        plan = self.db.get_plan(plan_id, user_id)
        if not plan:
            raise NotFoundError("Learning plan not found")
        return plan

    def _owned_milestone(self, user_id: str, plan_id: str, milestone_id: str) -> Dict[str, Any]:
        self._owned_plan(user_id, plan_id)
        milestone = self.db.get_milestone(milestone_id, plan_id)
        if not milestone:
            raise NotFoundError("Milestone not found")
        return milestone

    def _owned_course(self, user_id: str, plan_id: str, milestone_id: str, course_id: str) -> Dict[str, Any]:
        self._owned_milestone(user_id, plan_id, milestone_id)
        course = self.db.get_course(course_id, milestone_id)
        if not course:
            raise NotFoundError("Course not found")
        return course

    # ---------- roll-ups ----------
    def recompute_progress(self, plan_id: str) -> int:
        """Recount completed milestones and store the percentage."""
        progress = calculate_progress(self.db.list_milestones(plan_id))
        self.db.set_plan_progress(plan_id, progress)
        return progress

    def _sync_milestone(self, milestone_id: str) -> None:
        milestone = self.db.get_milestone(milestone_id)
        if not milestone:
            return
        derived = derived_milestone_completion(self.db.list_courses(milestone_id))
        if derived is None or derived == milestone["is_completed"]:
            return
        self.db.update_milestone(
            milestone_id,
            {"is_completed": derived, "completed_at": utcnow_iso() if derived else None},
        )

    def _after_course_change(self, milestone_id: str, plan_id: str) -> None:
        self._sync_milestone(milestone_id)
        self.recompute_progress(plan_id)

    # ---------- plans ----------
    def create_plan(
        self,
        user_id: str,
        title: str,
        description: Optional[str] = None,
        subjects: Optional[Sequence[str]] = None,
        milestones: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> Dict[str, Any]:
        fields: Dict[str, str] = {}
        if not str(title or "").strip():
            fields["title"] = "title is required"
        prepared = [
            _milestone_fields(raw, f"milestones[{index}].", fields)
            for index, raw in enumerate(milestones or [])
        ]
        if fields:
            raise ValidationFailed("Invalid learning plan", fields)

        plan_id = self.db.create_plan(
            user_id,
            str(title).strip(),
            description,
            [str(s) for s in (subjects or [])],
            prepared,
        )
        logger.info("User %s created learning plan %s with %s milestones", user_id, plan_id, len(prepared))
        self.gamification.record_activity(user_id)
        return self._plan_view(self.db.get_plan(plan_id))

    def list_plans(self, user_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "id": row["id"],
                "title": row["title"],
                "description": row.get("description"),
                "progress": row["progress"],
                "isActive": row["is_active"],
                "totalMilestones": int(row["total_milestones"] or 0),
                "completedMilestones": int(row["completed_milestones"] or 0),
                "createdAt": row["created_at"],
            }
            for row in self.db.list_plan_summaries(user_id)
        ]

    def get_plan(self, user_id: str, plan_id: str) -> Dict[str, Any]:
        return self._plan_view(self._owned_plan(user_id, plan_id))

    def update_plan(self, user_id: str, plan_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        self._owned_plan(user_id, plan_id)
        updates: Dict[str, Any] = {}
        if changes.get("title") is not None:
            if not str(changes["title"]).strip():
                raise ValidationFailed("Invalid learning plan", {"title": "title must not be empty"})
            updates["title"] = str(changes["title"]).strip()
        if "description" in changes:
            updates["description"] = changes["description"]
        if changes.get("subjects") is not None:
            updates["subjects"] = [str(s) for s in changes["subjects"]]
        if changes.get("isActive") is not None:
            updates["is_active"] = bool(changes["isActive"])
        if updates:
            self.db.update_plan(plan_id, updates)
        return self._plan_view(self.db.get_plan(plan_id))

    def delete_plan(self, user_id: str, plan_id: str) -> None:
        self._owned_plan(user_id, plan_id)
        self.db.delete_plan(plan_id)
        logger.info("User %s deleted learning plan %s", user_id, plan_id)

    # ---------- milestones ----------
    def add_milestone(self, user_id: str, plan_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        self._owned_plan(user_id, plan_id)
        fields: Dict[str, str] = {}
        prepared = _milestone_fields(data, "", fields)
        if fields:
            raise ValidationFailed("Invalid milestone", fields)
        milestone = self.db.insert_milestone(plan_id, prepared)
        self.recompute_progress(plan_id)
        return self._milestone_view(milestone)

    def update_milestone(self, user_id: str, plan_id: str, milestone_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        milestone = self._owned_milestone(user_id, plan_id, milestone_id)
        updates: Dict[str, Any] = {}
        fields: Dict[str, str] = {}
        if changes.get("title") is not None:
            if not str(changes["title"]).strip():
                fields["title"] = "title must not be empty"
            updates["title"] = str(changes["title"]).strip()
        if "description" in changes:
            updates["description"] = changes["description"]
        if changes.get("subjectId") is not None:
            if not str(changes["subjectId"]).strip():
                fields["subjectId"] = "subjectId must not be empty"
            updates["subject_id"] = str(changes["subjectId"]).strip()
        if changes.get("orderIndex") is not None:
            order_index = changes["orderIndex"]
            if not _valid_order_index(order_index):
                fields["orderIndex"] = ORDER_INDEX_MESSAGE
            updates["order_index"] = order_index
        if changes.get("isCompleted") is not None:
            completed = bool(changes["isCompleted"])
            if completed and derived_milestone_completion(self.db.list_courses(milestone_id)) is False:
                fields["isCompleted"] = "all courses in the milestone must be completed first"
            if completed != milestone["is_completed"]:
                updates["is_completed"] = completed
                updates["completed_at"] = utcnow_iso() if completed else None
        if fields:
            raise ValidationFailed("Invalid milestone update", fields)
        if updates:
            self.db.update_milestone(milestone_id, updates)
        self.recompute_progress(plan_id)
        return self._milestone_view(self.db.get_milestone(milestone_id))

    def remove_milestone(self, user_id: str, plan_id: str, milestone_id: str) -> None:
        self._owned_milestone(user_id, plan_id, milestone_id)
        self.db.delete_milestone(milestone_id)
        self.recompute_progress(plan_id)

    # ---------- courses ----------
    def add_course(self, user_id: str, plan_id: str, milestone_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        self._owned_milestone(user_id, plan_id, milestone_id)
        title = str(data.get("title") or "").strip()
        if not title:
            raise ValidationFailed("Invalid course", {"title": "title is required"})
        order_index = data.get("orderIndex")
        if order_index is None:
            order_index = 0
        if not _valid_order_index(order_index):
            raise ValidationFailed("Invalid course", {"orderIndex": ORDER_INDEX_MESSAGE})
        difficulty = normalize_difficulty(data.get("difficulty"))
        course = self.db.insert_course(
            milestone_id,
            {
                "title": title,
                "description": data.get("description"),
                "content": data.get("content"),
                "duration": clamp_duration(data.get("duration"), difficulty),
                "difficulty": difficulty,
                "order_index": order_index,
                "youtube_video": data.get("youtubeVideo"),
            },
        )
        self._after_course_change(milestone_id, plan_id)
        return self._course_view(course)

    def update_course(
        self, user_id: str, plan_id: str, milestone_id: str, course_id: str, changes: Mapping[str, Any]
    ) -> Dict[str, Any]:
        course = self._owned_course(user_id, plan_id, milestone_id, course_id)
        updates: Dict[str, Any] = {}
        for key, column in (("title", "title"), ("description", "description"), ("content", "content"), ("youtubeVideo", "youtube_video")):
            if key in changes and changes[key] is not None:
                updates[column] = changes[key]
        difficulty = course["difficulty"]
        if changes.get("difficulty") is not None:
            difficulty = normalize_difficulty(changes["difficulty"], difficulty)
            updates["difficulty"] = difficulty
        if changes.get("duration") is not None or "difficulty" in updates:
            duration = changes.get("duration")
            updates["duration"] = clamp_duration(course["duration"] if duration is None else duration, difficulty)
        if changes.get("orderIndex") is not None:
            if not _valid_order_index(changes["orderIndex"]):
                raise ValidationFailed("Invalid course", {"orderIndex": ORDER_INDEX_MESSAGE})
            updates["order_index"] = changes["orderIndex"]
        newly_completed = False
        if changes.get("isCompleted") is not None:
            completed = bool(changes["isCompleted"])
            if completed != course["is_completed"]:
                updates["is_completed"] = completed
                updates["completed_at"] = utcnow_iso() if completed else None
                newly_completed = completed
        if updates:
            self.db.update_course(course_id, updates)
        self._after_course_change(milestone_id, plan_id)
        if newly_completed:
            self.gamification.record_activity(user_id, COURSE_COMPLETED_POINTS, "course completed")
        return self._course_view(self.db.get_course(course_id))

    def remove_course(self, user_id: str, plan_id: str, milestone_id: str, course_id: str) -> None:
        self._owned_course(user_id, plan_id, milestone_id, course_id)
        self.db.delete_course(course_id)
        self._after_course_change(milestone_id, plan_id)

    # ---------- generation ----------
    def _request_courses(self, system_prompt: str, user_message: str) -> List[Dict[str, Any]]:
        """Ask the AI for courses, with one reformatting round-trip on unparseable output."""
        try:
            result = self.ai.generate(
                user_message,
                system_prompt,
                temperature=GENERATION_TEMPERATURE,
                max_tokens=GENERATION_MAX_TOKENS,
            )
        except UpstreamServiceError as exc:
            logger.warning("Course generation call failed (%s): %s", exc.correlation_id, exc.message)
            return []

        courses = parse_courses_json(result.response)
        if courses:
            return courses

        logger.warning("AI course response was not parseable as JSON; requesting a reformat")
        reformat_system, reformat_user = build_reformat_prompt(result.response)
        try:
            reformatted = self.ai.generate(
                reformat_user,
                reformat_system,
                temperature=REFORMAT_TEMPERATURE,
                max_tokens=GENERATION_MAX_TOKENS,
            )
        except UpstreamServiceError as exc:
            logger.warning("Reformat call failed (%s): %s", exc.correlation_id, exc.message)
            return []
        return parse_courses_json(reformatted.response)

    def _attach_videos(self, courses: Iterable[Dict[str, Any]]) -> None:
        if self.youtube is None or not self.youtube.configured:
            return
        for course in courses:
            video = course.get("youtube_video")
            if video and video.get("url"):
                continue
            found = self.youtube.search_educational_videos(course["title"], max_results=5)
            if found:
                best = found[0]
                course["youtube_video"] = {
                    "title": best["title"],
                    "url": best["url"],
                    "channelName": best["channelName"],
                    "duration": best["duration"],
                    "description": best.get("description") or "",
                }

    def generate_courses(
        self,
        user_id: str,
        plan_id: str,
        milestone_id: str,
        count: Optional[int] = None,
        topics: Optional[Sequence[str]] = None,
        difficulty: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        plan = self._owned_plan(user_id, plan_id)
        milestone = self.db.get_milestone(milestone_id, plan_id)
        if not milestone:
            raise NotFoundError("Milestone not found")

        count = DEFAULT_COURSE_COUNT if count is None else count
        if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= MAX_COURSE_COUNT:
            raise ValidationFailed("Invalid generation request", {"count": f"count must be between 1 and {MAX_COURSE_COUNT}"})
        difficulty = str(difficulty or DEFAULT_DIFFICULTY).strip().lower()
        if difficulty not in DIFFICULTIES:
            raise ValidationFailed(
                "Invalid generation request",
                {"difficulty": "difficulty must be one of " + ", ".join(DIFFICULTIES)},
            )
        topic_list = [str(t).strip() for t in (topics or []) if str(t).strip()] or [milestone["title"]]

        system_prompt, user_message = build_generation_prompt(
            plan_title=plan["title"],
            milestone_title=milestone["title"],
            milestone_description=milestone.get("description"),
            count=count,
            difficulty=difficulty,
            topics=topic_list,
        )
        raw_courses = self._request_courses(system_prompt, user_message)
        normalized = normalize_courses(raw_courses, count, difficulty)
        if not normalized:
            logger.warning("AI produced no usable courses for milestone %s; using fallback courses", milestone_id)
            normalized = normalize_courses(fallback_courses(count, milestone["title"], difficulty), count, difficulty)

        self._attach_videos(normalized)
        course_ids = self.db.insert_generated_courses(milestone_id, normalized)
        logger.info("Generated %s courses for milestone %s", len(course_ids), milestone_id)
        self._after_course_change(milestone_id, plan_id)
        return [self._course_view(self.db.get_course(course_id)) for course_id in course_ids]

    # ---------- quizzes ----------
    def _owned_quiz(self, user_id: str, quiz_id: str) -> Dict[str, Any]:
        quiz = self.db.get_quiz_context(quiz_id)
        if not quiz or quiz["owner_id"] != user_id:
            raise NotFoundError("Quiz not found")
        return quiz

    def submit_quiz_attempt(self, user_id: str, quiz_id: str, answers: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
        quiz = self._owned_quiz(user_id, quiz_id)
        submitted = [
            {
                "question_id": answer.get("questionId", answer.get("question_id")),
                "answer": answer.get("answer"),
            }
            for answer in answers
        ]
        previously_passed = any(a["is_passed"] for a in self.db.list_quiz_attempts(user_id, quiz_id))
        scored = score_answers(self.db.list_questions(quiz_id), submitted, quiz["passing_score"])
        attempt = self.db.record_quiz_attempt(
            user_id,
            quiz_id,
            scored.score,
            scored.is_passed,
            [
                {
                    "question_id": a.question_id,
                    "answer": a.answer,
                    "is_correct": a.is_correct,
                    "points": a.points,
                }
                for a in scored.answers
            ],
        )

        course_completed = False
        if scored.is_passed and quiz["is_required"]:
            course = self.db.get_course(quiz["course_id"])
            if course and not course["is_completed"]:
                self.db.update_course(course["id"], {"is_completed": True, "completed_at": utcnow_iso()})
                course_completed = True
            self._after_course_change(quiz["milestone_id"], quiz["plan_id"])

        points = 0
        if scored.is_passed and not previously_passed:
            points += QUIZ_PASSED_POINTS
        if course_completed:
            points += COURSE_COMPLETED_POINTS
        self.gamification.record_activity(user_id, points, "quiz attempt")

        return {
            **_attempt_view(attempt),
            "passingScore": quiz["passing_score"],
            "earnedPoints": scored.earned_points,
            "totalPoints": scored.total_points,
            "courseCompleted": course_completed,
            "answers": [
                {
                    "questionId": a.question_id,
                    "answer": a.answer,
                    "isCorrect": a.is_correct,
                    "points": a.points,
                    "correctAnswer": a.correct_answer,
                    "explanation": a.explanation,
                }
                for a in scored.answers
            ],
        }

    def list_quiz_attempts(self, user_id: str, quiz_id: str) -> List[Dict[str, Any]]:
        self._owned_quiz(user_id, quiz_id)
        return [_attempt_view(a) for a in self.db.list_quiz_attempts(user_id, quiz_id)]
