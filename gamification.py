"""Points ledger, daily streaks and badge awards."""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import yaml

from db import utcnow_iso
from errors import NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent / "data" / "badges.yaml"

# Points for activity outside of badge awards.
COURSE_COMPLETED_POINTS = 20
QUIZ_PASSED_POINTS = 10


class CriteriaKind(str, Enum):
    COURSE_COMPLETED = "course_completed"
    QUIZ_PASSED = "quiz_passed"
    STREAK = "streak"
    QUIZ_ATTEMPTS = "quiz_attempts"
    PLANS_CREATED = "plans_created"
    CHATS_CREATED = "chats_created"
    QUESTIONS_GENERATED = "questions_generated"
    POINTS_EARNED = "points_earned"


@dataclass(frozen=True)
class BadgeCriteria:
    kind: CriteriaKind
    threshold: int = 1

    @classmethod
    def from_descriptor(cls, descriptor: Any) -> Optional["BadgeCriteria"]:
        """Parse a stored ``{type, count}`` descriptor; None when unrecognised."""
        if not isinstance(descriptor, Mapping):
            return None
        try:
            kind = CriteriaKind(str(descriptor.get("type")))
        except ValueError:
            return None
        try:
            threshold = int(descriptor.get("count") or 1)
        except (TypeError, ValueError):
            return None
        return cls(kind=kind, threshold=max(threshold, 1))

    def to_descriptor(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "count": self.threshold}


def next_streak(last_activity: Optional[date], today: date, current: int) -> int:
    """Streak after activity on ``today``.

    Same calendar day keeps the streak, the previous day extends it by one,
    anything else (gap, no history, a date in the future) restarts at 1.
    """
    if last_activity is None:
        return 1
    gap = (today - last_activity).days
    if gap == 0:
        return current
    if gap == 1:
        return current + 1
    return 1


def _activity_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()


def load_badge_catalog(path: Path = DEFAULT_CATALOG_PATH) -> List[Dict[str, Any]]:
    payload = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    badges = payload.get("badges") if isinstance(payload, Mapping) else payload
    catalog = []
    for entry in badges or []:
        criteria = BadgeCriteria.from_descriptor(entry.get("criteria"))
        if not entry.get("name") or criteria is None:
            logger.warning("Skipping malformed catalog badge: %r", entry)
            continue
        catalog.append({**entry, "criteria": criteria.to_descriptor()})
    return catalog


def public_badge(badge: Mapping[str, Any]) -> Dict[str, Any]:
    data = {
        "id": badge["id"],
        "name": badge["name"],
        "description": badge.get("description"),
        "icon": badge.get("icon"),
        "points": int(badge.get("points") or 0),
        "criteria": badge.get("criteria"),
    }
    if badge.get("earned_at"):
        data["earnedAt"] = badge["earned_at"]
    return data


class GamificationService:
    def __init__(self, database, catalog_path: Path = DEFAULT_CATALOG_PATH):
        self.db = database
        self.catalog_path = catalog_path
        self._metrics: Dict[CriteriaKind, Callable[[str, Mapping[str, Any]], int]] = {
            CriteriaKind.COURSE_COMPLETED: lambda uid, _user: self.db.count_completed_courses(uid),
            CriteriaKind.QUIZ_PASSED: lambda uid, _user: self.db.count_passed_quizzes(uid),
            CriteriaKind.STREAK: lambda _uid, user: int(user.get("streak_count") or 0),
            CriteriaKind.QUIZ_ATTEMPTS: lambda uid, _user: self.db.count_quiz_attempts(uid),
            CriteriaKind.PLANS_CREATED: lambda uid, _user: self.db.count_plans(uid),
            CriteriaKind.CHATS_CREATED: lambda uid, _user: self.db.count_chat_sessions(uid),
            CriteriaKind.QUESTIONS_GENERATED: lambda uid, _user: self.db.count_generated_questions(uid),
            CriteriaKind.POINTS_EARNED: lambda _uid, user: int(user.get("points") or 0),
        }

    def _require_user(self, user_id: str) -> Dict[str, Any]:
        user = self.db.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def award_points(self, user_id: str, amount: int, reason: Optional[str] = None) -> None:
        if not self.db.add_points(user_id, amount, utcnow_iso()):
            raise NotFoundError("User not found")
        logger.info("Awarded %s points to %s (%s)", amount, user_id, reason or "unspecified")

    def update_streak(self, user_id: str, today: Optional[date] = None) -> int:
        user = self._require_user(user_id)
        now = datetime.now(timezone.utc)
        today = today or now.date()
        current = int(user.get("streak_count") or 0)
        last = _activity_date(user.get("last_activity_date"))
        streak = next_streak(last, today, current)
        if last != today:
            stamp = datetime.combine(today, now.timetz()).isoformat()
            self.db.set_streak(user_id, streak, stamp)
        return streak

    def criteria_met(self, user: Mapping[str, Any], criteria: BadgeCriteria, cache: Dict[CriteriaKind, int]) -> bool:
        if criteria.kind not in cache:
            cache[criteria.kind] = self._metrics[criteria.kind](user["id"], user)
        return cache[criteria.kind] >= criteria.threshold

    def check_and_award_badges(self, user_id: str) -> List[Dict[str, Any]]:
        """Award every unearned badge whose criteria the user now meets.

        Badge points can unlock points-based badges, so evaluation repeats
        until a pass awards nothing.
        """
        awarded: List[Dict[str, Any]] = []
        while True:
            user = self._require_user(user_id)
            cache: Dict[CriteriaKind, int] = {}
            newly_awarded = []
            for badge in self.db.list_unearned_badges(user_id):
                criteria = BadgeCriteria.from_descriptor(badge.get("criteria"))
                if criteria is None or not self.criteria_met(user, criteria, cache):
                    continue
                if self.award_badge(user_id, badge):
                    newly_awarded.append(public_badge(badge))
            if not newly_awarded:
                return awarded
            awarded.extend(newly_awarded)

    def award_badge(self, user_id: str, badge: Mapping[str, Any]) -> bool:
        # The (user_id, badge_id) unique constraint makes concurrent awards a no-op.
        if not self.db.insert_user_badge(user_id, badge["id"]):
            return False
        points = int(badge.get("points") or 0)
        if points:
            self.award_points(user_id, points, f"badge:{badge['name']}")
        logger.info("User %s earned badge %s", user_id, badge["name"])
        return True

    def record_activity(self, user_id: str, points: int = 0, reason: Optional[str] = None) -> List[Dict[str, Any]]:
        """Streak update, optional activity points, then a badge check."""
        self.update_streak(user_id)
        if points:
            self.award_points(user_id, points, reason)
        return self.check_and_award_badges(user_id)

    def get_user_stats(self, user_id: str) -> Dict[str, Any]:
        user = self._require_user(user_id)
        return {
            "points": int(user.get("points") or 0),
            "streakCount": int(user.get("streak_count") or 0),
            "lastActivityDate": user.get("last_activity_date"),
            "badges": [public_badge(b) for b in self.db.list_user_badges(user_id)],
            "coursesCompleted": self.db.count_completed_courses(user_id),
            "quizzesPassed": self.db.count_passed_quizzes(user_id),
        }

    def get_leaderboard(self, limit: int = 10) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 100))
        return [
            {
                "rank": rank,
                "userId": row["id"],
                "username": row.get("username") or row["email"].split("@", 1)[0],
                "points": int(row.get("points") or 0),
            }
            for rank, row in enumerate(self.db.top_users(limit), start=1)
        ]

    def list_badges(self) -> List[Dict[str, Any]]:
        return [public_badge(b) for b in self.db.list_badges()]

    def seed_badges(self) -> Dict[str, int]:
        """Insert catalog badges that are not present yet; existing rows are left alone."""
        catalog = load_badge_catalog(self.catalog_path)
        created = sum(1 for badge in catalog if self.db.insert_badge_if_absent(badge))
        logger.info("Badge catalog seeded: %s new, %s total", created, len(catalog))
        return {"created": created, "total": self.db.count_badges()}
