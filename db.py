"""Persistence gateway: schema plus typed accessors over SQLite.

Rows come back as plain dicts with JSON columns decoded and integer flags
turned into booleans. Services never build SQL themselves.
"""
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
from uuid import uuid4

from db_pool import SQLiteConnectionPool

_JSON_COLUMNS = {"messages", "subjects", "youtube_video", "options", "criteria", "embedding", "source_chunk_ids"}
_BOOL_COLUMNS = {"is_active", "is_completed", "is_required", "is_passed", "is_correct"}

SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
  id                  TEXT PRIMARY KEY,
  email               TEXT NOT NULL UNIQUE,
  username            TEXT,
  pw_hash             TEXT NOT NULL,
  pw_salt             TEXT NOT NULL,
  role                TEXT NOT NULL DEFAULT 'user',
  is_active           INTEGER NOT NULL DEFAULT 1,
  avatar_url          TEXT,
  points              INTEGER NOT NULL DEFAULT 0,
  streak_count        INTEGER NOT NULL DEFAULT 0,
  last_activity_date  TEXT,
  created_at          TEXT NOT NULL,
  updated_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_sessions (
  id          TEXT PRIMARY KEY,
  user_id     TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  topic       TEXT,
  messages    TEXT NOT NULL DEFAULT '[]',
  created_at  TEXT NOT NULL,
  updated_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chat_sessions_user ON chat_sessions(user_id, created_at);

CREATE TABLE IF NOT EXISTS learning_plans (
  id           TEXT PRIMARY KEY,
  user_id      TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  title        TEXT NOT NULL,
  description  TEXT,
  subjects     TEXT NOT NULL DEFAULT '[]',
  progress     INTEGER NOT NULL DEFAULT 0,
  is_active    INTEGER NOT NULL DEFAULT 1,
  created_at   TEXT NOT NULL,
  updated_at   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_learning_plans_user ON learning_plans(user_id);

CREATE TABLE IF NOT EXISTS milestones (
  id            TEXT PRIMARY KEY,
  plan_id       TEXT NOT NULL REFERENCES learning_plans(id) ON DELETE CASCADE,
  title         TEXT NOT NULL,
  description   TEXT,
  subject_id    TEXT NOT NULL,
  order_index   INTEGER NOT NULL,
  is_completed  INTEGER NOT NULL DEFAULT 0,
  completed_at  TEXT,
  created_at    TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_milestones_plan ON milestones(plan_id, order_index);

CREATE TABLE IF NOT EXISTS courses (
  id             TEXT PRIMARY KEY,
  milestone_id   TEXT NOT NULL REFERENCES milestones(id) ON DELETE CASCADE,
  title          TEXT NOT NULL,
  description    TEXT,
  content        TEXT,
  duration       INTEGER NOT NULL,
  difficulty     TEXT NOT NULL,
  order_index    INTEGER NOT NULL DEFAULT 0,
  is_completed   INTEGER NOT NULL DEFAULT 0,
  completed_at   TEXT,
  youtube_video  TEXT,
  created_at     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_courses_milestone ON courses(milestone_id, order_index);

CREATE TABLE IF NOT EXISTS quizzes (
  id             TEXT PRIMARY KEY,
  course_id      TEXT NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
  title          TEXT NOT NULL,
  description    TEXT,
  passing_score  INTEGER NOT NULL DEFAULT 70,
  is_required    INTEGER NOT NULL DEFAULT 1,
  created_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS quiz_questions (
  id              TEXT PRIMARY KEY,
  quiz_id         TEXT NOT NULL REFERENCES quizzes(id) ON DELETE CASCADE,
  question        TEXT NOT NULL,
  type            TEXT NOT NULL,
  options         TEXT,
  correct_answer  TEXT NOT NULL,
  explanation     TEXT,
  points          INTEGER NOT NULL DEFAULT 1,
  order_index     INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS quiz_attempts (
  id          TEXT PRIMARY KEY,
  user_id     TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  quiz_id     TEXT NOT NULL REFERENCES quizzes(id) ON DELETE CASCADE,
  score       INTEGER NOT NULL,
  is_passed   INTEGER NOT NULL,
  created_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_quiz_attempts_user ON quiz_attempts(user_id, quiz_id);

CREATE TABLE IF NOT EXISTS quiz_answers (
  id           TEXT PRIMARY KEY,
  attempt_id   TEXT NOT NULL REFERENCES quiz_attempts(id) ON DELETE CASCADE,
  question_id  TEXT NOT NULL REFERENCES quiz_questions(id) ON DELETE CASCADE,
  answer       TEXT NOT NULL,
  is_correct   INTEGER NOT NULL,
  points       INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS badges (
  id           TEXT PRIMARY KEY,
  name         TEXT NOT NULL UNIQUE,
  description  TEXT,
  icon         TEXT,
  points       INTEGER NOT NULL DEFAULT 0,
  criteria     TEXT NOT NULL,
  created_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_badges (
  id         TEXT PRIMARY KEY,
  user_id    TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  badge_id   TEXT NOT NULL REFERENCES badges(id) ON DELETE CASCADE,
  earned_at  TEXT NOT NULL,
  UNIQUE(user_id, badge_id)
);

CREATE TABLE IF NOT EXISTS documents (
  id           TEXT PRIMARY KEY,
  title        TEXT NOT NULL,
  type         TEXT NOT NULL,
  grade        INTEGER,
  subject      TEXT,
  filename     TEXT,
  uploaded_by  TEXT REFERENCES users(id) ON DELETE SET NULL,
  created_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS document_chunks (
  id           TEXT PRIMARY KEY,
  document_id  TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
  chunk_index  INTEGER NOT NULL,
  content      TEXT NOT NULL,
  embedding    TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_document_chunks_doc ON document_chunks(document_id);

CREATE TABLE IF NOT EXISTS generated_questions (
  id                TEXT PRIMARY KEY,
  user_id           TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  question          TEXT NOT NULL,
  options           TEXT NOT NULL,
  correct_answer    TEXT NOT NULL,
  explanation       TEXT,
  grade             INTEGER,
  subject           TEXT,
  topic             TEXT,
  source_chunk_ids  TEXT NOT NULL DEFAULT '[]',
  created_at        TEXT NOT NULL
);
"""


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid4())


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    data: Dict[str, Any] = {}
    for key in row.keys():
        value = row[key]
        if key in _JSON_COLUMNS and isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                value = None
        elif key in _BOOL_COLUMNS and value is not None:
            value = bool(value)
        data[key] = value
    return data


def _rows_to_dicts(rows: Iterable[sqlite3.Row]) -> List[Dict[str, Any]]:
    return [_row_to_dict(row) for row in rows]


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS and value is not None:
        return json_dumps(value)
    if column in _BOOL_COLUMNS and value is not None:
        return 1 if value else 0
    return value


class Database:
    """Typed access to every table the backend persists."""

    def __init__(self, path: str, max_connections: int = 10):
        self.path = path
        self._pool = SQLiteConnectionPool(path, max_connections=max_connections)

    # ---------- plumbing ----------
    def _conn(self):
        return self._pool.get_connection()

    def transaction(self):
        return self._pool.transaction()

    def _exec(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        with self._pool.get_connection() as con:
            cur = con.execute(sql, tuple(params))
            con.commit()
            return cur

    def _query(self, sql: str, params: Iterable = ()) -> List[Dict[str, Any]]:
        with self._pool.get_connection() as con:
            return _rows_to_dicts(con.execute(sql, tuple(params)).fetchall())

    def _query_one(self, sql: str, params: Iterable = ()) -> Optional[Dict[str, Any]]:
        with self._pool.get_connection() as con:
            return _row_to_dict(con.execute(sql, tuple(params)).fetchone())

    def _scalar(self, sql: str, params: Iterable = ()) -> Any:
        with self._pool.get_connection() as con:
            row = con.execute(sql, tuple(params)).fetchone()
            return row[0] if row is not None else None

    def _update(self, table: str, row_id: str, fields: Mapping[str, Any], allowed: Sequence[str]) -> int:
        columns = [name for name in fields if name in allowed]
        if not columns:
            return 0
        assignments = ", ".join(f"{name} = ?" for name in columns)
        params = [_encode(name, fields[name]) for name in columns]
        cur = self._exec(f"UPDATE {table} SET {assignments} WHERE id = ?", [*params, row_id])
        return cur.rowcount

    def init(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self._conn() as con:
            con.executescript(SCHEMA)
            con.commit()

    def ping(self) -> bool:
        return self._pool.ping()

    def close(self) -> None:
        self._pool.close_all()

    # ---------- users ----------
    def create_user(self, email: str, username: Optional[str], pw_hash: str, pw_salt: str) -> Dict[str, Any]:
        user_id = new_id()
        now = utcnow_iso()
        self._exec(
            """
            INSERT INTO users (id, email, username, pw_hash, pw_salt, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?)
            """,
            (user_id, email, username, pw_hash, pw_salt, now, now),
        )
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._query_one("SELECT * FROM users WHERE id = ?", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self._query_one("SELECT * FROM users WHERE lower(email) = lower(?)", (email,))

    def set_user_role(self, user_id: str, role: str) -> None:
        self._exec("UPDATE users SET role = ?, updated_at = ? WHERE id = ?", (role, utcnow_iso(), user_id))

    def set_user_avatar(self, user_id: str, avatar_url: str) -> None:
        self._exec("UPDATE users SET avatar_url = ?, updated_at = ? WHERE id = ?", (avatar_url, utcnow_iso(), user_id))

    def add_points(self, user_id: str, amount: int, activity_at: str) -> int:
        """Increment points and stamp activity; returns the number of rows touched."""
        cur = self._exec(
            "UPDATE users SET points = points + ?, last_activity_date = ?, updated_at = ? WHERE id = ?",
            (int(amount), activity_at, activity_at, user_id),
        )
        return cur.rowcount

    def set_streak(self, user_id: str, streak_count: int, activity_at: str) -> None:
        self._exec(
            "UPDATE users SET streak_count = ?, last_activity_date = ?, updated_at = ? WHERE id = ?",
            (int(streak_count), activity_at, activity_at, user_id),
        )

    def top_users(self, limit: int) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT id, username, email, points FROM users
            WHERE is_active = 1
            ORDER BY points DESC, created_at ASC
            LIMIT ?
            """,
            (int(limit),),
        )

    # ---------- chat sessions ----------
    def create_chat_session(self, user_id: str, topic: Optional[str], messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        session_id = new_id()
        now = utcnow_iso()
        self._exec(
            """
            INSERT INTO chat_sessions (id, user_id, topic, messages, created_at, updated_at)
            VALUES (?,?,?,?,?,?)
            """,
            (session_id, user_id, topic, json_dumps(messages), now, now),
        )
        return self.get_chat_session(session_id)

    def get_chat_session(self, session_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if user_id is None:
            return self._query_one("SELECT * FROM chat_sessions WHERE id = ?", (session_id,))
        return self._query_one(
            "SELECT * FROM chat_sessions WHERE id = ? AND user_id = ?", (session_id, user_id)
        )

    def list_chat_sessions(self, user_id: str, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM chat_sessions WHERE user_id = ? ORDER BY created_at DESC, rowid DESC"
        params: List[Any] = [user_id]
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([int(limit), int(offset)])
        return self._query(sql, params)

    def count_chat_sessions(self, user_id: str, since: Optional[str] = None) -> int:
        if since is None:
            return self._scalar("SELECT COUNT(*) FROM chat_sessions WHERE user_id = ?", (user_id,))
        return self._scalar(
            "SELECT COUNT(*) FROM chat_sessions WHERE user_id = ? AND created_at >= ?", (user_id, since)
        )

    def update_chat_session(self, session_id: str, fields: Mapping[str, Any]) -> None:
        self._update(
            "chat_sessions",
            session_id,
            {**fields, "updated_at": utcnow_iso()},
            ("topic", "messages", "updated_at"),
        )

    def delete_chat_session(self, session_id: str) -> None:
        self._exec("DELETE FROM chat_sessions WHERE id = ?", (session_id,))

    # ---------- learning plans ----------
    def create_plan(
        self,
        user_id: str,
        title: str,
        description: Optional[str],
        subjects: List[str],
        milestones: Sequence[Mapping[str, Any]],
    ) -> str:
        plan_id = new_id()
        now = utcnow_iso()
        with self.transaction() as con:
            con.execute(
                """
                INSERT INTO learning_plans (id, user_id, title, description, subjects, progress, is_active, created_at, updated_at)
                VALUES (?,?,?,?,?,0,1,?,?)
                """,
                (plan_id, user_id, title, description, json_dumps(subjects), now, now),
            )
            for milestone in milestones:
                con.execute(
                    """
                    INSERT INTO milestones (id, plan_id, title, description, subject_id, order_index, created_at)
                    VALUES (?,?,?,?,?,?,?)
                    """,
                    (
                        new_id(),
                        plan_id,
                        milestone["title"],
                        milestone.get("description"),
                        milestone["subject_id"],
                        int(milestone["order_index"]),
                        now,
                    ),
                )
        return plan_id

    def get_plan(self, plan_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if user_id is None:
            return self._query_one("SELECT * FROM learning_plans WHERE id = ?", (plan_id,))
        return self._query_one(
            "SELECT * FROM learning_plans WHERE id = ? AND user_id = ?", (plan_id, user_id)
        )

    def list_plan_summaries(self, user_id: str) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT p.id, p.title, p.description, p.progress, p.is_active, p.created_at,
                   COUNT(m.id) AS total_milestones,
                   COALESCE(SUM(m.is_completed), 0) AS completed_milestones
            FROM learning_plans p
            LEFT JOIN milestones m ON m.plan_id = p.id
            WHERE p.user_id = ?
            GROUP BY p.id
            ORDER BY p.created_at DESC, p.rowid DESC
            """,
            (user_id,),
        )

    def update_plan(self, plan_id: str, fields: Mapping[str, Any]) -> None:
        self._update(
            "learning_plans",
            plan_id,
            {**fields, "updated_at": utcnow_iso()},
            ("title", "description", "subjects", "is_active", "updated_at"),
        )

    def set_plan_progress(self, plan_id: str, progress: int) -> None:
        self._exec(
            "UPDATE learning_plans SET progress = ?, updated_at = ? WHERE id = ?",
            (int(progress), utcnow_iso(), plan_id),
        )

    def delete_plan(self, plan_id: str) -> None:
        self._exec("DELETE FROM learning_plans WHERE id = ?", (plan_id,))

    def count_plans(self, user_id: str) -> int:
        return self._scalar("SELECT COUNT(*) FROM learning_plans WHERE user_id = ?", (user_id,))

    # ---------- milestones ----------
    def list_milestones(self, plan_id: str) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM milestones WHERE plan_id = ? ORDER BY order_index ASC, created_at ASC",
            (plan_id,),
        )

    def get_milestone(self, milestone_id: str, plan_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if plan_id is None:
            return self._query_one("SELECT * FROM milestones WHERE id = ?", (milestone_id,))
        return self._query_one(
            "SELECT * FROM milestones WHERE id = ? AND plan_id = ?", (milestone_id, plan_id)
        )

    def insert_milestone(self, plan_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        milestone_id = new_id()
        self._exec(
            """
            INSERT INTO milestones (id, plan_id, title, description, subject_id, order_index, created_at)
            VALUES (?,?,?,?,?,?,?)
            """,
            (
                milestone_id,
                plan_id,
                fields["title"],
                fields.get("description"),
                fields["subject_id"],
                int(fields["order_index"]),
                utcnow_iso(),
            ),
        )
        return self.get_milestone(milestone_id)

    def update_milestone(self, milestone_id: str, fields: Mapping[str, Any]) -> None:
        self._update(
            "milestones",
            milestone_id,
            fields,
            ("title", "description", "subject_id", "order_index", "is_completed", "completed_at"),
        )

    def delete_milestone(self, milestone_id: str) -> None:
        self._exec("DELETE FROM milestones WHERE id = ?", (milestone_id,))

    # ---------- courses ----------
    def list_courses(self, milestone_id: str) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM courses WHERE milestone_id = ? ORDER BY order_index ASC, created_at ASC",
            (milestone_id,),
        )

    def get_course(self, course_id: str, milestone_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if milestone_id is None:
            return self._query_one("SELECT * FROM courses WHERE id = ?", (course_id,))
        return self._query_one(
            "SELECT * FROM courses WHERE id = ? AND milestone_id = ?", (course_id, milestone_id)
        )

    def insert_course(self, milestone_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        course_id = new_id()
        self._exec(
            """
            INSERT INTO courses (id, milestone_id, title, description, content, duration, difficulty,
                                 order_index, youtube_video, created_at)
            VALUES (?,?,?,?,?,?,?,?,?,?)
            """,
            (
                course_id,
                milestone_id,
                fields["title"],
                fields.get("description"),
                fields.get("content"),
                int(fields["duration"]),
                fields["difficulty"],
                int(fields.get("order_index") or 0),
                _encode("youtube_video", fields.get("youtube_video")),
                utcnow_iso(),
            ),
        )
        return self.get_course(course_id)

    def update_course(self, course_id: str, fields: Mapping[str, Any]) -> None:
        self._update(
            "courses",
            course_id,
            fields,
            (
                "title",
                "description",
                "content",
                "duration",
                "difficulty",
                "order_index",
                "is_completed",
                "completed_at",
                "youtube_video",
            ),
        )

    def delete_course(self, course_id: str) -> None:
        self._exec("DELETE FROM courses WHERE id = ?", (course_id,))

    def insert_generated_courses(self, milestone_id: str, courses: Sequence[Mapping[str, Any]]) -> List[str]:
        """Write courses with their quizzes and questions in one transaction."""
        now = utcnow_iso()
        course_ids: List[str] = []
        with self.transaction() as con:
            for course in courses:
                course_id = new_id()
                con.execute(
                    """
                    INSERT INTO courses (id, milestone_id, title, description, content, duration, difficulty,
                                         order_index, youtube_video, created_at)
                    VALUES (?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        course_id,
                        milestone_id,
                        course["title"],
                        course.get("description"),
                        course.get("content"),
                        int(course["duration"]),
                        course["difficulty"],
                        int(course.get("order_index") or 0),
                        _encode("youtube_video", course.get("youtube_video")),
                        now,
                    ),
                )
                quiz = course.get("quiz")
                if quiz:
                    quiz_id = new_id()
                    con.execute(
                        """
                        INSERT INTO quizzes (id, course_id, title, description, passing_score, is_required, created_at)
                        VALUES (?,?,?,?,?,?,?)
                        """,
                        (
                            quiz_id,
                            course_id,
                            quiz["title"],
                            quiz.get("description"),
                            int(quiz["passing_score"]),
                            1 if quiz.get("is_required", True) else 0,
                            now,
                        ),
                    )
                    for question in quiz.get("questions", []):
                        con.execute(
                            """
                            INSERT INTO quiz_questions (id, quiz_id, question, type, options, correct_answer,
                                                        explanation, points, order_index)
                            VALUES (?,?,?,?,?,?,?,?,?)
                            """,
                            (
                                new_id(),
                                quiz_id,
                                question["question"],
                                question["type"],
                                _encode("options", question.get("options")),
                                question["correct_answer"],
                                question.get("explanation"),
                                int(question["points"]),
                                int(question.get("order_index") or 0),
                            ),
                        )
                course_ids.append(course_id)
        return course_ids

    def count_completed_courses(self, user_id: str) -> int:
        return self._scalar(
            """
            SELECT COUNT(*) FROM courses c
            JOIN milestones m ON m.id = c.milestone_id
            JOIN learning_plans p ON p.id = m.plan_id
            WHERE p.user_id = ? AND c.is_completed = 1
            """,
            (user_id,),
        )

    # ---------- quizzes ----------
    def get_quiz(self, quiz_id: str) -> Optional[Dict[str, Any]]:
        return self._query_one("SELECT * FROM quizzes WHERE id = ?", (quiz_id,))

    def get_quiz_context(self, quiz_id: str) -> Optional[Dict[str, Any]]:
        """Quiz row joined with its course, milestone and owning plan ids."""
        return self._query_one(
            """
            SELECT q.*, c.milestone_id AS milestone_id, m.plan_id AS plan_id, p.user_id AS owner_id
            FROM quizzes q
            JOIN courses c ON c.id = q.course_id
            JOIN milestones m ON m.id = c.milestone_id
            JOIN learning_plans p ON p.id = m.plan_id
            WHERE q.id = ?
            """,
            (quiz_id,),
        )

    def list_quizzes_for_course(self, course_id: str) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM quizzes WHERE course_id = ? ORDER BY created_at ASC", (course_id,)
        )

    def list_questions(self, quiz_id: str) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM quiz_questions WHERE quiz_id = ? ORDER BY order_index ASC", (quiz_id,)
        )

    def record_quiz_attempt(
        self,
        user_id: str,
        quiz_id: str,
        score: int,
        is_passed: bool,
        answers: Sequence[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        attempt_id = new_id()
        now = utcnow_iso()
        with self.transaction() as con:
            con.execute(
                """
                INSERT INTO quiz_attempts (id, user_id, quiz_id, score, is_passed, created_at)
                VALUES (?,?,?,?,?,?)
                """,
                (attempt_id, user_id, quiz_id, int(score), 1 if is_passed else 0, now),
            )
            for answer in answers:
                con.execute(
                    """
                    INSERT INTO quiz_answers (id, attempt_id, question_id, answer, is_correct, points)
                    VALUES (?,?,?,?,?,?)
                    """,
                    (
                        new_id(),
                        attempt_id,
                        answer["question_id"],
                        answer["answer"],
                        1 if answer["is_correct"] else 0,
                        int(answer["points"]),
                    ),
                )
        return self._query_one("SELECT * FROM quiz_attempts WHERE id = ?", (attempt_id,))

    def list_quiz_attempts(self, user_id: str, quiz_id: str) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT * FROM quiz_attempts WHERE user_id = ? AND quiz_id = ?
            ORDER BY created_at DESC, rowid DESC
            """,
            (user_id, quiz_id),
        )

    def list_attempt_answers(self, attempt_id: str) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM quiz_answers WHERE attempt_id = ? ORDER BY rowid ASC", (attempt_id,)
        )

    def count_quiz_attempts(self, user_id: str) -> int:
        return self._scalar("SELECT COUNT(*) FROM quiz_attempts WHERE user_id = ?", (user_id,))

    def count_passed_quizzes(self, user_id: str) -> int:
        return self._scalar(
            "SELECT COUNT(DISTINCT quiz_id) FROM quiz_attempts WHERE user_id = ? AND is_passed = 1",
            (user_id,),
        )

    # ---------- badges ----------
    def insert_badge_if_absent(self, badge: Mapping[str, Any]) -> bool:
        """Insert a catalog badge unless one with the same name exists."""
        cur = self._exec(
            """
            INSERT INTO badges (id, name, description, icon, points, criteria, created_at)
            VALUES (?,?,?,?,?,?,?)
            ON CONFLICT(name) DO NOTHING
            """,
            (
                new_id(),
                badge["name"],
                badge.get("description"),
                badge.get("icon"),
                int(badge.get("points") or 0),
                json_dumps(badge["criteria"]),
                utcnow_iso(),
            ),
        )
        return cur.rowcount > 0

    def list_badges(self) -> List[Dict[str, Any]]:
        return self._query("SELECT * FROM badges ORDER BY points ASC, name ASC")

    def count_badges(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM badges")

    def list_unearned_badges(self, user_id: str) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT b.* FROM badges b
            WHERE NOT EXISTS (
                SELECT 1 FROM user_badges ub WHERE ub.badge_id = b.id AND ub.user_id = ?
            )
            ORDER BY b.points ASC, b.name ASC
            """,
            (user_id,),
        )

    def insert_user_badge(self, user_id: str, badge_id: str) -> bool:
        """Record an award; False when the user already holds the badge."""
        cur = self._exec(
            """
            INSERT INTO user_badges (id, user_id, badge_id, earned_at)
            VALUES (?,?,?,?)
            ON CONFLICT(user_id, badge_id) DO NOTHING
            """,
            (new_id(), user_id, badge_id, utcnow_iso()),
        )
        return cur.rowcount > 0

    def list_user_badges(self, user_id: str) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT b.id, b.name, b.description, b.icon, b.points, b.criteria, ub.earned_at
            FROM user_badges ub JOIN badges b ON b.id = ub.badge_id
            WHERE ub.user_id = ?
            ORDER BY ub.earned_at DESC, ub.rowid DESC
            """,
            (user_id,),
        )

    # ---------- documents ----------
    def create_document(
        self,
        fields: Mapping[str, Any],
        chunks: Sequence[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        document_id = new_id()
        with self.transaction() as con:
            con.execute(
                """
                INSERT INTO documents (id, title, type, grade, subject, filename, uploaded_by, created_at)
                VALUES (?,?,?,?,?,?,?,?)
                """,
                (
                    document_id,
                    fields["title"],
                    fields["type"],
                    fields.get("grade"),
                    fields.get("subject"),
                    fields.get("filename"),
                    fields.get("uploaded_by"),
                    utcnow_iso(),
                ),
            )
            for index, chunk in enumerate(chunks):
                con.execute(
                    """
                    INSERT INTO document_chunks (id, document_id, chunk_index, content, embedding)
                    VALUES (?,?,?,?,?)
                    """,
                    (new_id(), document_id, index, chunk["content"], json_dumps(list(chunk["embedding"]))),
                )
        return self._query_one("SELECT * FROM documents WHERE id = ?", (document_id,))

    def list_chunks(self, grade: Optional[int] = None, subject: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = (
            "SELECT c.id, c.document_id, c.chunk_index, c.content, c.embedding, "
            "d.title AS document_title, d.grade, d.subject "
            "FROM document_chunks c JOIN documents d ON d.id = c.document_id WHERE 1 = 1"
        )
        params: List[Any] = []
        if grade is not None:
            sql += " AND (d.grade IS NULL OR d.grade = ?)"
            params.append(int(grade))
        if subject:
            sql += " AND (d.subject IS NULL OR lower(d.subject) = lower(?))"
            params.append(subject)
        sql += " ORDER BY d.created_at, c.document_id, c.chunk_index"
        return self._query(sql, params)

    def list_documents(self) -> List[Dict[str, Any]]:
        return self._query(
            """
            SELECT d.*, COUNT(c.id) AS chunk_count
            FROM documents d LEFT JOIN document_chunks c ON c.document_id = d.id
            GROUP BY d.id
            ORDER BY d.created_at DESC
            """
        )

    # ---------- generated questions ----------
    def insert_generated_question(self, user_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        question_id = new_id()
        self._exec(
            """
            INSERT INTO generated_questions (id, user_id, question, options, correct_answer, explanation,
                                             grade, subject, topic, source_chunk_ids, created_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                question_id,
                user_id,
                fields["question"],
                json_dumps(fields["options"]),
                fields["correct_answer"],
                fields.get("explanation"),
                fields.get("grade"),
                fields.get("subject"),
                fields.get("topic"),
                json_dumps(fields.get("source_chunk_ids") or []),
                utcnow_iso(),
            ),
        )
        return self._query_one("SELECT * FROM generated_questions WHERE id = ?", (question_id,))

    def list_generated_questions(self, user_id: str) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM generated_questions WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
            (user_id,),
        )

    def count_generated_questions(self, user_id: str) -> int:
        return self._scalar("SELECT COUNT(*) FROM generated_questions WHERE user_id = ?", (user_id,))
