"""Prompt contract and output normalization for AI-generated courses.

Everything here is pure text and data manipulation. The upstream text
generator gives no guarantee about output format, so parsing walks an
ordered list of salvage strategies and the caller falls back to
deterministic stub courses when nothing usable comes back.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

_LOGGER = logging.getLogger(__name__)

DIFFICULTIES: Tuple[str, ...] = ("beginner", "intermediate", "advanced")
DEFAULT_DIFFICULTY = "intermediate"
QUESTION_TYPES: Tuple[str, ...] = ("multiple_choice", "short_answer", "true_false")
DEFAULT_QUESTION_TYPE = "multiple_choice"
DEFAULT_PASSING_SCORE = 70
MAX_ORDER_INDEX = 10_000
MAX_QUESTION_POINTS = 100

DURATION_RANGES: Dict[str, Tuple[int, int]] = {
    "beginner": (30, 60),
    "intermediate": (60, 90),
    "advanced": (90, 150),
}

_FALLBACK_DURATIONS = {"beginner": 45, "intermediate": 75, "advanced": 105}

_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_BACKSLASH_RE = re.compile(r'(\\\\)|\\(?!["\\/bfnrtu])')
_CODE_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)

GENERATION_SYSTEM_PROMPT = """You are an expert curriculum designer. Return only JSON (no backticks, no prose), strictly matching this type:
type Course = {
  title: string;
  description: string;
  content: string;
  duration: number;
  difficulty: 'beginner' | 'intermediate' | 'advanced';
  orderIndex: number;
  youtubeVideo: {
    title: string;
    url: string;
    channelName: string;
    duration: string;
    description: string;
  };
  quiz: {
    title: string;
    description?: string;
    passingScore: number;
    questions: Array<{
      question: string;
      type: 'multiple_choice' | 'short_answer' | 'true_false';
      options?: string[];
      correctAnswer: string;
      explanation?: string;
      points: number;
      orderIndex: number;
    }>;
  };
};
Return an array Course[] only.
CRITICAL RULES:
- Do NOT use LaTeX backslash sequences like \\( \\), \\frac, etc. Use plain text or Markdown without LaTeX.
- If you must include a backslash in any string, escape it as \\\\ (double backslash in JSON).
- Do not include any text outside the JSON array.
- Ensure each quiz has 3-6 questions appropriate for the difficulty level.
- For multiple_choice, provide 4 options with one correct answer.
- For short_answer, correctAnswer should be the expected answer (case-insensitive).
- For true_false, options should be ["True", "False"] and correctAnswer "True" or "False".
- For youtubeVideo: suggest ONE highly-rated educational YouTube video that matches the course topic, with its URL, channelName, approximate duration and a brief description."""

REFORMAT_SYSTEM_PROMPT = (
    "You are a formatter. Return VALID JSON ONLY. No markdown, no code fences, no explanations."
)


def normalize_difficulty(value: Any, default: str = DEFAULT_DIFFICULTY) -> str:
    candidate = str(value or "").strip().lower()
    return candidate if candidate in DIFFICULTIES else default


def duration_range(difficulty: str) -> Tuple[int, int]:
    return DURATION_RANGES.get(difficulty, DURATION_RANGES[DEFAULT_DIFFICULTY])


def clamp_duration(value: Any, difficulty: str) -> int:
    """Clamp a suggested duration in minutes into the difficulty's range.

    Unknown difficulties use the intermediate range. Values that are not
    finite numbers collapse to the range minimum.
    """
    low, high = duration_range(difficulty)
    number = _to_number(value)
    if number is None:
        return low
    return min(max(int(round(number)), low), high)


def build_generation_prompt(
    *,
    plan_title: str,
    milestone_title: str,
    milestone_description: Optional[str],
    count: int,
    difficulty: str,
    topics: Sequence[str],
) -> Tuple[str, str]:
    """Return ``(system_prompt, user_message)`` for a course generation call."""
    low, high = duration_range(difficulty)
    user_message = "\n".join(
        [
            f'Create {count} comprehensive mini-courses for the milestone "{milestone_title}".',
            f"Context: {plan_title} - {milestone_description or 'N/A'}",
            f"Difficulty: {difficulty}",
            f"Topics: {', '.join(topics)}",
            "",
            "Requirements:",
            f"- duration: {low}-{high} minutes",
            f"- orderIndex: 0 to {count - 1}",
            "- content with sections: Course Introduction, Learning Objectives (4-6), Key Concepts, "
            "Practical Examples (3-4), Summary",
            "- youtubeVideo: title, full YouTube URL, channelName, duration (e.g. \"15:30\") and why it is relevant",
            "- quiz: 3-6 questions testing understanding",
            "- titles: unique and specific",
            "- NO LaTeX, escape backslashes as \\\\",
            "- Return pure JSON array only",
        ]
    )
    return GENERATION_SYSTEM_PROMPT, user_message


def build_reformat_prompt(text: str) -> Tuple[str, str]:
    """Return ``(system_prompt, user_message)`` asking to re-emit ``text`` as JSON."""
    user_message = (
        "Convert the following text into a valid JSON array of Course objects with exact keys: "
        "title (string), description (string), content (string), duration (number, minutes), "
        'difficulty (one of: "beginner" | "intermediate" | "advanced" in lowercase), '
        "orderIndex (number starting at 0, consecutive), youtubeVideo (object with title, url, "
        "channelName, duration, description), quiz (object with title, description?, passingScore, "
        "questions array). Ensure proper JSON escaping, no LaTeX, no extra text. Output JSON array only."
        f"\n\nTEXT:\n{text}"
    )
    return REFORMAT_SYSTEM_PROMPT, user_message


def sanitize_json_like(text: str) -> str:
    """Drop trailing commas and double lone backslashes that are not JSON escapes."""
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", text)
    return _BACKSLASH_RE.sub(lambda m: m.group(1) or "\\\\", cleaned)


def _whole_text(text: str) -> Optional[str]:
    return text


def _bracketed_array(text: str) -> Optional[str]:
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def _without_code_fences(text: str) -> Optional[str]:
    stripped = _CODE_FENCE_RE.sub("", text).strip()
    return stripped if stripped != text.strip() else None


_CANDIDATE_EXTRACTORS: Tuple[Callable[[str], Optional[str]], ...] = (
    _whole_text,
    _bracketed_array,
    _without_code_fences,
)


def _as_course_list(value: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(value, dict) and isinstance(value.get("courses"), list):
        value = value["courses"]
    if not isinstance(value, list):
        return None
    return [item for item in value if isinstance(item, dict)]


def _try_load(candidate: Optional[str]) -> Optional[List[Dict[str, Any]]]:
    if not candidate:
        return None
    try:
        return _as_course_list(json.loads(candidate))
    except (json.JSONDecodeError, ValueError):
        return None


def parse_courses_json(text: Optional[str]) -> List[Dict[str, Any]]:
    """Salvage a JSON array of course objects from free-form AI text.

    Strategies, in order: the whole text, the first ``[`` to the last
    ``]``, the text with Markdown code fences removed. Each is tried raw
    first and then again after :func:`sanitize_json_like`. Returns an empty
    list when nothing parses.
    """
    if not text or not text.strip():
        return []
    candidates = [extract(text) for extract in _CANDIDATE_EXTRACTORS]
    for transform in (None, sanitize_json_like):
        for candidate in candidates:
            if candidate is None:
                continue
            parsed = _try_load(transform(candidate) if transform else candidate)
            if parsed is not None:
                return parsed
    return []


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _order_index(value: Any, position: int) -> int:
    number = _to_number(value)
    if number is None or not 0 <= number <= MAX_ORDER_INDEX:
        return position
    return int(number)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _normalize_video(raw: Any) -> Optional[Dict[str, str]]:
    if not isinstance(raw, Mapping):
        return None
    return {
        "title": str(raw.get("title") or ""),
        "url": str(raw.get("url") or ""),
        "channelName": str(raw.get("channelName") or raw.get("channel") or ""),
        "duration": str(raw.get("duration") or ""),
        "description": str(raw.get("description") or ""),
    }


def _normalize_question(raw: Mapping[str, Any], position: int) -> Optional[Dict[str, Any]]:
    question = _text(raw.get("question"))
    correct = _text(raw.get("correctAnswer", raw.get("correct_answer")))
    if question is None or correct is None:
        return None
    qtype = raw.get("type") if raw.get("type") in QUESTION_TYPES else DEFAULT_QUESTION_TYPE
    options = raw.get("options")
    points = _to_number(raw.get("points"))
    return {
        "question": question,
        "type": qtype,
        "options": [str(option) for option in options] if isinstance(options, list) else None,
        "correct_answer": correct,
        "explanation": _text(raw.get("explanation")),
        "points": min(max(int(round(points)), 1), MAX_QUESTION_POINTS) if points else 1,
        "order_index": _order_index(raw.get("orderIndex"), position),
    }


def _normalize_quiz(raw: Any, course_title: str) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, Mapping):
        return None
    raw_questions = raw.get("questions") if isinstance(raw.get("questions"), list) else []
    questions = [
        normalized
        for normalized in (
            _normalize_question(item, position)
            for position, item in enumerate(raw_questions)
            if isinstance(item, Mapping)
        )
        if normalized is not None
    ]
    if not questions:
        return None
    passing = _to_number(raw.get("passingScore", raw.get("passing_score")))
    return {
        "title": _text(raw.get("title")) or f"Quiz for {course_title}",
        "description": _text(raw.get("description")),
        "passing_score": min(max(int(round(passing)), 0), 100) if passing else DEFAULT_PASSING_SCORE,
        "is_required": True,
        "questions": questions,
    }


def normalize_courses(
    raw_courses: Iterable[Mapping[str, Any]],
    count: int,
    difficulty: str,
) -> List[Dict[str, Any]]:
    """Cap to ``count`` and fill defaults so every course is safe to persist."""
    normalized: List[Dict[str, Any]] = []
    for position, raw in enumerate(list(raw_courses)[:count]):
        title = _text(raw.get("title")) or f"Course {position + 1}"
        normalized.append(
            {
                "title": title,
                "description": _text(raw.get("description")),
                "content": _text(raw.get("content")),
                "duration": clamp_duration(raw.get("duration"), difficulty),
                "difficulty": normalize_difficulty(raw.get("difficulty"), difficulty),
                "order_index": _order_index(raw.get("orderIndex"), position),
                "youtube_video": _normalize_video(raw.get("youtubeVideo")),
                "quiz": _normalize_quiz(raw.get("quiz"), title),
            }
        )
    return normalized


def fallback_courses(count: int, milestone_title: Optional[str], difficulty: str) -> List[Dict[str, Any]]:
    """Deterministic stub courses in the same raw shape the AI is asked for."""
    base = milestone_title or "Course Topic"
    lower = base.lower()
    courses: List[Dict[str, Any]] = []
    for index in range(count):
        number = index + 1
        courses.append(
            {
                "title": f"{base} - Part {number}",
                "description": f"Basic introduction to {lower} concepts.",
                "content": (
                    f"## Introduction\nThis course covers fundamental concepts in {lower}.\n\n"
                    "## Key Concepts\n- Basic principles\n- Common applications\n\n"
                    "## Examples\n1. Simple example\n2. Practical application\n\n"
                    "## Summary\nKey takeaways and next steps."
                ),
                "duration": _FALLBACK_DURATIONS.get(difficulty, _FALLBACK_DURATIONS[DEFAULT_DIFFICULTY]),
                "difficulty": difficulty,
                "orderIndex": index,
                "youtubeVideo": {
                    "title": f"Introduction to {base}",
                    "url": f"https://www.youtube.com/watch?v=example{number}",
                    "channelName": "Educational Channel",
                    "duration": "10:30",
                    "description": f"A basic introduction to {lower} concepts for beginners.",
                },
                "quiz": {
                    "title": f"Quiz for {base} - Part {number}",
                    "passingScore": DEFAULT_PASSING_SCORE,
                    "questions": [
                        {
                            "question": f"What is a basic concept in {lower}?",
                            "type": "short_answer",
                            "correctAnswer": "concept",
                            "explanation": "This is a fundamental concept in the topic.",
                            "points": 50,
                            "orderIndex": 0,
                        },
                        {
                            "question": f"True or False: {base} is important for understanding the subject.",
                            "type": "true_false",
                            "options": ["True", "False"],
                            "correctAnswer": "True",
                            "explanation": "This topic is fundamental to the subject area.",
                            "points": 50,
                            "orderIndex": 1,
                        },
                    ],
                },
            }
        )
    _LOGGER.debug("Built %s fallback courses for %r", count, base)
    return courses
