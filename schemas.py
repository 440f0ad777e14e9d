"""Pydantic request bodies for the HTTP API.

Field names follow the JSON wire format (camelCase). Range checks that
produce per-field messages live in the services; the models only enforce
types and a few hard bounds.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field

__all__ = [
    "SignupBody",
    "LoginBody",
    "RefreshBody",
    "PromoteAdminBody",
    "ChatMessageIn",
    "CreateChatSessionBody",
    "UpdateChatSessionBody",
    "AddMessageBody",
    "MilestoneIn",
    "CreatePlanBody",
    "UpdatePlanBody",
    "UpdateMilestoneBody",
    "GenerateCoursesBody",
    "CourseBody",
    "UpdateCourseBody",
    "QuizAnswerIn",
    "QuizAttemptBody",
    "GenerateQuestionBody",
    "GenerationParameters",
    "GenerateBody",
    "StreamBody",
]


# ---------- auth ----------
class SignupBody(BaseModel):
    email: str
    password: str
    username: str | None = None


class LoginBody(BaseModel):
    email: str
    password: str


class RefreshBody(BaseModel):
    refreshToken: str


class PromoteAdminBody(BaseModel):
    email: str
    secret: str


# ---------- chat ----------
class ChatMessageIn(BaseModel):
    role: str
    content: str
    createdAt: str | None = None
    conversationId: str | None = None


class CreateChatSessionBody(BaseModel):
    topic: str | None = None
    messages: List[ChatMessageIn] = Field(default_factory=list)


class UpdateChatSessionBody(BaseModel):
    topic: str | None = None
    messages: List[ChatMessageIn] | None = None


class AddMessageBody(BaseModel):
    content: str
    role: Literal["user", "assistant"] = "user"
    conversationId: str | None = None


# ---------- learning plans ----------
class MilestoneIn(BaseModel):
    title: str | None = None
    description: str | None = None
    subjectId: str | None = None
    orderIndex: int | None = Field(default=None, ge=0, le=2**31 - 1)


class CreatePlanBody(BaseModel):
    title: str = ""
    description: str | None = None
    subjects: List[str] = Field(default_factory=list)
    milestones: List[MilestoneIn] = Field(default_factory=list)


class UpdatePlanBody(BaseModel):
    title: str | None = None
    description: str | None = None
    subjects: List[str] | None = None
    isActive: bool | None = None


class UpdateMilestoneBody(BaseModel):
    title: str | None = None
    description: str | None = None
    subjectId: str | None = None
    orderIndex: int | None = Field(default=None, ge=0, le=2**31 - 1)
    isCompleted: bool | None = None


class GenerateCoursesBody(BaseModel):
    count: int | None = None
    topics: List[str] | None = None
    difficulty: str | None = None


class CourseBody(BaseModel):
    title: str | None = None
    description: str | None = None
    content: str | None = None
    duration: int | None = None
    difficulty: str | None = None
    orderIndex: int | None = Field(default=None, ge=0, le=2**31 - 1)
    youtubeVideo: Dict[str, Any] | None = None


class UpdateCourseBody(CourseBody):
    isCompleted: bool | None = None


class QuizAnswerIn(BaseModel):
    questionId: str
    answer: str = ""


class QuizAttemptBody(BaseModel):
    answers: List[QuizAnswerIn] = Field(default_factory=list)


# ---------- documents ----------
class GenerateQuestionBody(BaseModel):
    grade: int | None = Field(default=None, ge=9, le=12)
    subject: str | None = None
    topic: str | None = None


# ---------- ai ----------
class GenerationParameters(BaseModel):
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    maxTokens: int = Field(default=1000, ge=1, le=8192)


class GenerateBody(BaseModel):
    message: str = Field(min_length=1)
    systemPrompt: str | None = None
    parameters: GenerationParameters | None = None


class StreamBody(BaseModel):
    message: str = Field(min_length=1)
    systemPrompt: str | None = None
