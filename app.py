# app.py — StudyBuddy backend
# - Application factory with a lifespan-built service context
# - Every route under /api, bearer JWT on everything except auth and health
# - Domain errors mapped to HTTP by exception handlers

import json
import logging
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from ai_client import AIClient
from auth import AuthService, TokenService, extract_token, public_user
from chat import ChatService
from config import Settings, load_settings
from db import Database
from email_service import EmailService
from env_validation import validate_environment
from errors import ForbiddenError, StudyBuddyError, UpstreamServiceError
from gamification import GamificationService
from learning_plans import LearningPlanService
from logging_config import configure_logging
from rag import DocumentService, default_embedding_backend
from schemas import (
    AddMessageBody,
    CourseBody,
    CreateChatSessionBody,
    CreatePlanBody,
    GenerateBody,
    GenerateCoursesBody,
    GenerateQuestionBody,
    GenerationParameters,
    LoginBody,
    MilestoneIn,
    PromoteAdminBody,
    QuizAttemptBody,
    RefreshBody,
    SignupBody,
    StreamBody,
    UpdateChatSessionBody,
    UpdateCourseBody,
    UpdateMilestoneBody,
    UpdatePlanBody,
)
from uploads import UploadService
from youtube import YouTubeClient

logger = logging.getLogger(__name__)

DISK_USAGE_THRESHOLD = 0.9


@dataclass
class AppContext:
    settings: Settings
    db: Database
    tokens: TokenService
    ai: Any
    youtube: Any
    mailer: Any
    uploads: UploadService
    gamification: GamificationService
    auth: AuthService
    chat: ChatService
    plans: LearningPlanService
    documents: DocumentService


def build_context(settings: Settings, *, ai_client=None, youtube=None, mailer=None, embedder=None) -> AppContext:
    """Wire every service against one database.

    The keyword overrides replace the outbound integrations (tests pass
    stubs); ``None`` builds the real clients from ``settings``.
    """
    database = Database(settings.db_path, max_connections=settings.db_max_connections)
    database.init()
    ai = ai_client or AIClient.from_settings(settings)
    youtube = youtube or YouTubeClient(
        settings.youtube_api_key, settings.youtube_base_url, timeout=settings.youtube_timeout
    )
    mailer = mailer or EmailService.from_settings(settings)
    tokens = TokenService(
        settings.jwt_secret,
        settings.jwt_algorithm,
        settings.access_token_ttl,
        settings.refresh_token_ttl,
    )
    gamification = GamificationService(database)
    return AppContext(
        settings=settings,
        db=database,
        tokens=tokens,
        ai=ai,
        youtube=youtube,
        mailer=mailer,
        uploads=UploadService(settings.upload_dir, settings.app_url),
        gamification=gamification,
        auth=AuthService(
            database,
            tokens,
            gamification=gamification,
            mailer=mailer,
            admin_secret=settings.admin_promotion_secret,
        ),
        chat=ChatService(database, ai, gamification, mailer),
        plans=LearningPlanService(database, ai, gamification, youtube),
        documents=DocumentService(
            database,
            ai,
            embedder=embedder or default_embedding_backend(settings, ai),
            gamification=gamification,
        ),
    )


# ---------- Dependencies ----------
def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


def current_user(request: Request, ctx: AppContext = Depends(get_context)) -> Dict[str, Any]:
    token = extract_token(request.headers.get("authorization"))
    return ctx.auth.resolve_user(token)


def admin_user(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise ForbiddenError("Admin access required")
    return user


router = APIRouter(prefix="/api")


# ---------- Auth ----------
@router.post("/auth/signup", status_code=201)
def auth_signup(body: SignupBody, ctx: AppContext = Depends(get_context)):
    return ctx.auth.signup(body.email, body.password, body.username)


@router.post("/auth/login")
def auth_login(body: LoginBody, ctx: AppContext = Depends(get_context)):
    return ctx.auth.login(body.email, body.password)


@router.post("/auth/refresh")
def auth_refresh(body: RefreshBody, ctx: AppContext = Depends(get_context)):
    return ctx.auth.refresh(body.refreshToken)


@router.post("/auth/promote-admin")
def auth_promote_admin(body: PromoteAdminBody, ctx: AppContext = Depends(get_context)):
    return {"message": "User promoted to admin", "user": ctx.auth.promote_admin(body.email, body.secret)}


@router.get("/users/profile")
def users_profile(user=Depends(current_user)):
    return public_user(user)


# ---------- Chat ----------
@router.post("/chat/sessions", status_code=201)
def chat_create_session(body: CreateChatSessionBody, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.chat.create_session(user["id"], body.topic, [m.model_dump() for m in body.messages])


@router.get("/chat/sessions")
def chat_list_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(current_user),
    ctx: AppContext = Depends(get_context),
):
    return ctx.chat.list_sessions(user["id"], page, limit)


@router.get("/chat/sessions/{session_id}")
def chat_get_session(session_id: str, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.chat.get_session(user["id"], session_id)


@router.put("/chat/sessions/{session_id}")
def chat_update_session(
    session_id: str, body: UpdateChatSessionBody, user=Depends(current_user), ctx: AppContext = Depends(get_context)
):
    return ctx.chat.update_session(user["id"], session_id, body.model_dump(exclude_unset=True))


@router.patch("/chat/sessions/{session_id}")
def chat_patch_session(
    session_id: str, body: UpdateChatSessionBody, user=Depends(current_user), ctx: AppContext = Depends(get_context)
):
    return ctx.chat.patch_session(user["id"], session_id, body.model_dump(exclude_unset=True))


@router.delete("/chat/sessions/{session_id}")
def chat_delete_session(session_id: str, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    ctx.chat.delete_session(user["id"], session_id)
    return {"message": "Chat session deleted successfully"}


@router.post("/chat/sessions/{session_id}/messages", status_code=201)
def chat_add_message(
    session_id: str, body: AddMessageBody, user=Depends(current_user), ctx: AppContext = Depends(get_context)
):
    return ctx.chat.add_message(user["id"], session_id, body.content, body.role, body.conversationId)


@router.get("/chat/sessions/{session_id}/messages/grouped")
def chat_grouped_messages(session_id: str, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.chat.grouped_messages(user["id"], session_id)


@router.get("/chat/conversations")
def chat_conversations(user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.chat.all_conversations(user["id"])


@router.get("/chat/stats")
def chat_stats(user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.chat.session_stats(user["id"])


# ---------- Learning plans ----------
@router.post("/learning-plans", status_code=201)
def plans_create(body: CreatePlanBody, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.plans.create_plan(
        user["id"],
        body.title,
        body.description,
        body.subjects,
        [m.model_dump() for m in body.milestones],
    )


@router.get("/learning-plans")
def plans_list(user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.plans.list_plans(user["id"])


@router.post("/learning-plans/quizzes/{quiz_id}/attempts", status_code=201)
def plans_submit_quiz(quiz_id: str, body: QuizAttemptBody, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.plans.submit_quiz_attempt(user["id"], quiz_id, [a.model_dump() for a in body.answers])


@router.get("/learning-plans/quizzes/{quiz_id}/attempts")
def plans_quiz_attempts(quiz_id: str, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.plans.list_quiz_attempts(user["id"], quiz_id)


@router.get("/learning-plans/{plan_id}")
def plans_get(plan_id: str, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.plans.get_plan(user["id"], plan_id)


@router.patch("/learning-plans/{plan_id}")
def plans_update(plan_id: str, body: UpdatePlanBody, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.plans.update_plan(user["id"], plan_id, body.model_dump(exclude_unset=True))


@router.delete("/learning-plans/{plan_id}")
def plans_delete(plan_id: str, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    ctx.plans.delete_plan(user["id"], plan_id)
    return {"message": "Learning plan deleted successfully"}


@router.post("/learning-plans/{plan_id}/milestones", status_code=201)
def plans_add_milestone(plan_id: str, body: MilestoneIn, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.plans.add_milestone(user["id"], plan_id, body.model_dump())


@router.patch("/learning-plans/{plan_id}/milestones/{milestone_id}")
def plans_update_milestone(
    plan_id: str,
    milestone_id: str,
    body: UpdateMilestoneBody,
    user=Depends(current_user),
    ctx: AppContext = Depends(get_context),
):
    return ctx.plans.update_milestone(user["id"], plan_id, milestone_id, body.model_dump(exclude_unset=True))


@router.delete("/learning-plans/{plan_id}/milestones/{milestone_id}")
def plans_remove_milestone(plan_id: str, milestone_id: str, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    ctx.plans.remove_milestone(user["id"], plan_id, milestone_id)
    return {"message": "Milestone deleted successfully"}


@router.post("/learning-plans/{plan_id}/milestones/{milestone_id}/generate-courses", status_code=201)
def plans_generate_courses(
    plan_id: str,
    milestone_id: str,
    body: Optional[GenerateCoursesBody] = None,
    user=Depends(current_user),
    ctx: AppContext = Depends(get_context),
):
    body = body or GenerateCoursesBody()
    return ctx.plans.generate_courses(user["id"], plan_id, milestone_id, body.count, body.topics, body.difficulty)


@router.post("/learning-plans/{plan_id}/milestones/{milestone_id}/courses", status_code=201)
def plans_add_course(
    plan_id: str, milestone_id: str, body: CourseBody, user=Depends(current_user), ctx: AppContext = Depends(get_context)
):
    return ctx.plans.add_course(user["id"], plan_id, milestone_id, body.model_dump())


@router.patch("/learning-plans/{plan_id}/milestones/{milestone_id}/courses/{course_id}")
def plans_update_course(
    plan_id: str,
    milestone_id: str,
    course_id: str,
    body: UpdateCourseBody,
    user=Depends(current_user),
    ctx: AppContext = Depends(get_context),
):
    return ctx.plans.update_course(user["id"], plan_id, milestone_id, course_id, body.model_dump(exclude_unset=True))


@router.delete("/learning-plans/{plan_id}/milestones/{milestone_id}/courses/{course_id}")
def plans_remove_course(
    plan_id: str, milestone_id: str, course_id: str, user=Depends(current_user), ctx: AppContext = Depends(get_context)
):
    ctx.plans.remove_course(user["id"], plan_id, milestone_id, course_id)
    return {"message": "Course deleted successfully"}


# ---------- Gamification ----------
@router.get("/gamification/stats")
def gamification_stats(user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.gamification.get_user_stats(user["id"])


@router.get("/gamification/leaderboard")
def gamification_leaderboard(limit: int = Query(10, ge=1), _user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.gamification.get_leaderboard(limit)


@router.get("/gamification/badges")
def gamification_badges(_user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.gamification.list_badges()


@router.post("/gamification/seed-badges")
def gamification_seed_badges(_user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.gamification.seed_badges()


# ---------- Documents ----------
@router.post("/document/upload", status_code=201)
def document_upload(
    file: UploadFile = File(...),
    title: str = Form(""),
    doc_type: str = Form(..., alias="type"),
    grade: Optional[int] = Form(None),
    subject: Optional[str] = Form(None),
    user=Depends(admin_user),
    ctx: AppContext = Depends(get_context),
):
    data = file.file.read()
    document = ctx.documents.upload_document(
        data,
        file.filename,
        title,
        doc_type,
        grade=grade,
        subject=subject,
        content_type=file.content_type,
        uploaded_by=user["id"],
    )
    return {"message": "Document uploaded and processed successfully", "document": document}


@router.post("/document/generate-question", status_code=201)
def document_generate_question(body: GenerateQuestionBody, user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.documents.generate_question(user["id"], body.grade, body.subject, body.topic)


@router.get("/document/my-questions")
def document_my_questions(user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return ctx.documents.list_user_questions(user["id"])


@router.get("/document/list")
def document_list(_admin=Depends(admin_user), ctx: AppContext = Depends(get_context)):
    return ctx.documents.list_documents()


# ---------- Uploads ----------
@router.post("/uploads/avatar", status_code=201)
def uploads_avatar(file: UploadFile = File(...), user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    result = ctx.uploads.save(file.file.read(), file.filename, file.content_type, "avatar")
    ctx.db.set_user_avatar(user["id"], result["url"])
    return {"message": "Avatar uploaded successfully", "data": result}


@router.post("/uploads/document", status_code=201)
def uploads_document(file: UploadFile = File(...), _user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    result = ctx.uploads.save(file.file.read(), file.filename, file.content_type, "document")
    return {"message": "Document uploaded successfully", "data": result}


# ---------- YouTube ----------
@router.get("/youtube/search")
def youtube_search(
    q: str = Query(..., min_length=1),
    maxResults: int = Query(5, ge=1, le=25),
    _user=Depends(current_user),
    ctx: AppContext = Depends(get_context),
):
    return ctx.youtube.search_educational_videos(q, max_results=maxResults)


# ---------- AI passthrough ----------
@router.post("/ai/generate")
def ai_generate(body: GenerateBody, _user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    params = body.parameters or GenerationParameters()
    result = ctx.ai.generate(body.message, body.systemPrompt, params.temperature, params.maxTokens)
    return result.to_dict()


def _sse(payload: str) -> str:
    return f"data: {payload}\n\n"


def _stream_events(ai, message: str, system_prompt: Optional[str]):
    yield _sse("[START]")
    try:
        for chunk in ai.stream(message, system_prompt):
            yield _sse(json.dumps({"chunk": chunk}, ensure_ascii=False))
    except UpstreamServiceError as exc:
        logger.warning("AI stream failed (correlation_id=%s): %s", exc.correlation_id, exc.message)
        yield _sse(json.dumps({"error": exc.message}))
        return
    yield _sse("[END]")


@router.post("/ai/stream")
def ai_stream(body: StreamBody, _user=Depends(current_user), ctx: AppContext = Depends(get_context)):
    return StreamingResponse(
        _stream_events(ctx.ai, body.message, body.systemPrompt),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ---------- Health ----------
def _database_check(ctx: AppContext) -> Dict[str, Any]:
    return {"status": "up" if ctx.db.ping() else "down"}


def _storage_check(ctx: AppContext) -> Dict[str, Any]:
    path = Path(ctx.settings.upload_dir)
    usage = shutil.disk_usage(path if path.exists() else Path.cwd())
    used_ratio = usage.used / usage.total if usage.total else 0.0
    return {
        "status": "up" if used_ratio < DISK_USAGE_THRESHOLD else "down",
        "usedRatio": round(used_ratio, 4),
    }


def _health_response(checks: Dict[str, Dict[str, Any]]) -> JSONResponse:
    healthy = all(check["status"] == "up" for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ok" if healthy else "error", "details": checks},
    )


@router.get("/health")
def health(ctx: AppContext = Depends(get_context)):
    return _health_response({"database": _database_check(ctx), "storage": _storage_check(ctx)})


@router.get("/health/ready")
def health_ready(ctx: AppContext = Depends(get_context)):
    return _health_response({"database": _database_check(ctx)})


@router.get("/health/live")
def health_live():
    return _health_response({})


# ---------- Error mapping ----------
def _field_path(loc) -> str:
    path = ""
    for part in loc:
        if part in ("body", "query", "path", "header", "form"):
            continue
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "body"


async def _domain_error(_: Request, exc: StudyBuddyError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _request_validation_error(_: Request, exc: RequestValidationError):
    fields = {_field_path(err.get("loc", ())): err.get("msg", "Invalid value") for err in exc.errors()}
    return JSONResponse(status_code=400, content={"detail": "Validation failed", "fields": fields})


async def _unhandled_error(request: Request, exc: Exception):
    correlation_id = uuid4().hex[:12]
    logger.error(
        "Unhandled error on %s %s (correlation_id=%s)",
        request.method,
        request.url.path,
        correlation_id,
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "correlationId": correlation_id})


def create_app(settings: Optional[Settings] = None, **overrides) -> FastAPI:
    """Application factory. ``overrides`` are passed to :func:`build_context`."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        try:
            validate_environment()
            Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
            ctx = build_context(settings, **overrides)
            ctx.gamification.seed_badges()
            app.state.ctx = ctx
            logger.info(
                "StudyBuddy backend ready (env=%s, ai configured=%s, youtube configured=%s)",
                settings.environment,
                getattr(ctx.ai, "configured", False),
                getattr(ctx.youtube, "configured", False),
            )
        except Exception as e:
            logger.error("Failed to initialize application: %s", str(e), exc_info=True)
            raise
        yield
        ctx.db.close()

    app = FastAPI(title="StudyBuddy Backend", version="1.0.0", lifespan=_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StudyBuddyError, _domain_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.add_exception_handler(Exception, _unhandled_error)
    app.include_router(router)
    app.mount("/uploads", StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")
    return app


app = create_app()
