"""Central runtime settings for the StudyBuddy backend."""
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

_DEV_ENVIRONMENTS = {"development", "dev", "local", "test"}


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


def _safe_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _split_csv(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    log_level: str = "INFO"
    db_path: str = "data.db"
    db_max_connections: int = 10

    jwt_secret: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    access_token_ttl: int = 15 * 60
    refresh_token_ttl: int = 7 * 24 * 60 * 60

    groq_api_key: Optional[str] = None
    groq_model: str = "llama-3.1-8b-instant"
    groq_url: str = "https://api.groq.com/openai/v1/chat/completions"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash"
    gemini_embed_model: str = "text-embedding-004"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    ai_timeout: int = 30

    youtube_api_key: Optional[str] = None
    youtube_base_url: str = "https://www.googleapis.com/youtube/v3"
    youtube_timeout: int = 30

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    from_email: str = "noreply@askfriendlearn.com"

    frontend_url: str = "http://localhost:3000"
    app_url: str = "http://localhost:8000"
    upload_dir: str = "uploads"
    admin_promotion_secret: Optional[str] = None
    cors_origins: Tuple[str, ...] = field(default_factory=lambda: ("*",))

    @property
    def is_development(self) -> bool:
        return self.environment in _DEV_ENVIRONMENTS


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build :class:`Settings` from the process environment.

    A ``.env`` file is loaded first when present; variables already set in
    the environment take precedence over it.
    """
    load_dotenv(env_file, override=False)

    environment = (
        _env("APP_ENV") or _env("ENV") or _env("NODE_ENV") or "development"
    ).lower()
    jwt_secret = _env("JWT_SECRET")
    if environment not in _DEV_ENVIRONMENTS and not jwt_secret:
        raise RuntimeError("JWT_SECRET must be set in non-development environments.")

    return Settings(
        environment=environment,
        log_level=_env("LOG_LEVEL", "INFO").upper(),
        db_path=_env("DB_PATH", "data.db"),
        db_max_connections=_safe_int("DB_MAX_CONNECTIONS", 10),
        jwt_secret=jwt_secret or "dev-secret-change-me",
        access_token_ttl=_safe_int("JWT_ACCESS_TTL_SECONDS", 15 * 60),
        refresh_token_ttl=_safe_int("JWT_REFRESH_TTL_SECONDS", 7 * 24 * 60 * 60),
        groq_api_key=_env("GROQ_API_KEY") or None,
        groq_model=_env("GROQ_MODEL", "llama-3.1-8b-instant"),
        groq_url=_env("GROQ_URL", "https://api.groq.com/openai/v1/chat/completions"),
        gemini_api_key=_env("GEMINI_API_KEY") or None,
        gemini_model=_env("GEMINI_MODEL", "gemini-1.5-flash"),
        gemini_embed_model=_env("GEMINI_EMBED_MODEL", "text-embedding-004"),
        ai_timeout=_safe_int("AI_TIMEOUT_SECONDS", 30),
        youtube_api_key=_env("YOUTUBE_API_KEY") or None,
        youtube_timeout=_safe_int("YOUTUBE_TIMEOUT_SECONDS", 30),
        smtp_host=_env("SMTP_HOST") or None,
        smtp_port=_safe_int("SMTP_PORT", 587),
        smtp_user=_env("SMTP_USER") or None,
        smtp_password=_env("SMTP_PASS") or None,
        from_email=_env("FROM_EMAIL", "noreply@askfriendlearn.com"),
        frontend_url=_env("FRONTEND_URL", "http://localhost:3000"),
        app_url=_env("APP_URL", "http://localhost:8000"),
        upload_dir=_env("UPLOAD_DIR", "uploads"),
        admin_promotion_secret=_env("ADMIN_PROMOTION_SECRET") or None,
        cors_origins=_split_csv(_env("CORS_ORIGINS", "*")) or ("*",),
    )
