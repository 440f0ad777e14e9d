"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "UPLOAD_DIR": os.getenv("UPLOAD_DIR") or "uploads",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars: Dict[str, str] = {
        "GROQ_API_KEY": "Primary text-generation provider",
        "GEMINI_API_KEY": "Fallback text-generation provider and embeddings",
        "YOUTUBE_API_KEY": "Video search for generated courses",
        "SMTP_HOST": "Transactional email relay",
    }

    url_vars = {"GROQ_URL", "APP_URL", "FRONTEND_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    port = os.getenv("SMTP_PORT")
    if port and not port.strip().isdigit():
        raise EnvironmentError(f"Invalid integer for SMTP_PORT: {port}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)
