"""Local file storage for avatars and documents, served under ``/uploads``."""
import logging
from pathlib import Path
from typing import Dict, Optional
from uuid import uuid4

from errors import ValidationFailed

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
ALLOWED_EXTENSIONS = {
    "avatar": (".jpg", ".jpeg", ".png", ".gif"),
    "document": (".pdf", ".doc", ".docx"),
}


class UploadService:
    def __init__(self, upload_dir: str, app_url: str = "http://localhost:8000"):
        self.upload_dir = Path(upload_dir)
        self.app_url = app_url.rstrip("/")

    def file_url(self, filename: str) -> str:
        return f"{self.app_url}/uploads/{filename}"

    def save(
        self,
        data: bytes,
        original_name: Optional[str],
        content_type: Optional[str],
        kind: str,
    ) -> Dict[str, object]:
        if kind not in ALLOWED_EXTENSIONS:
            raise ValueError(f"Unknown upload kind: {kind}")
        if not data:
            raise ValidationFailed("File is required", {"file": "File is required"})
        if len(data) > MAX_UPLOAD_BYTES:
            raise ValidationFailed("File too large", {"file": "File exceeds the 5MB limit"})
        suffix = Path(original_name or "").suffix.lower()
        if suffix not in ALLOWED_EXTENSIONS[kind]:
            allowed = ", ".join(ext.lstrip(".") for ext in ALLOWED_EXTENSIONS[kind])
            raise ValidationFailed("Unsupported file type", {"file": f"Allowed types: {allowed}"})

        self.upload_dir.mkdir(parents=True, exist_ok=True)
        filename = f"{uuid4()}{suffix}"
        (self.upload_dir / filename).write_bytes(data)
        logger.info("Stored %s upload %s (%s bytes)", kind, filename, len(data))
        return {
            "filename": filename,
            "originalname": original_name,
            "mimetype": content_type,
            "size": len(data),
            "url": self.file_url(filename),
        }
