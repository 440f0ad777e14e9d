import pytest

from errors import ValidationFailed
from uploads import MAX_UPLOAD_BYTES, UploadService


def test_avatar_is_stored_under_a_fresh_name(tmp_path):
    service = UploadService(str(tmp_path / "uploads"), "http://api.test/")

    result = service.save(b"\x89PNG data", "Me.PNG", "image/png", "avatar")

    assert result["filename"].endswith(".png")
    assert result["filename"] != "Me.PNG"
    assert result["originalname"] == "Me.PNG"
    assert result["size"] == 9
    assert result["url"] == f"http://api.test/uploads/{result['filename']}"
    assert (tmp_path / "uploads" / result["filename"]).read_bytes() == b"\x89PNG data"


@pytest.mark.parametrize(
    "data, name, kind, message",
    [
        (b"", "a.png", "avatar", "File is required"),
        (b"x" * (MAX_UPLOAD_BYTES + 1), "a.png", "avatar", "File too large"),
        (b"x", "a.pdf", "avatar", "Unsupported file type"),
        (b"x", "a.png", "document", "Unsupported file type"),
        (b"x", None, "document", "Unsupported file type"),
    ],
)
def test_rejected_uploads(tmp_path, data, name, kind, message):
    with pytest.raises(ValidationFailed, match=message):
        UploadService(str(tmp_path)).save(data, name, None, kind)


def test_documents_accept_office_formats(tmp_path):
    result = UploadService(str(tmp_path)).save(b"doc", "notes.docx", None, "document")
    assert result["filename"].endswith(".docx")
