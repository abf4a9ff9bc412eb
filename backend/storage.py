"""
Local-disk storage for task attachments and chat files.

Files land under UPLOAD_DIR/<area>/<owner id>/<uuid><ext> and are served by
the static mount at /uploads.
"""

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from fastapi import HTTPException, Request, UploadFile

from config import MAX_FILE_SIZE, MAX_FILES_PER_UPLOAD, UPLOAD_DIR

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {
    ".pdf", ".txt", ".md", ".doc", ".docx",  # Documents
    ".png", ".jpg", ".jpeg", ".gif", ".webp",  # Images (.svg excluded for XSS security)
    ".json", ".csv", ".xlsx",  # Data files
    ".zip",  # Archives
}
ALLOWED_MIME_TYPES = {
    "application/pdf",
    "text/plain", "text/markdown",
    "application/msword", "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "image/png", "image/jpeg", "image/gif", "image/webp",
    "application/json", "text/csv",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/zip",
}
IMAGE_MIME_TYPES = {"image/png", "image/jpeg", "image/gif", "image/webp"}

CHUNK_SIZE = 1024 * 1024  # 1MB chunks (max memory footprint)


@dataclass
class StoredFile:
    name: str
    path: str
    size: int
    mime_type: str


def ensure_upload_dir() -> Path:
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    return UPLOAD_DIR


def require_content_length(request: Request) -> None:
    """Reject uploads without a usable Content-Length before reading the body."""
    content_length = request.headers.get("content-length")
    if content_length is None:
        raise HTTPException(status_code=411, detail="Content-Length header required")
    try:
        length = int(content_length)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid Content-Length header")
    # Multipart framing adds a little overhead on top of the file bytes
    if length > MAX_FILE_SIZE * MAX_FILES_PER_UPLOAD + 64 * 1024:
        raise HTTPException(
            status_code=413,
            detail=f"Request too large. Maximum file size: {MAX_FILE_SIZE / (1024 * 1024):.0f}MB"
        )


def validate_file_upload(file: UploadFile) -> None:
    """Validate file extension and MIME type."""
    if not file.filename:
        raise HTTPException(status_code=400, detail="File name is required")

    file_ext = Path(file.filename).suffix.lower()
    if file_ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail=f"File type not allowed. Allowed extensions: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )

    # application/octet-stream is accepted; the extension check above still applies
    if file.content_type not in ALLOWED_MIME_TYPES and file.content_type != "application/octet-stream":
        raise HTTPException(
            status_code=400,
            detail=f"MIME type not allowed: {file.content_type}"
        )


async def save_upload_file(area: str, owner_id: int, file: UploadFile) -> StoredFile:
    """
    Save an uploaded file using chunked streaming.

    Reads the file in 1MB chunks and aborts as soon as MAX_FILE_SIZE is exceeded.

    Args:
        area: Storage area, "tasks" or "chats"
        owner_id: Id of the task or chat the file belongs to
        file: Incoming upload

    Returns:
        StoredFile with the public path under /uploads

    Raises:
        HTTPException: 413 if the file is too large, 500 if it cannot be written
    """
    validate_file_upload(file)

    target_dir = UPLOAD_DIR / area / str(owner_id)
    target_dir.mkdir(parents=True, exist_ok=True)

    file_ext = Path(file.filename).suffix.lower()
    unique_filename = f"{uuid.uuid4()}{file_ext}"
    filepath = target_dir / unique_filename

    total_size = 0
    try:
        with open(filepath, "wb") as f:
            while True:
                chunk = await file.read(CHUNK_SIZE)
                if not chunk:
                    break

                total_size += len(chunk)
                if total_size > MAX_FILE_SIZE:
                    raise HTTPException(
                        status_code=413,
                        detail=f"File too large. Maximum size: {MAX_FILE_SIZE / (1024 * 1024):.0f}MB"
                    )

                f.write(chunk)
    except HTTPException:
        if filepath.exists():
            filepath.unlink()
        raise
    except OSError as e:
        if filepath.exists():
            filepath.unlink()
        logger.error(f"Failed to save file {file.filename}: {e}")
        raise HTTPException(status_code=500, detail="Failed to save file")

    logger.info(f"Stored upload {file.filename} ({total_size} bytes) at {filepath}")
    return StoredFile(
        name=file.filename,
        path=f"/uploads/{area}/{owner_id}/{unique_filename}",
        size=total_size,
        mime_type=file.content_type or "application/octet-stream",
    )


def delete_stored_file(public_path: str) -> bool:
    """
    Remove a stored file given its public /uploads path.

    Returns:
        True if a file was removed
    """
    if not public_path or not public_path.startswith("/uploads/"):
        return False

    relative = public_path[len("/uploads/"):]
    filepath = (UPLOAD_DIR / relative).resolve()
    if UPLOAD_DIR.resolve() not in filepath.parents:
        logger.warning(f"Refusing to delete file outside upload dir: {public_path}")
        return False

    try:
        filepath.unlink()
    except FileNotFoundError:
        logger.info(f"Stored file already gone: {public_path}")
        return False
    except OSError as e:
        logger.error(f"Failed to delete stored file {public_path}: {e}")
        return False
    return True
