"""Local filesystem storage for uploaded files.

Files land in `UPLOAD_DIR/<bucket>/<uuid><ext>` and are served by the
`/uploads` static mount, so the public URL mirrors the relative path.
"""

import io
import logging
import uuid
from pathlib import Path
from typing import Optional

import pdfplumber
from fastapi import UploadFile
from PIL import Image, UnidentifiedImageError

from ..config import settings
from ..exceptions import BadRequestException, PayloadTooLargeException, UnsupportedMediaException

logger = logging.getLogger("ethioace.storage")

BUCKETS = ("pdfs", "chat-images", "profile-pictures")


def bucket_path(bucket: str) -> Path:
    if bucket not in BUCKETS:
        raise ValueError(f"unknown bucket: {bucket}")
    return settings.UPLOAD_DIR / bucket


def read_upload(file: UploadFile, max_bytes: int) -> bytes:
    """Read an uploaded file, raising 400 when empty and 413 when over `max_bytes`."""
    if not file or not file.filename:
        raise BadRequestException("no file")
    if "/" in file.filename or "\\" in file.filename or len(file.filename) > 200:
        raise BadRequestException("invalid filename")
    content = file.file.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise PayloadTooLargeException(f"file too large; max {max_bytes} bytes")
    if not content:
        raise BadRequestException("empty file")
    return content


def verify_image(payload: bytes) -> str:
    """Return the lower-case image format name or raise 415."""
    try:
        with Image.open(io.BytesIO(payload)) as img:
            fmt = (img.format or "").lower()
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        raise UnsupportedMediaException("unsupported file content; expected an image")
    return fmt


def verify_pdf(payload: bytes) -> int:
    """Return the page count of a PDF or raise 415 when it cannot be read."""
    if payload[:4] != b"%PDF":
        raise UnsupportedMediaException("unsupported file content; expected a PDF")
    try:
        with pdfplumber.open(io.BytesIO(payload)) as pdf:
            return len(pdf.pages)
    except Exception as exc:
        logger.warning("unreadable pdf upload: %s", exc)
        raise UnsupportedMediaException("unsupported file content; PDF could not be read")


def save_bytes(payload: bytes, bucket: str, filename: Optional[str] = None, ext: Optional[str] = None) -> dict:
    """Store `payload` under a fresh name; return `{path, url, size}`."""
    suffix = ext if ext is not None else Path(filename or "").suffix.lower()
    unique_name = f"{uuid.uuid4().hex}{suffix}"
    folder = bucket_path(bucket)
    folder.mkdir(parents=True, exist_ok=True)
    full_path = folder / unique_name
    full_path.write_bytes(payload)
    logger.info("stored upload bucket=%s name=%s size=%d", bucket, unique_name, len(payload))
    return {"path": str(full_path), "url": f"/uploads/{bucket}/{unique_name}", "size": len(payload)}


def save_image(file: UploadFile, bucket: str) -> dict:
    payload = read_upload(file, settings.MAX_IMAGE_UPLOAD_BYTES)
    fmt = verify_image(payload)
    ext = ".jpg" if fmt == "jpeg" else f".{fmt}" if fmt else Path(file.filename).suffix.lower()
    return save_bytes(payload, bucket, ext=ext)


def delete_file(path: Optional[str]) -> bool:
    """Remove a stored file. A missing file is logged and reported as False."""
    if not path:
        return False
    target = Path(path)
    try:
        target.unlink()
    except FileNotFoundError:
        logger.warning("file already missing: %s", path)
        return False
    return True
