"""Blob storage for uploaded files. Only the returned URL is kept on documents."""

import os
import secrets

from fastapi import UploadFile

import settings
from errors import InvalidRequest

ALLOWED_EXTENSIONS = {
    "images": {".jpg", ".jpeg", ".png", ".webp"},
    "reports": {".pdf", ".jpg", ".jpeg", ".png"},
}


def ensure_upload_dirs() -> None:
    for folder in ALLOWED_EXTENSIONS:
        os.makedirs(os.path.join(settings.UPLOAD_DIR, folder), exist_ok=True)


def save_upload(upload: UploadFile, folder: str) -> str:
    if upload is None or not upload.filename:
        raise InvalidRequest("No file uploaded")
    ext = os.path.splitext(upload.filename)[1].lower()
    if ext not in ALLOWED_EXTENSIONS[folder]:
        raise InvalidRequest(f"Unsupported file type {ext or '(none)'}")
    filename = f"{secrets.token_hex(8)}{ext}"
    target_dir = os.path.join(settings.UPLOAD_DIR, folder)
    os.makedirs(target_dir, exist_ok=True)
    with open(os.path.join(target_dir, filename), "wb") as out:
        out.write(upload.file.read())
    return f"{settings.UPLOAD_URL_PREFIX}/{folder}/{filename}"
