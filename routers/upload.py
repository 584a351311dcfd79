import logging
import os
import uuid
from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

import config
from security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/upload", tags=["upload"], dependencies=[Depends(require_admin)])


def _extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower().lstrip(".")


def _public_url(name: str) -> str:
    return f"/uploads/{name}"


def _read_image(file: UploadFile) -> bytes:
    ext = _extension(file.filename)
    if ext not in config.ALLOWED_IMAGE_EXTENSIONS or not (file.content_type or "").startswith("image/"):
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type for {file.filename}. Allowed: {', '.join(sorted(config.ALLOWED_IMAGE_EXTENSIONS))}",
        )
    content = file.file.read(config.MAX_FILE_SIZE + 1)
    if len(content) > config.MAX_FILE_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"{file.filename} exceeds the {config.MAX_FILE_SIZE // (1024 * 1024)} MB limit",
        )
    return content


def _write_image(file: UploadFile, content: bytes) -> dict:
    os.makedirs(config.UPLOAD_PATH, exist_ok=True)
    name = f"{uuid.uuid4().hex}.{_extension(file.filename)}"
    with open(os.path.join(config.UPLOAD_PATH, name), "wb") as fh:
        fh.write(content)
    logger.info("Stored upload %s as %s (%d bytes)", file.filename, name, len(content))
    return {
        "filename": name,
        "original_name": file.filename,
        "size": len(content),
        "content_type": file.content_type,
        "url": _public_url(name),
    }


@router.post("/images", status_code=201)
def upload_images(images: List[UploadFile] = File(...)):
    if len(images) > config.MAX_FILES_PER_REQUEST:
        raise HTTPException(status_code=400, detail=f"At most {config.MAX_FILES_PER_REQUEST} files per request")
    # Nothing is written unless the whole batch is acceptable
    contents = [_read_image(f) for f in images]
    return {"files": [_write_image(f, content) for f, content in zip(images, contents)]}


@router.post("/single", status_code=201)
def upload_single(image: UploadFile = File(...)):
    return _write_image(image, _read_image(image))


@router.get("/list")
def list_uploads():
    if not os.path.isdir(config.UPLOAD_PATH):
        return {"files": [], "total": 0}
    files = []
    for name in sorted(os.listdir(config.UPLOAD_PATH)):
        path = os.path.join(config.UPLOAD_PATH, name)
        if not os.path.isfile(path) or _extension(name) not in config.ALLOWED_IMAGE_EXTENSIONS:
            continue
        stat = os.stat(path)
        files.append({
            "filename": name,
            "size": stat.st_size,
            "modified_at": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            "url": _public_url(name),
        })
    return {"files": files, "total": len(files)}


@router.delete("/{filename}")
def delete_upload(filename: str):
    if os.path.basename(filename) != filename or filename.startswith("."):
        raise HTTPException(status_code=400, detail="Invalid filename")
    path = os.path.join(config.UPLOAD_PATH, filename)
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="File not found")
    os.remove(path)
    logger.info("Deleted upload %s", filename)
    return {"ok": True}
