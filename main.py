# main.py
import asyncio
import time
import uuid
from pathlib import Path
from typing import Dict, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response

import config
import storage
from image_utils import InvalidImageError, image_metadata, optimize_image
from models import RepositoryRef, UploadResponse
from watermark_engine import WatermarkResult, watermark_upload

logger = config.setup_logging()

# Setup app
app = FastAPI(title="Repository Image Uploader")

# Allow local frontend to call APIs during development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_methods=["*"],
    allow_headers=["*"],
)


def _secure_filename(name: Optional[str]) -> str:
    """Return basename to avoid directory traversal."""
    return Path(name or "image").name


def watermark_fields(
    watermark_text: Optional[str] = Form(None),
    watermark_color: Optional[str] = Form(None),
    watermark_size: Optional[str] = Form(None),
    watermark_opacity: Optional[str] = Form(None),
    watermark_position: Optional[str] = Form(None),
    watermark_margin: Optional[str] = Form(None),
) -> Dict[str, str]:
    """Collect the raw watermark form fields; parsing happens in the engine."""
    fields = {
        "watermark_text": watermark_text,
        "watermark_color": watermark_color,
        "watermark_size": watermark_size,
        "watermark_opacity": watermark_opacity,
        "watermark_position": watermark_position,
        "watermark_margin": watermark_margin,
    }
    return {k: v for k, v in fields.items() if v is not None}


async def _read_image(upload: UploadFile) -> bytes:
    if not upload.content_type or not upload.content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image files are allowed")
    data = await upload.read()
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File too large")
    try:
        image_metadata(data)
    except InvalidImageError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return data


async def _watermark(data: bytes, fields: Dict[str, str]) -> WatermarkResult:
    """Run the watermark engine off the event loop, keeping the original image on timeout."""
    try:
        return await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(None, watermark_upload, data, fields),
            timeout=config.WATERMARK_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("Watermark timed out after %ss, continuing without watermark", config.WATERMARK_TIMEOUT_SECONDS)
        return WatermarkResult(data, False, None)


def _storage_error(e: storage.StorageError) -> HTTPException:
    if isinstance(e, storage.InvalidPathError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, storage.StorageNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, storage.StorageConflictError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.post("/repositories/{owner}/{repo}/images", status_code=201, response_model=UploadResponse)
async def upload_image(
    owner: str,
    repo: str,
    image: UploadFile = File(...),
    target_folder: Optional[str] = Form(None),
    fields: Dict[str, str] = Depends(watermark_fields),
):
    """
    Watermark (when requested), optimise and commit an image into owner/repo.
    A watermark failure never fails the upload; it only clears `watermark_applied`.
    """
    try:
        folder = storage.validate_folder(target_folder)
    except storage.InvalidPathError as e:
        raise HTTPException(status_code=400, detail=str(e))

    original_name = _secure_filename(image.filename)
    data = await _read_image(image)

    result = await _watermark(data, fields)
    logger.info("Watermark applied: %s", result.applied)

    try:
        width, height, _ = image_metadata(result.data)
        optimized = await run_in_threadpool(optimize_image, result.data)
    except InvalidImageError as e:
        raise HTTPException(status_code=400, detail=str(e))

    filename = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:10]}.webp"
    path = f"{folder}/{filename}"
    message = f"Add image: {original_name} to {folder}/"
    if result.applied:
        message += f" (with watermark: {result.text})"

    try:
        sha = storage.commit_file(owner, repo, path, optimized, message)
    except storage.StorageError as e:
        raise _storage_error(e)
    logger.info("Committed %s/%s/%s (%s)", owner, repo, path, sha)

    return UploadResponse(
        filename=filename,
        original_name=original_name,
        path=path,
        url=f"/uploads/{owner}/{repo}/{path}",
        target_folder=folder,
        width=width,
        height=height,
        file_size=len(optimized),
        sha=sha,
        watermark_applied=result.applied,
        watermark_text=result.text,
        repository=RepositoryRef(owner=owner, name=repo, full_name=f"{owner}/{repo}"),
    )


@app.post("/watermark/")
async def preview_watermark(
    image: UploadFile = File(...),
    fields: Dict[str, str] = Depends(watermark_fields),
):
    """Return the watermarked image directly without storing it."""
    data = await _read_image(image)
    result = await _watermark(data, fields)
    media_type = "image/jpeg" if result.applied else image.content_type
    return Response(
        content=result.data,
        media_type=media_type,
        headers={"X-Watermark-Applied": "true" if result.applied else "false"},
    )


@app.get("/repositories/{owner}/{repo}/contents")
def repository_contents(owner: str, repo: str, path: str = ""):
    """Folders and files under `path`, for the folder browser."""
    try:
        return storage.list_contents(owner, repo, path)
    except storage.StorageError as e:
        raise _storage_error(e)


@app.get("/repositories/{owner}/{repo}/history")
def repository_history(owner: str, repo: str):
    try:
        return {"commits": storage.history(owner, repo)}
    except storage.StorageError as e:
        raise _storage_error(e)


@app.delete("/repositories/{owner}/{repo}/images/{path:path}")
def delete_image(owner: str, repo: str, path: str, sha: Optional[str] = None):
    try:
        deleted = storage.delete_file(owner, repo, path, sha=sha)
    except storage.StorageError as e:
        raise _storage_error(e)
    logger.info("Deleted %s/%s/%s", owner, repo, path)
    return {"message": "Image deleted successfully", "sha": deleted}


@app.get("/uploads/{owner}/{repo}/{path:path}")
def serve_upload(owner: str, repo: str, path: str):
    """Serve a committed file back to the frontend (used by <img src="/uploads/...">)."""
    try:
        return FileResponse(storage.file_path(owner, repo, path))
    except storage.StorageError as e:
        raise _storage_error(e)


# Run with:
# uvicorn main:app --reload --host 0.0.0.0 --port 8000
