"""Response schemas for the upload API."""

from typing import Optional

from pydantic import BaseModel


class RepositoryRef(BaseModel):
    owner: str
    name: str
    full_name: str


class UploadResponse(BaseModel):
    """Returned after an image is committed to a repository.

    Attributes:
        filename: Generated name the image was stored under.
        original_name: Name of the file as uploaded.
        sha: Content hash returned by the repository store.
        watermark_applied: True when text was stamped, styled or plain fallback.
        watermark_text: The stamped text, None when nothing was stamped.
    """

    filename: str
    original_name: str
    path: str
    url: str
    target_folder: str
    width: int
    height: int
    file_size: int
    sha: str
    watermark_applied: bool
    watermark_text: Optional[str] = None
    repository: RepositoryRef
