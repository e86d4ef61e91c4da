"""Local filesystem storage for uploaded batch CSVs."""

from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO

from catalog_importer.core.config import get_settings

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".csv"}


class UploadTooLargeError(ValueError):
    pass


def uploads_dir() -> Path:
    path = Path(get_settings().uploads_dir).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def save_upload(
    file_obj: BinaryIO,
    original_name: str | None = None,
    *,
    target_dir: Path | None = None,
    max_bytes: int | None = None,
) -> Path:
    """Persist an uploaded CSV under a unique name and return its absolute path."""
    directory = Path(target_dir) if target_dir else uploads_dir()
    directory.mkdir(parents=True, exist_ok=True)
    suffix = Path(original_name or "upload.csv").suffix or ".csv"
    target_path = (directory / f"{uuid.uuid4()}{suffix}").resolve()

    file_obj.seek(0)
    with target_path.open("wb") as destination:
        shutil.copyfileobj(file_obj, destination)

    if max_bytes is not None and target_path.stat().st_size > max_bytes:
        target_path.unlink(missing_ok=True)
        raise UploadTooLargeError(f"Upload exceeds the {max_bytes} byte limit")

    logger.info(f"Stored upload {original_name or target_path.name} at {target_path}")
    return target_path


def upload_exists(path: str | Path | None) -> bool:
    return bool(path) and Path(path).is_file()


def delete_upload(path: str | Path | None) -> None:
    """Cleanup staged files once a batch no longer needs them."""
    if not path:
        return
    try:
        Path(path).resolve().unlink(missing_ok=True)
        logger.info(f"Deleted stored upload {path}")
    except OSError as e:
        logger.warning(f"Failed to delete stored upload {path}: {e}")
