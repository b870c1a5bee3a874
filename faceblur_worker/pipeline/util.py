import os
import re
import shutil
import tempfile
import time
import logging
from contextlib import contextmanager
from typing import Iterator, Optional
from urllib.parse import urlparse, unquote


# Environment variable constants
DEFAULT_DATA_DIR = "/app/data"

logger = logging.getLogger("faceblur_worker")


def get_data_dir() -> str:
    """Get data directory from environment"""
    return os.getenv("DATA_DIR", DEFAULT_DATA_DIR)


def resolve_media_path(stored_path: str, root_dir: Optional[str] = None) -> str:
    """Resolve a stored path or file:// locator to an absolute path under root_dir"""
    parsed = urlparse(stored_path)
    if parsed.scheme == "file":
        stored_path = unquote(parsed.path)

    # If stored_path is already absolute, use it
    if os.path.isabs(stored_path):
        return stored_path

    # Otherwise, resolve relative to the root directory
    return os.path.join(root_dir or get_data_dir(), stored_path.lstrip("/"))


@contextmanager
def job_workspace(video_id: str, base_dir: Optional[str] = None) -> Iterator[str]:
    """
    Scratch directory for one processing attempt.

    Named video_<id>_<millis> and removed on exit whether the attempt
    succeeded or not.
    """
    base_dir = base_dir or tempfile.gettempdir()
    ensure_dir(base_dir)
    path = os.path.join(base_dir, f"video_{clean_filename(str(video_id))}_{int(time.time() * 1000)}")
    os.makedirs(path, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug(f"Removed workspace {path}")


def format_timecode(seconds: float) -> str:
    """Format seconds as HH:MM:SS.mmm"""
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    return f"{hours:02d}:{minutes:02d}:{secs:06.3f}"


def ensure_dir(path: str):
    """Ensure directory exists"""
    os.makedirs(path, exist_ok=True)


def get_file_size_mb(file_path: str) -> float:
    """Get file size in MB"""
    try:
        size_bytes = os.path.getsize(file_path)
        return size_bytes / (1024 * 1024)
    except OSError:
        return 0.0


def clean_filename(filename: str) -> str:
    """Clean filename for safe filesystem usage"""
    # Remove or replace unsafe characters
    filename = re.sub(r'[<>:"/\\|?*]', '_', filename)
    # Remove multiple underscores
    filename = re.sub(r'_+', '_', filename)
    # Remove leading/trailing underscores and dots
    filename = filename.strip('_.')
    return filename or 'unnamed'


def locator_extension(locator: str, default: str = ".mp4") -> str:
    """File extension of a URL or path, lower-cased"""
    ext = os.path.splitext(urlparse(locator).path)[1].lower()
    if not ext or not re.fullmatch(r"\.[a-z0-9]{1,5}", ext):
        return default
    return ext
