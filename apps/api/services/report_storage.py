"""Storage of appointment PDF reports under UPLOAD_DIR/reports"""

import logging
import secrets
import time
from pathlib import Path
from typing import Optional

from fastapi import UploadFile
from starlette.concurrency import run_in_threadpool

from config import get_settings
from errors import BadRequest

logger = logging.getLogger(__name__)

MAX_REPORT_SIZE = 10 * 1024 * 1024  # 10 MiB
PDF_CONTENT_TYPE = "application/pdf"
REPORTS_URL_PREFIX = "/uploads/reports/"


def reports_dir() -> Path:
    path = Path(get_settings().upload_dir) / "reports"
    path.mkdir(parents=True, exist_ok=True)
    return path


async def read_pdf_upload(upload: UploadFile) -> bytes:
    """Return the upload's bytes after checking type and size"""
    content_type = (upload.content_type or "").split(";")[0].strip().lower()
    if content_type != PDF_CONTENT_TYPE:
        raise BadRequest("Only PDF files are allowed", field="pdfFile")

    content = await upload.read(MAX_REPORT_SIZE + 1)
    if len(content) > MAX_REPORT_SIZE:
        raise BadRequest("PDF file cannot exceed 10 MB", field="pdfFile")
    if not content:
        raise BadRequest("PDF file is empty", field="pdfFile")
    return content


def _write(path: Path, content: bytes) -> None:
    with open(path, "wb") as fh:
        fh.write(content)


async def save_report(appointment_id: str, content: bytes) -> str:
    """Persist a report and return its public relative path"""
    filename = f"appointment_{appointment_id}_{int(time.time() * 1000)}-{secrets.randbelow(10**9)}.pdf"
    path = reports_dir() / filename
    await run_in_threadpool(_write, path, content)
    logger.info(f"Stored report {filename} ({len(content)} bytes)")
    return REPORTS_URL_PREFIX + filename


def resolve_report(relative_path: Optional[str]) -> Optional[Path]:
    """Filesystem path of a stored report, None if unknown or missing"""
    if not relative_path or not relative_path.startswith(REPORTS_URL_PREFIX):
        return None
    filename = Path(relative_path[len(REPORTS_URL_PREFIX):]).name
    path = reports_dir() / filename
    return path if path.is_file() else None


def delete_report(relative_path: Optional[str]) -> None:
    path = resolve_report(relative_path)
    if path is None:
        return
    try:
        path.unlink()
    except OSError as e:
        logger.warning(f"Could not remove report {path}: {e}")
