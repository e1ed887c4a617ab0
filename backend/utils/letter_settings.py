"""
Environment-driven settings for letter generation.
Read through these helpers rather than os.getenv at call sites so defaults live in one place.
"""
import os
import tempfile
from pathlib import Path
from typing import List

DEFAULT_PRACTICE_NAME = "Pleerity Enterprise Ltd"


def get_practice_name() -> str:
    """Branding name used in document headers and the practiceName placeholder."""
    return (os.getenv("PRACTICE_NAME") or "").strip() or DEFAULT_PRACTICE_NAME


def get_storage_root() -> Path:
    """
    Root directory for on-disk letter artefacts (bulk ZIP archives).
    LETTER_STORAGE_PATH when set, otherwise a 'letters' folder in the system temp dir.
    """
    raw = (os.getenv("LETTER_STORAGE_PATH") or "").strip()
    if raw:
        return Path(raw)
    return Path(tempfile.gettempdir()) / "letters"


def get_bulk_zip_dir() -> Path:
    return get_storage_root() / "bulk-letters-zip"


def get_default_output_formats() -> List[str]:
    raw = os.getenv("LETTER_DEFAULT_FORMATS", "PDF")
    formats = [f.strip().upper() for f in raw.split(",") if f.strip()]
    return formats or ["PDF"]


def get_documents_bucket() -> str:
    """GridFS bucket holding rendered letters and template content files."""
    return (os.getenv("LETTER_DOCUMENTS_BUCKET") or "").strip() or "letter_documents"
