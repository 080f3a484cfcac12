from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd

from transport_emissions.config import (
    ALLOWED_IMPORT_EXTENSIONS,
    EXPORT_FORMATS,
    MAX_UPLOAD_BYTES,
    TABULAR_EXTENSIONS,
    XLSX_EMPTY_THRESHOLD_BYTES,
)
from transport_emissions.record_store import ApiError, RecordStore, SECTION

logger = logging.getLogger(__name__)

UNSUPPORTED_TYPE_MESSAGE = "Unsupported file type."
TOO_LARGE_MESSAGE = "File size exceeds 25MB limit."
TEMPLATE_BLOCKED_MESSAGE = "Template files cannot be uploaded. Please provide a valid data file instead."
EMPTY_CSV_MESSAGE = "The uploaded file was empty or contained only headers. Nothing was imported."
EMPTY_FILE_MESSAGE = "The uploaded file appears to be empty. Nothing was imported."

MEDIA_TYPES = {
    "csv": "text/csv",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

ERROR_PATTERNS = {
    "multipleobjectsreturned": "This product matches more than one existing product. Please ensure it has a unique SKU or identifier.",
    "may not be null": "This field is required.",
    "enter a valid number": "Must be a valid number.",
    "not a valid choice": "Invalid choice provided.",
    "expected a string but got": "Expected text format.",
    "value is too long": "Too long.",
    "value is too short": "Too short.",
    "does not match the required pattern": "Invalid format.",
    "file too large": "File is too large. Max 25MB.",
    "unsupported file format": "Unsupported file type.",
}

_IMPORT_COUNT_RE = re.compile(r"successfully imported (\d+)")


def validate_file_type(filename: str) -> Optional[str]:
    """Return the lower-cased final extension when it is importable, else None."""
    if not filename or "." not in filename:
        return None
    extension = filename.rsplit(".", 1)[-1].lower()
    return extension if extension in ALLOWED_IMPORT_EXTENSIONS else None


def check_file_empty(content: bytes, extension: str) -> bool:
    """Classify an upload as carrying no importable rows."""
    if extension == "xlsx":
        return len(content) < XLSX_EMPTY_THRESHOLD_BYTES

    if extension in ("csv", "json", "xml", "aasx"):
        text = content.decode("utf-8", errors="ignore")
        if not "".join(text.split()):
            return True
        if extension == "csv":
            non_blank = [line for line in text.split("\n") if line.strip()]
            return len(non_blank) <= 1

    return False


def is_template_filename(filename: str) -> bool:
    return "template" in (filename or "").lower()


def size_exceeds_limit(size: int) -> bool:
    return size > MAX_UPLOAD_BYTES


@dataclass(frozen=True)
class ImportCheck:
    extension: Optional[str]
    error: Optional[str] = None
    blocked_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.blocked_reason is None


def check_import_file(filename: str, content: bytes) -> ImportCheck:
    """Run every client-side check an upload has to pass before it is sent."""
    extension = validate_file_type(filename)
    if extension is None:
        return ImportCheck(extension=None, error=UNSUPPORTED_TYPE_MESSAGE)

    if size_exceeds_limit(len(content)):
        return ImportCheck(extension=extension, error=TOO_LARGE_MESSAGE)

    if is_template_filename(filename):
        return ImportCheck(extension=extension, blocked_reason=TEMPLATE_BLOCKED_MESSAGE)

    if check_file_empty(content, extension):
        message = EMPTY_CSV_MESSAGE if extension == "csv" else EMPTY_FILE_MESSAGE
        return ImportCheck(extension=extension, blocked_reason=message)

    return ImportCheck(extension=extension)


def _parse_import_count(detail: str) -> Optional[str]:
    lower = detail.lower()
    match = _IMPORT_COUNT_RE.search(lower)
    if match is None:
        return None
    count = int(match.group(1))
    if count == 0 and "duplicate" in lower:
        return "No new products were imported. All rows were duplicates."
    return f"Successfully imported {count} product(s). Any duplicates were skipped."


def translate_import_error(detail: str) -> str:
    """Map backend import messages onto user-facing text."""
    lower = detail.lower()
    for pattern, message in ERROR_PATTERNS.items():
        if pattern in lower:
            return message
    return _parse_import_count(detail) or detail


def describe_import_result(result: Any) -> str:
    if isinstance(result, dict) and isinstance(result.get("detail"), str):
        return translate_import_error(result["detail"])
    if isinstance(result, list):
        return f"Imported {len(result)} transport emission(s)."
    return "Import completed successfully."


def describe_import_failure(error: ApiError) -> Tuple[str, List[Dict[str, str]]]:
    """Split a failed upload into a headline message and per-field errors."""
    data = error.data if isinstance(error.data, dict) else {}
    errors = data.get("errors")
    if isinstance(errors, list) and data.get("type") == "validation_error":
        field_errors = [
            {"attr": str(e.get("attr", "")), "detail": translate_import_error(str(e.get("detail", "")))}
            for e in errors
            if isinstance(e, dict)
        ]
        return "The file contains invalid rows. Nothing was imported.", field_errors
    if error.status >= 500 and not data:
        return f"Import failed: {error.message}", []
    return translate_import_error(error.message or "Upload failed due to an unknown issue."), []


def _normalize_column(name: str) -> str:
    return name.strip().lower().replace(" ", "_").replace("-", "_")


def read_tabular_preview(filename: str, content: bytes, limit: int = 200) -> pd.DataFrame:
    """Parse a CSV/XLSX upload into a dataframe for display before it is sent."""
    extension = validate_file_type(filename)
    if extension not in TABULAR_EXTENSIONS:
        raise ValueError("Only CSV and XLSX files can be previewed.")

    try:
        if extension == "csv":
            df = pd.read_csv(BytesIO(content))
        else:
            df = pd.read_excel(BytesIO(content))
    except Exception as exc:  # pragma: no cover - error text comes from pandas/engine
        raise ValueError(f"Unable to read {extension.upper()} file.") from exc

    df.columns = [_normalize_column(str(col)) for col in df.columns]
    return df.dropna(how="all").head(limit).reset_index(drop=True)


@dataclass(frozen=True)
class DownloadedFile:
    filename: str
    content: bytes
    media_type: str


def _check_export_format(fmt: str) -> str:
    fmt = fmt.lower()
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format: {fmt}")
    return fmt


async def fetch_product_template(store: RecordStore, fmt: str) -> DownloadedFile:
    fmt = _check_export_format(fmt)
    content = await store.export_product_template(fmt)
    return DownloadedFile(f"product_template.{fmt}", content, MEDIA_TYPES[fmt])


async def fetch_emissions_export(store: RecordStore, fmt: str, template: bool = False) -> DownloadedFile:
    fmt = _check_export_format(fmt)
    content = await store.export_emissions(fmt, template=template)
    kind = "template" if template else "data"
    return DownloadedFile(f"emissions_{SECTION}_{kind}.{fmt}", content, MEDIA_TYPES[fmt])


def save_download(file: DownloadedFile, directory: Path | str) -> Path:
    target = Path(directory) / file.filename
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(file.content)
    return target


async def handle_template_download(
    store: RecordStore,
    fmt: str,
    directory: Path | str = ".",
    on_error: Optional[Callable[[str], None]] = None,
) -> Optional[Path]:
    """Download the blank product template and save it; errors go to ``on_error``."""
    try:
        file = await fetch_product_template(store, fmt)
        path = save_download(file, directory)
    except (ApiError, ValueError, OSError) as exc:
        logger.error("Error downloading template: %s", exc)
        if on_error is not None:
            on_error(str(exc) or "Failed to download template")
        return None

    logger.info("%s template saved to %s", fmt.upper(), path)
    return path
