from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

API_URL = os.environ.get("TRANSPORT_EMISSIONS_API_URL", "http://localhost:8000/api").rstrip("/")
REQUEST_TIMEOUT = float(os.environ.get("TRANSPORT_EMISSIONS_TIMEOUT", "30"))
LOG_LEVEL = os.environ.get("TRANSPORT_EMISSIONS_LOG_LEVEL", "INFO")

MAX_UPLOAD_BYTES = 25 * 1024 * 1024
# A workbook below this size holds the container boilerplate only.
XLSX_EMPTY_THRESHOLD_BYTES = 500

ALLOWED_IMPORT_EXTENSIONS = ("aasx", "json", "xml", "csv", "xlsx")
TABULAR_EXTENSIONS = ("csv", "xlsx")
AAS_EXTENSIONS = ("aasx", "json", "xml")
EXPORT_FORMATS = ("csv", "xlsx")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class SessionContext:
    """Credentials and scope for every call the console makes."""

    access_token: Optional[str]
    company_id: Optional[int]
    product_id: Optional[int]

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_token) and self.company_id is not None

    @classmethod
    def from_env(cls) -> "SessionContext":
        return cls(
            access_token=os.environ.get("TRANSPORT_EMISSIONS_TOKEN") or None,
            company_id=_as_int_or_none(os.environ.get("TRANSPORT_EMISSIONS_COMPANY_ID")),
            product_id=_as_int_or_none(os.environ.get("TRANSPORT_EMISSIONS_PRODUCT_ID")),
        )


def _as_int_or_none(value: Optional[str]) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def configure_logging(level: Optional[str] = None) -> None:
    """Install the console's log format on the root logger."""
    logging.basicConfig(level=(level or LOG_LEVEL).upper(), format=LOG_FORMAT)
