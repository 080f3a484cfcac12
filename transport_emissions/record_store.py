from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx

from transport_emissions.config import AAS_EXTENSIONS, API_URL, REQUEST_TIMEOUT, SessionContext
from transport_emissions.models import BomLineItem, EmissionRecord, EmissionReference, LifecycleStageChoice

logger = logging.getLogger(__name__)

SECTION = "transport"
_TITLE_RE = re.compile(r"<title>(.*?)</title>", re.IGNORECASE | re.DOTALL)
UNEXPECTED_RESPONSE_MESSAGE = "Unexpected response from server"

T = TypeVar("T")


class ApiError(Exception):
    """Non-success answer (or no answer) from the record store."""

    def __init__(self, status: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.data = data


class MissingCredentialsError(ApiError):
    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(401, message)


def _error_from_response(response: httpx.Response) -> ApiError:
    status = response.status_code
    content_type = response.headers.get("content-type", "")
    fallback = f"API Error: {status}"

    if "application/json" in content_type:
        try:
            data = response.json()
        except ValueError:
            data = None
        detail = data.get("detail") if isinstance(data, dict) else None
        message = detail.strip() if isinstance(detail, str) and detail.strip() else fallback
        return ApiError(status, message, data)

    match = _TITLE_RE.search(response.text or "")
    message = match.group(1).strip() if match else fallback
    return ApiError(status, message, response.text)


def _unexpected(response: httpx.Response, data: Any) -> ApiError:
    logger.error(
        "Unreadable %s body from %s %s", response.status_code, response.request.method, response.request.url
    )
    return ApiError(response.status_code, UNEXPECTED_RESPONSE_MESSAGE, data)


def _lifecycle_choices_from_schema(schema: Any) -> List[Dict[str, Any]]:
    node = schema
    for key in ("actions", "POST", "override_factors", "child", "children", "lifecycle_stage", "choices"):
        if not isinstance(node, dict):
            return []
        node = node.get(key)
    return node if isinstance(node, list) else []


class RecordStore:
    """Async binding to the company/product scoped emissions API."""

    def __init__(
        self,
        session: SessionContext,
        base_url: str = API_URL,
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _company_path(self) -> str:
        return f"/companies/{self.session.company_id}"

    def _product_path(self) -> str:
        if self.session.product_id is None:
            raise ValueError("No product selected.")
        return f"{self._company_path()}/products/{self.session.product_id}"

    def _emissions_path(self, emission_id: Optional[int] = None) -> str:
        path = f"{self._product_path()}/emissions/{SECTION}/"
        return f"{path}{emission_id}/" if emission_id is not None else path

    def import_endpoint(self, extension: str) -> str:
        if extension in AAS_EXTENSIONS:
            return f"{self._company_path()}/products/import/aas_{extension}/"
        return f"{self._emissions_path()}import/tabular/"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        if not self.session.has_credentials:
            raise MissingCredentialsError()

        headers = {"Authorization": f"Bearer {self.session.access_token}"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(method, path, json=json, files=files, params=params, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("%s %s failed: %s", method, path, exc)
            raise ApiError(0, f"Network error: {exc}") from exc

        if response.is_error:
            error = _error_from_response(response)
            logger.error("API error (%s) on %s %s: %s", error.status, method, path, error.message)
            raise error
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if response.status_code in (204, 205) or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise _unexpected(response, response.text) from exc

    @classmethod
    def _parse(cls, response: httpx.Response, parse: Callable[[Any], T]) -> T:
        data = cls._json(response)
        try:
            return parse(data)
        except (TypeError, KeyError, AttributeError, ValueError) as exc:
            raise _unexpected(response, data) from exc

    async def list_emissions(self) -> List[EmissionRecord]:
        response = await self._request("GET", self._emissions_path())
        return self._parse(response, lambda data: [EmissionRecord.from_api(row) for row in data or []])

    async def get_emission(self, emission_id: int) -> EmissionRecord:
        response = await self._request("GET", self._emissions_path(emission_id))
        return self._parse(response, EmissionRecord.from_api)

    async def create_emission(self, payload: Dict[str, Any]) -> Any:
        return self._json(await self._request("POST", self._emissions_path(), json=payload))

    async def update_emission(self, emission_id: int, payload: Dict[str, Any]) -> Any:
        method = "PUT" if "distance" in payload and "weight" in payload else "PATCH"
        return self._json(await self._request(method, self._emissions_path(emission_id), json=payload))

    async def delete_emission(self, emission_id: int) -> None:
        await self._request("DELETE", self._emissions_path(emission_id))

    async def list_references(self) -> List[EmissionReference]:
        response = await self._request("GET", f"/reference/{SECTION}/")
        return self._parse(response, lambda data: [EmissionReference.from_api(row) for row in data or []])

    async def get_lifecycle_choices(self) -> List[LifecycleStageChoice]:
        response = await self._request("OPTIONS", self._emissions_path())
        return self._parse(
            response, lambda schema: [LifecycleStageChoice.from_api(c) for c in _lifecycle_choices_from_schema(schema)]
        )

    async def list_bom_line_items(self) -> List[BomLineItem]:
        response = await self._request("GET", f"{self._product_path()}/bom/")
        return self._parse(response, lambda data: [BomLineItem.from_api(row) for row in data or []])

    async def import_file(self, filename: str, content: bytes, extension: str) -> Any:
        response = await self._request(
            "POST",
            self.import_endpoint(extension),
            files={"file": (filename, content)},
        )
        return self._json(response)

    async def export_product_template(self, fmt: str) -> bytes:
        response = await self._request(
            "GET", f"{self._company_path()}/products/export/{fmt}/", params={"template": "true"}
        )
        return response.content

    async def export_emissions(self, fmt: str, template: bool = False) -> bytes:
        params = {"template": "true"} if template else None
        response = await self._request("GET", f"{self._emissions_path()}export/{fmt}/", params=params)
        return response.content
