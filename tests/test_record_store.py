from __future__ import annotations

import asyncio
import json
from typing import Callable, List

import httpx
import pytest

from transport_emissions.config import SessionContext
from transport_emissions.models import EmissionReference
from transport_emissions.record_store import (
    UNEXPECTED_RESPONSE_MESSAGE,
    ApiError,
    MissingCredentialsError,
    RecordStore,
)
from transport_emissions.workflow import TransportEmissionWorkflow

BASE_URL = "http://api.test/api"
EMISSIONS_PATH = "/api/companies/7/products/42/emissions/transport/"


def _store(handler: Callable[[httpx.Request], httpx.Response], session: SessionContext = None) -> RecordStore:
    return RecordStore(
        session or SessionContext("secret", 7, 42),
        base_url=BASE_URL,
        transport=httpx.MockTransport(handler),
    )


def _recording(response: httpx.Response, seen: List[httpx.Request]) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return response

    return handler


def test_list_emissions_parses_records() -> None:
    seen: List[httpx.Request] = []
    body = [
        {
            "id": 1,
            "distance": 120,
            "weight": 2.5,
            "reference": 3,
            "reference_details": {
                "id": 3,
                "name": "Truck",
                "emission_factors": [
                    {"lifecycle_stage": "A4", "co_2_emission_factor_biogenic": 0.1, "co_2_emission_factor_non_biogenic": 0.2}
                ],
            },
            "override_factors": [],
            "line_items": [11],
        }
    ]
    store = _store(_recording(httpx.Response(200, json=body), seen))

    records = asyncio.run(store.list_emissions())

    assert seen[0].method == "GET"
    assert seen[0].url.path == EMISSIONS_PATH
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert records[0].reference_details.name == "Truck"
    assert records[0].line_items == [11]


def test_update_uses_put_for_full_payload_and_patch_otherwise() -> None:
    seen: List[httpx.Request] = []
    store = _store(_recording(httpx.Response(200, json={"id": 5, "distance": 1, "weight": 2}), seen))

    asyncio.run(store.update_emission(5, {"distance": 1.0, "weight": 2.0, "reference": 3}))
    asyncio.run(store.update_emission(5, {"line_items": [1]}))

    assert [r.method for r in seen] == ["PUT", "PATCH"]
    assert seen[0].url.path == EMISSIONS_PATH + "5/"
    assert json.loads(seen[0].content)["reference"] == 3


def test_delete_accepts_empty_response() -> None:
    seen: List[httpx.Request] = []
    store = _store(_recording(httpx.Response(204), seen))

    assert asyncio.run(store.delete_emission(9)) is None
    assert seen[0].method == "DELETE"
    assert seen[0].url.path == EMISSIONS_PATH + "9/"


def test_lifecycle_choices_come_from_options_schema() -> None:
    seen: List[httpx.Request] = []
    schema = {
        "actions": {
            "POST": {
                "override_factors": {
                    "child": {
                        "children": {
                            "lifecycle_stage": {
                                "choices": [{"value": "A4", "display_name": "A4 - Transport to site"}]
                            }
                        }
                    }
                }
            }
        }
    }
    store = _store(_recording(httpx.Response(200, json=schema), seen))

    choices = asyncio.run(store.get_lifecycle_choices())

    assert seen[0].method == "OPTIONS"
    assert choices[0].value == "A4"
    assert choices[0].display_name == "A4 - Transport to site"


def test_lifecycle_choices_missing_from_schema() -> None:
    store = _store(lambda request: httpx.Response(200, json={"actions": {}}))

    assert asyncio.run(store.get_lifecycle_choices()) == []


def test_reference_and_bom_paths() -> None:
    seen: List[httpx.Request] = []
    store = _store(_recording(httpx.Response(200, json=[]), seen))

    asyncio.run(store.list_references())
    asyncio.run(store.list_bom_line_items())

    assert seen[0].url.path == "/api/reference/transport/"
    assert seen[1].url.path == "/api/companies/7/products/42/bom/"


def test_import_endpoint_routing() -> None:
    store = _store(lambda request: httpx.Response(200, json=[]))

    assert store.import_endpoint("csv") == "/companies/7/products/42/emissions/transport/import/tabular/"
    assert store.import_endpoint("aasx") == "/companies/7/products/import/aas_aasx/"


def test_import_file_posts_multipart() -> None:
    seen: List[httpx.Request] = []
    store = _store(_recording(httpx.Response(201, json=[{"id": 1}]), seen))

    result = asyncio.run(store.import_file("rows.csv", b"a,b\n1,2\n", "csv"))

    assert result == [{"id": 1}]
    assert seen[0].method == "POST"
    assert seen[0].headers["content-type"].startswith("multipart/form-data")
    assert b'name="file"; filename="rows.csv"' in seen[0].content


def test_exports_pass_template_flag() -> None:
    seen: List[httpx.Request] = []
    store = _store(_recording(httpx.Response(200, content=b"csv-bytes"), seen))

    assert asyncio.run(store.export_product_template("csv")) == b"csv-bytes"
    asyncio.run(store.export_emissions("xlsx", template=True))
    asyncio.run(store.export_emissions("xlsx"))

    assert seen[0].url.path == "/api/companies/7/products/export/csv/"
    assert seen[0].url.params["template"] == "true"
    assert seen[1].url.path == EMISSIONS_PATH + "export/xlsx/"
    assert seen[1].url.params["template"] == "true"
    assert "template" not in seen[2].url.params


def test_json_error_detail_is_raised() -> None:
    store = _store(lambda request: httpx.Response(400, json={"detail": "Reference is invalid."}))

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(store.create_emission({"distance": 1}))

    assert excinfo.value.status == 400
    assert excinfo.value.message == "Reference is invalid."
    assert excinfo.value.data == {"detail": "Reference is invalid."}


def test_html_error_uses_title() -> None:
    html = "<html><head><title>Bad Gateway</title></head><body></body></html>"
    store = _store(lambda request: httpx.Response(502, text=html, headers={"content-type": "text/html"}))

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(store.list_emissions())

    assert excinfo.value.message == "Bad Gateway"


def test_error_without_detail_falls_back_to_status() -> None:
    store = _store(lambda request: httpx.Response(500, json={"other": 1}))

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(store.list_emissions())

    assert str(excinfo.value) == "API Error: 500"


def test_network_failure_is_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    store = _store(handler)

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(store.list_emissions())

    assert excinfo.value.status == 0
    assert excinfo.value.message.startswith("Network error")


def test_missing_credentials_short_circuit() -> None:
    seen: List[httpx.Request] = []
    store = _store(_recording(httpx.Response(200, json=[]), seen), SessionContext(None, 7, 42))

    with pytest.raises(MissingCredentialsError):
        asyncio.run(store.list_emissions())

    assert seen == []


def test_product_scope_required() -> None:
    store = _store(lambda request: httpx.Response(200, json=[]), SessionContext("secret", 7, None))

    with pytest.raises(ValueError, match="No product selected"):
        asyncio.run(store.list_emissions())


def test_get_emission_path_and_body() -> None:
    seen: List[httpx.Request] = []
    store = _store(_recording(httpx.Response(200, json={"id": 3, "distance": 10, "weight": 2, "reference": 1}), seen))

    record = asyncio.run(store.get_emission(3))

    assert seen[0].method == "GET"
    assert seen[0].url.path == EMISSIONS_PATH + "3/"
    assert (record.id, record.distance, record.reference) == (3, 10.0, 1)


def test_create_does_not_parse_the_saved_record() -> None:
    body = {"id": 9, "distance": 1, "weight": 2, "line_items": [{"id": 3}]}
    store = _store(lambda request: httpx.Response(201, json=body))

    assert asyncio.run(store.create_emission({"distance": 1.0, "weight": 2.0, "reference": 1})) == body


def test_malformed_list_body_raises_api_error() -> None:
    store = _store(lambda request: httpx.Response(200, json=[{"id": 9, "line_items": [{"id": 3}]}]))

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(store.list_emissions())

    assert excinfo.value.status == 200
    assert excinfo.value.message == UNEXPECTED_RESPONSE_MESSAGE
    assert excinfo.value.data == [{"id": 9, "line_items": [{"id": 3}]}]


def test_non_json_body_raises_api_error() -> None:
    store = _store(lambda request: httpx.Response(200, text="<html>login</html>"))

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(store.list_references())

    assert excinfo.value.message == UNEXPECTED_RESPONSE_MESSAGE


def test_workflow_survives_unexpected_bodies() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": 9, "distance": 1, "weight": 2, "line_items": [{"id": 3}]})
        return httpx.Response(200, json=[{"id": 9, "line_items": [{"id": 3}]}])

    wf = TransportEmissionWorkflow(_store(handler))
    wf.cache.set_references([EmissionReference(1, "Truck")])

    async def scenario() -> bool:
        await wf.open_create()
        wf.update_field("distance", "1")
        wf.update_field("weight", "2")
        wf.select_reference("Truck")
        saved = await wf.submit_draft()
        await wf.settle()
        return saved

    assert asyncio.run(scenario())

    snap = wf.snapshot()
    assert not snap.is_submitting
    assert not snap.form_open
    assert snap.load_error == UNEXPECTED_RESPONSE_MESSAGE
