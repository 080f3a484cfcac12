from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from transport_emissions.config import SessionContext
from transport_emissions.models import (
    BomLineItem,
    EmissionRecord,
    EmissionReference,
    LifecycleStageChoice,
    OverrideFactor,
)
from transport_emissions.record_store import ApiError


class FakeRecordStore:
    """In-memory stand-in for the record store used by the workflow tests."""

    def __init__(self, session: Optional[SessionContext] = None) -> None:
        self.session = session or SessionContext("token", 7, 42)
        self.records: List[EmissionRecord] = []
        self.references = [
            EmissionReference(1, "Truck EURO 6", (OverrideFactor("A4", 0.01, 0.09),)),
            EmissionReference(2, "Rail freight", (OverrideFactor("A4", 0.0, 0.03),)),
        ]
        self.choices = [LifecycleStageChoice("A4", "A4 - Transport")]
        self.bom_items = [BomLineItem(11, 2.0, "Steel frame"), BomLineItem(12, 4.0, "Bolt M8")]
        self.calls: List[tuple] = []
        self.fail: Dict[str, ApiError] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.import_result: Any = [{"id": 1}]
        self._next_id = 100

    async def _enter(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        error = self.fail.get(name)
        if error is not None:
            raise error

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def list_emissions(self) -> List[EmissionRecord]:
        await self._enter("list_emissions")
        return list(self.records)

    async def create_emission(self, payload: Dict[str, Any]) -> EmissionRecord:
        await self._enter("create_emission", payload)
        self._next_id += 1
        record = EmissionRecord(
            id=self._next_id,
            distance=payload["distance"],
            weight=payload["weight"],
            reference=payload["reference"],
            line_items=list(payload.get("line_items", [])),
        )
        self.records.append(record)
        return record

    async def update_emission(self, emission_id: int, payload: Dict[str, Any]) -> EmissionRecord:
        await self._enter("update_emission", emission_id, payload)
        for index, record in enumerate(self.records):
            if record.id == emission_id:
                self.records[index] = EmissionRecord(
                    id=emission_id,
                    distance=payload["distance"],
                    weight=payload["weight"],
                    reference=payload["reference"],
                    line_items=list(payload.get("line_items", [])),
                )
                return self.records[index]
        raise ApiError(404, "Not found.")

    async def delete_emission(self, emission_id: int) -> None:
        await self._enter("delete_emission", emission_id)
        self.records = [r for r in self.records if r.id != emission_id]

    async def list_references(self) -> List[EmissionReference]:
        await self._enter("list_references")
        return list(self.references)

    async def get_lifecycle_choices(self) -> List[LifecycleStageChoice]:
        await self._enter("get_lifecycle_choices")
        return list(self.choices)

    async def list_bom_line_items(self) -> List[BomLineItem]:
        await self._enter("list_bom_line_items")
        return list(self.bom_items)

    async def import_file(self, filename: str, content: bytes, extension: str) -> Any:
        await self._enter("import_file", filename, extension)
        return self.import_result

    async def export_product_template(self, fmt: str) -> bytes:
        await self._enter("export_product_template", fmt)
        return b"distance,weight,reference\n"

    async def export_emissions(self, fmt: str, template: bool = False) -> bytes:
        await self._enter("export_emissions", fmt, template)
        return b"distance,weight,reference\n120,2,1\n"


@pytest.fixture
def store() -> FakeRecordStore:
    fake = FakeRecordStore()
    fake.records = [
        EmissionRecord(
            id=1,
            distance=120.0,
            weight=2.5,
            reference=1,
            override_factors=[OverrideFactor("A4", 0.2, 0.3, id=5)],
            line_items=[11, 99],
        ),
        EmissionRecord(id=2, distance=40.0, weight=1.0, reference=2),
    ]
    return fake
