from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import pandas as pd

from transport_emissions.models import (
    BomLineItem,
    EmissionRecord,
    EmissionReference,
    LifecycleStageChoice,
    reference_factor_sum,
    total_emissions,
)

OVERRIDES_TITLE = "Override Factors"
BOM_TITLE = "Associated BOM Items"
OVERRIDES_EMPTY_MESSAGE = "No overrides found."
BOM_EMPTY_MESSAGE = "No BOM items found."
UNKNOWN_ITEM = "Unknown Item"
MISSING_VALUE = "-"

OVERRIDE_COLUMNS = ["Lifecycle Stage", "Biogenic CO₂", "Non-Biogenic CO₂"]
BOM_COLUMNS = ["ID", "Product Name", "Quantity"]
TABLE_COLUMNS = [
    "id",
    "reference",
    "distance_km",
    "weight_tonnes",
    "emission_factor",
    "total_kg_co2e",
    "overrides",
    "bom_items",
]


@dataclass(frozen=True)
class ViewerTable:
    title: str
    rows: pd.DataFrame
    empty_message: str

    @property
    def is_empty(self) -> bool:
        return self.rows.empty


def _stage_label(value: str, choices: Sequence[LifecycleStageChoice]) -> str:
    match = next((c for c in choices if c.value == value), None)
    return match.display_name if match is not None else value


def build_override_view(
    record: EmissionRecord, choices: Sequence[LifecycleStageChoice]
) -> ViewerTable:
    """Resolve a record's override rows against the lifecycle vocabulary."""
    rows = [
        {
            "Lifecycle Stage": _stage_label(factor.lifecycle_stage, choices),
            "Biogenic CO₂": factor.co2_biogenic,
            "Non-Biogenic CO₂": factor.co2_non_biogenic,
        }
        for factor in record.override_factors
    ]
    return ViewerTable(OVERRIDES_TITLE, pd.DataFrame(rows, columns=OVERRIDE_COLUMNS), OVERRIDES_EMPTY_MESSAGE)


def build_bom_view(record: EmissionRecord, bom_items: Iterable[BomLineItem]) -> ViewerTable:
    """Resolve a record's line-item ids against the loaded BOM; stale ids stay visible."""
    by_id = {item.id: item for item in bom_items}
    rows = []
    for item_id in record.line_items:
        item = by_id.get(item_id)
        rows.append(
            {
                "ID": item_id,
                "Product Name": item.product_name if item is not None else UNKNOWN_ITEM,
                "Quantity": item.quantity if item is not None else MISSING_VALUE,
            }
        )
    return ViewerTable(BOM_TITLE, pd.DataFrame(rows, columns=BOM_COLUMNS), BOM_EMPTY_MESSAGE)


def reference_label(reference_id: Optional[int], references: Sequence[EmissionReference]) -> str:
    if reference_id is None or reference_id == 0:
        return "—"
    match = next((ref for ref in references if ref.id == reference_id), None)
    return match.name if match is not None and match.name else str(reference_id)


def build_emissions_table(
    records: Sequence[EmissionRecord], references: Sequence[EmissionReference]
) -> pd.DataFrame:
    """One display row per persisted record."""
    rows = []
    for record in records:
        total = total_emissions(record)
        rows.append(
            {
                "id": record.id,
                "reference": reference_label(record.reference, references),
                "distance_km": record.distance,
                "weight_tonnes": record.weight,
                "emission_factor": round(reference_factor_sum(record), 3),
                "total_kg_co2e": round(total, 3) if math.isfinite(total) else None,
                "overrides": len(record.override_factors),
                "bom_items": len(record.line_items),
            }
        )
    return pd.DataFrame(rows, columns=TABLE_COLUMNS)
