from __future__ import annotations

from io import BytesIO
from typing import Sequence

import pandas as pd
from openpyxl.styles import Font

from transport_emissions.models import EmissionRecord, EmissionReference, LifecycleStageChoice
from transport_emissions.viewers import build_emissions_table, build_override_view

EMISSIONS_SHEET = "Transport Emissions"
OVERRIDES_SHEET = "Override Factors"


def _style_sheet(writer: pd.ExcelWriter, sheet_name: str) -> None:
    ws = writer.book[sheet_name]

    for cell in ws[1]:
        cell.font = Font(bold=True)

    for row in ws.iter_rows(min_row=2):
        for cell in row:
            if isinstance(cell.value, float):
                cell.number_format = "0.000"


def _override_rows(
    records: Sequence[EmissionRecord], choices: Sequence[LifecycleStageChoice]
) -> pd.DataFrame:
    frames = []
    for record in records:
        view = build_override_view(record, choices)
        if view.is_empty:
            continue
        frame = view.rows.copy()
        frame.insert(0, "emission_id", record.id)
        frames.append(frame)
    if not frames:
        return pd.DataFrame(columns=["emission_id", "Lifecycle Stage", "Biogenic CO₂", "Non-Biogenic CO₂"])
    return pd.concat(frames, ignore_index=True)


def export_emissions_workbook(
    records: Sequence[EmissionRecord],
    references: Sequence[EmissionReference],
    choices: Sequence[LifecycleStageChoice] = (),
) -> BytesIO:
    """Write the loaded transport emissions and their overrides to an xlsx buffer."""
    buffer = BytesIO()

    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        build_emissions_table(records, references).to_excel(writer, sheet_name=EMISSIONS_SHEET, index=False)
        _override_rows(records, choices).to_excel(writer, sheet_name=OVERRIDES_SHEET, index=False)

        for sheet in [EMISSIONS_SHEET, OVERRIDES_SHEET]:
            _style_sheet(writer, sheet)

    buffer.seek(0)
    return buffer
