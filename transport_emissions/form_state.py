from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from transport_emissions.models import EmissionRecord, EmissionReference, OverrideFactor

TEXT_FIELDS = ("distance", "weight", "reference")
OVERRIDE_FIELDS = ("lifecycle_stage", "biogenic", "non_biogenic")


def _number_to_text(value: Optional[float]) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _parse_number(text: str) -> Optional[float]:
    try:
        number = float(text.strip())
    except (AttributeError, ValueError):
        return None
    return number if math.isfinite(number) else None


@dataclass
class EmissionDraft:
    """Text-backed copy of a record while it is being edited."""

    distance: str = ""
    weight: str = ""
    reference: str = ""
    override_factors: List[OverrideFactor] = field(default_factory=list)
    line_items: List[int] = field(default_factory=list)

    def copy(self) -> "EmissionDraft":
        return EmissionDraft(
            distance=self.distance,
            weight=self.weight,
            reference=self.reference,
            override_factors=[replace(f) for f in self.override_factors],
            line_items=list(self.line_items),
        )


def validate_draft(draft: EmissionDraft) -> Tuple[bool, str]:
    """Validate a draft before it is sent to the record store."""
    if _parse_number(draft.distance) is None:
        return False, "Please enter a valid distance."
    if _parse_number(draft.weight) is None:
        return False, "Please enter a valid weight."
    if not draft.reference.strip():
        return False, "Please select a reference emission factor."

    for factor in draft.override_factors:
        if not factor.lifecycle_stage or factor.co2_biogenic is None or factor.co2_non_biogenic is None:
            return False, "Please fill in all override fields correctly."

    return True, ""


class EmissionFormState:
    """The single in-progress draft of the create/edit form."""

    def __init__(self) -> None:
        self.draft = EmissionDraft()
        self.target_id: Optional[int] = None

    @property
    def is_edit(self) -> bool:
        return self.target_id is not None

    def open_for_create(self) -> None:
        self.draft = EmissionDraft()
        self.target_id = None

    def open_for_edit(self, record: EmissionRecord) -> None:
        self.draft = EmissionDraft(
            distance=_number_to_text(record.distance),
            weight=_number_to_text(record.weight),
            reference=str(record.reference) if record.reference is not None else "",
            override_factors=[
                OverrideFactor(
                    lifecycle_stage=f.lifecycle_stage,
                    co2_biogenic=f.co2_biogenic if f.co2_biogenic is not None else 0.0,
                    co2_non_biogenic=f.co2_non_biogenic if f.co2_non_biogenic is not None else 0.0,
                    id=f.id,
                )
                for f in record.override_factors
            ],
            line_items=list(record.line_items),
        )
        self.target_id = record.id

    def update_field(self, name: str, value: str) -> None:
        if name not in TEXT_FIELDS:
            raise ValueError(f"Unknown form field: {name}")
        setattr(self.draft, name, "" if value is None else str(value))

    def select_reference(self, name: Optional[str], references: Sequence[EmissionReference]) -> None:
        selected = next((ref for ref in references if ref.name == name), None) if name else None
        self.draft.reference = str(selected.id) if selected is not None else ""

    def selected_reference_name(self, references: Sequence[EmissionReference]) -> str:
        if not self.draft.reference:
            return ""
        return next((ref.name for ref in references if str(ref.id) == self.draft.reference), "")

    def add_override(self) -> None:
        self.draft.override_factors.append(OverrideFactor())

    def update_override(self, index: int, field_name: str, raw: str) -> None:
        if field_name not in OVERRIDE_FIELDS:
            raise ValueError(f"Unknown override field: {field_name}")
        factor = self.draft.override_factors[index]
        if field_name == "lifecycle_stage":
            factor.lifecycle_stage = raw
            return

        value = None if str(raw).strip() == "" else _parse_number(str(raw))
        if field_name == "biogenic":
            factor.co2_biogenic = value
        else:
            factor.co2_non_biogenic = value

    def remove_override(self, index: int) -> None:
        del self.draft.override_factors[index]

    def add_line_item(self, item_id: Optional[int]) -> None:
        if item_id and item_id not in self.draft.line_items:
            self.draft.line_items.append(int(item_id))

    def remove_line_item(self, item_id: int) -> None:
        self.draft.line_items = [i for i in self.draft.line_items if i != item_id]

    @property
    def is_incomplete(self) -> bool:
        return not (self.draft.distance.strip() and self.draft.weight.strip() and self.draft.reference.strip())

    def to_payload(self) -> Dict[str, Any]:
        """Build the create/update body; call after ``validate_draft`` passed."""
        payload: Dict[str, Any] = {
            "distance": _parse_number(self.draft.distance),
            "weight": _parse_number(self.draft.weight),
            "reference": int(self.draft.reference) if self.draft.reference else 0,
            "override_factors": [f.to_payload() for f in self.draft.override_factors],
        }
        # an update always sends line_items, possibly empty
        if self.draft.line_items or self.is_edit:
            payload["line_items"] = list(self.draft.line_items)
        return payload
