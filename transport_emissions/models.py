from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


def _as_float_or_none(value: object) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _finite_or_zero(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


@dataclass
class OverrideFactor:
    lifecycle_stage: str = ""
    co2_biogenic: Optional[float] = 0.0
    co2_non_biogenic: Optional[float] = 0.0
    id: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "OverrideFactor":
        return cls(
            lifecycle_stage=str(data.get("lifecycle_stage") or ""),
            co2_biogenic=_as_float_or_none(data.get("co_2_emission_factor_biogenic")),
            co2_non_biogenic=_as_float_or_none(data.get("co_2_emission_factor_non_biogenic")),
            id=data.get("id"),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "lifecycle_stage": self.lifecycle_stage,
            "co_2_emission_factor_biogenic": self.co2_biogenic,
            "co_2_emission_factor_non_biogenic": self.co2_non_biogenic,
        }
        if self.id:
            payload = {"id": self.id, **payload}
        return payload


@dataclass(frozen=True)
class EmissionReference:
    id: int
    name: str
    emission_factors: Tuple[OverrideFactor, ...] = ()

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "EmissionReference":
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            emission_factors=tuple(OverrideFactor.from_api(f) for f in data.get("emission_factors") or []),
        )


@dataclass(frozen=True)
class LifecycleStageChoice:
    value: str
    display_name: str

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "LifecycleStageChoice":
        return cls(value=str(data.get("value", "")), display_name=str(data.get("display_name", "")))


@dataclass(frozen=True)
class BomLineItem:
    id: int
    quantity: Optional[float]
    product_name: str

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "BomLineItem":
        product = data.get("line_item_product") or data.get("product") or {}
        return cls(
            id=int(data["id"]),
            quantity=_as_float_or_none(data.get("quantity")),
            product_name=str(product.get("name") or ""),
        )


@dataclass
class EmissionRecord:
    """A persisted transport emission entry of one product."""

    id: Optional[int]
    distance: float
    weight: float
    reference: Optional[int] = None
    reference_details: Optional[EmissionReference] = None
    override_factors: List[OverrideFactor] = field(default_factory=list)
    line_items: List[int] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "EmissionRecord":
        details = data.get("reference_details")
        reference = data.get("reference")
        return cls(
            id=data.get("id"),
            distance=_finite_or_zero(data.get("distance")),
            weight=_finite_or_zero(data.get("weight")),
            reference=int(reference) if reference not in (None, "") else None,
            reference_details=EmissionReference.from_api(details) if details else None,
            override_factors=[OverrideFactor.from_api(f) for f in data.get("override_factors") or []],
            line_items=[int(i) for i in data.get("line_items") or []],
        )


def reference_factor_sum(record: EmissionRecord) -> float:
    """Sum biogenic and non-biogenic factors of the record's reference."""
    if record.reference_details is None or not record.reference_details.emission_factors:
        return 0.0
    return sum(
        _finite_or_zero(f.co2_biogenic) + _finite_or_zero(f.co2_non_biogenic)
        for f in record.reference_details.emission_factors
    )


def total_emissions(record: EmissionRecord) -> float:
    """Total kg CO2e of a record, preferring override factors over the reference."""
    if record.override_factors:
        return sum((f.co2_biogenic or 0.0) + (f.co2_non_biogenic or 0.0) for f in record.override_factors)
    return record.distance * record.weight * reference_factor_sum(record)
