from __future__ import annotations

import math
from typing import Any

from app.ebr.errors import ValidationError

TOLERANCE = 0.001


def _material_rows(section_data: Any) -> list:
    material = section_data.get("material") if isinstance(section_data, dict) else None
    if isinstance(material, dict) and isinstance(material.get("rows"), list):
        return material["rows"]
    if isinstance(material, list):
        return material
    return []


def _sum(rows: list, key: str) -> float:
    total = 0.0
    for row in rows:
        if not isinstance(row, dict):
            continue
        try:
            value = float(row.get(key))
        except (TypeError, ValueError):
            continue
        if math.isfinite(value):
            total += value
    return total


def has_starting_materials(section_data: Any) -> bool:
    return isinstance(section_data, dict) and bool(
        section_data.get("material") or section_data.get("StartingMaterials")
    )


def validate_starting_materials(section_data: Any, planned_quantity: float | None) -> None:
    """
    Starting material balance: actual weights add up to the planned batch
    quantity and the composition column adds up to 100%.
    """
    rows = _material_rows(section_data)
    if not rows:
        raise ValidationError("Validation error: Starting Material table is empty or invalid.")

    total_actual = _sum(rows, "actualWt") or _sum(rows, "actualWeight")
    total_composition = _sum(rows, "composition")
    planned = float(planned_quantity or 0)

    if abs(total_actual - planned) > TOLERANCE:
        raise ValidationError(
            f"Validation error: Actual weight total ({total_actual:g}) must match planned quantity ({planned:g})."
        )
    if abs(total_composition - 100) > TOLERANCE:
        raise ValidationError(
            f"Validation error: Composition percentages must total 100 (received {total_composition:g})."
        )
