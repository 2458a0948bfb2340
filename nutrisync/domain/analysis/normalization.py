"""Nutrition payload normalization.

Providers return heterogeneous payloads: numbers as strings with units
("12 g"), nulls, negative or NaN values, confidences outside [0, 1].
This module turns one raw item mapping into a canonical ``NutritionItem``.

Rules:
  * missing / null / empty / unparsable value → None (unknown)
  * "1,200" is a thousands-grouped 1200; "12,5" and "0,500" are decimals
  * negative or non-finite value → None
  * confidence clamped to [0, 1]
  * items without a usable name are dropped

Domain-pure: no infrastructure dependencies.
"""

from __future__ import annotations

import math
import re
from typing import Any, Iterable, List, Mapping, Optional

from nutrisync.domain.analysis.models import NUTRIENT_FIELDS, NutritionItem

_NUMBER_RE = re.compile(
    r"[-+]?(?:"
    r"(?P<grouped>[1-9]\d{0,2}(?:,\d{3}(?!\d))+(?:\.\d+)?)"
    r"|(?P<plain>\d+(?:[.,]\d+)?)"
    r")"
)

# Alternative keys seen in provider payloads.
FIELD_ALIASES: Mapping[str, tuple[str, ...]] = {
    "calories": ("calories", "kcal", "energy"),
    "protein": ("protein", "proteins"),
    "carbs": ("carbs", "carbohydrates"),
    "fat": ("fat", "fats"),
    "sugar": ("sugar", "sugars"),
}


def coerce_nutrient(value: Any) -> Optional[float]:
    """Parse a nutrient value, returning None when unknown or invalid.

    >>> coerce_nutrient("12,5 g")
    12.5
    >>> coerce_nutrient("1,200 kcal")
    1200.0
    >>> coerce_nutrient(-3) is None
    True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = _NUMBER_RE.search(value)
        if not match:
            return None
        text = match.group(0)
        if match.group("grouped"):
            number = float(text.replace(",", ""))
        else:
            number = float(text.replace(",", "."))
    else:
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


def clamp_confidence(value: Any) -> Optional[float]:
    confidence = coerce_nutrient(value)
    if confidence is None:
        return None
    return min(confidence, 1.0)


def _first_present(raw: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def build_item(raw: Mapping[str, Any]) -> Optional[NutritionItem]:
    """Normalize one raw item; None when it has no usable name."""
    name = raw.get("name") or raw.get("label") or raw.get("food")
    if not isinstance(name, str) or not name.strip():
        return None

    values = {
        field: coerce_nutrient(_first_present(raw, FIELD_ALIASES[field]))
        for field in NUTRIENT_FIELDS
    }
    portion = raw.get("portionSize", raw.get("portion_size"))
    return NutritionItem(
        name=name.strip(),
        portion_size=str(portion).strip() if portion not in (None, "") else None,
        confidence=clamp_confidence(raw.get("confidence")),
        **values,
    )


def normalize_items(raw_items: Iterable[Any]) -> List[NutritionItem]:
    """Normalize a raw list, dropping entries that are not usable items."""
    items: List[NutritionItem] = []
    for raw in raw_items:
        if not isinstance(raw, Mapping):
            continue
        item = build_item(raw)
        if item is not None:
            items.append(item)
    return items
