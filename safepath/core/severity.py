"""Crime category → severity weight."""
from typing import Optional

VIOLENT_CRIMES = frozenset({"homicide", "murder", "assault", "robbery", "rape"})
PROPERTY_CRIMES = frozenset({"theft", "burglary", "auto theft"})

VIOLENT_WEIGHT = 10.0
PROPERTY_WEIGHT = 5.0
DEFAULT_WEIGHT = 2.0


def severity_tier(category: Optional[str]) -> str:
    key = (category or "").strip().lower()
    if key in VIOLENT_CRIMES:
        return "violent"
    if key in PROPERTY_CRIMES:
        return "property"
    return "other"


def severity_weight(category: Optional[str]) -> float:
    """Weight of a crime category: violent > property > anything else."""
    tier = severity_tier(category)
    if tier == "violent":
        return VIOLENT_WEIGHT
    if tier == "property":
        return PROPERTY_WEIGHT
    return DEFAULT_WEIGHT
