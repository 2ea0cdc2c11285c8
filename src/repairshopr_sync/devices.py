"""
Device heuristics: device-info extraction, device category and repair type.

All three are keyword/regex heuristics over free text, kept apart from the
reconciler so their tables can be tuned (and tested) on their own.
"""

import re
from typing import Iterable, Mapping

# Checked in order; first category with a whole-word hit wins.
# Tablet and Laptop precede Smartphone so "Galaxy Tab" is not a phone.
DEFAULT_DEVICE_CATEGORIES: dict[str, list[str]] = {
    "Tablet": ["ipad", "tablet", "tab"],
    "Laptop": ["laptop", "macbook", "notebook", "thinkpad"],
    "Wearable": ["watch", "band"],
    "Smartphone": ["iphone", "samsung galaxy", "galaxy", "huawei", "oneplus", "phone"],
    "Desktop": ["desktop", "pc", "imac"],
}
OTHER_CATEGORY = "Other"

DEVICE_PATTERNS = [
    re.compile(r"iPhone\s+\d+(?:\s*(?:Pro\s*Max|Pro|Plus|Mini|Max))?", re.IGNORECASE),
    re.compile(r"Samsung\s+Galaxy\s+[\w+]+", re.IGNORECASE),
    re.compile(r"iPad\s+\w+", re.IGNORECASE),
    re.compile(r"MacBook\s+\w+", re.IGNORECASE),
    re.compile(r"Huawei\s+\w+", re.IGNORECASE),
    re.compile(r"OnePlus\s+\w+", re.IGNORECASE),
    re.compile(r"Lenovo\s+ThinkPad\s+\w+", re.IGNORECASE),
    re.compile(r"Nintendo\s+Switch(?:\s+\w+)?", re.IGNORECASE),
]

# (repair type, keywords) in priority order
REPAIR_TYPES: list[tuple[str, tuple[str, ...]]] = [
    ("Screen Repair", ("screen", "display", "lcd")),
    ("Battery Replacement", ("battery",)),
    ("Charging Port", ("charging", "port")),
    ("Camera Repair", ("camera",)),
    ("Water Damage", ("water", "liquid")),
    ("Software Issue", ("software", "update", "reset")),
    ("Button Repair", ("button", "home")),
]
GENERAL_REPAIR = "General Repair"


def extract_device_info(*texts: str | None) -> str:
    """First recognizable device name in the given texts, else ''."""
    for text in texts:
        if not text:
            continue
        for pattern in DEVICE_PATTERNS:
            match = pattern.search(text)
            if match:
                return " ".join(match.group(0).split())
    return ""


def classify_repair_type(description: str | None) -> str:
    if not description:
        return GENERAL_REPAIR
    lower = description.lower()
    for repair_type, keywords in REPAIR_TYPES:
        if any(k in lower for k in keywords):
            return repair_type
    return GENERAL_REPAIR


class DeviceCategorizer:
    """
    Keyword-driven device category inference.

    Example:
        DeviceCategorizer().categorize("Samsung Galaxy Tab S7")  # "Tablet"
    """

    def __init__(self, categories: Mapping[str, Iterable[str]] | None = None):
        table = categories if categories is not None else DEFAULT_DEVICE_CATEGORIES
        self._patterns: list[tuple[str, re.Pattern]] = []
        for category, keywords in table.items():
            words = [k.strip() for k in keywords if k and k.strip()]
            if not words:
                continue
            pattern = re.compile(
                r"\b(?:" + "|".join(re.escape(w) for w in words) + r")\b",
                re.IGNORECASE,
            )
            self._patterns.append((category, pattern))

    @property
    def categories(self) -> list[str]:
        return [c for c, _ in self._patterns] + [OTHER_CATEGORY]

    def categorize(self, *texts: str | None) -> str:
        for text in texts:
            if not text:
                continue
            for category, pattern in self._patterns:
                if pattern.search(text):
                    return category
        return OTHER_CATEGORY
