"""
Apple model identifier database.

Maps identifiers such as "MacBookPro18,3" or "AudioAccessory5,1" onto a
simplified family name ("MacBook Pro", "HomePod", "iPad Pro 11-inch").
"""

from __future__ import annotations

import csv
import io
import logging
import re
from importlib import resources
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_PARENTHETICAL = re.compile(r"\s*\([^)]*\)")
_INCH = re.compile(r"(\d+(?:\.\d+)?)-inch")


def simplify_name(device_type: str, generation: str) -> str:
    """
    Collapse a marketing generation string into a family name.

    iPhones keep their generation ("iPhone 12"), iPads keep the screen size
    ("iPad Pro 12.9-inch"), everything else uses the device type.
    """
    device_type = device_type.strip()
    generation = generation.strip()
    if device_type == "iPhone":
        name = _PARENTHETICAL.sub("", generation).strip()
        return name or device_type
    if device_type.startswith("iPad"):
        inch = _INCH.search(generation)
        if inch:
            return f"{device_type} {inch.group(1)}-inch"
        return device_type
    return device_type


class AppleModelDatabase:
    """Case-insensitive identifier -> family name table."""

    def __init__(self, table: Optional[dict[str, str]] = None):
        self._table = {key.lower(): value for key, value in (table or {}).items()}

    @classmethod
    def from_csv_text(cls, text: str) -> "AppleModelDatabase":
        table: dict[str, str] = {}
        for row in csv.DictReader(io.StringIO(text)):
            identifier = (row.get("Identifier") or "").strip()
            device_type = row.get("Device_Type") or ""
            if not identifier or not device_type.strip():
                continue
            table[identifier] = simplify_name(device_type, row.get("Generation") or "")
        return cls(table)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "AppleModelDatabase":
        """Load the bundled model list, or an override file."""
        try:
            if path is None:
                text = resources.files("lan_scanner").joinpath("data/apple_models.csv").read_text(encoding="utf-8")
            else:
                text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to load Apple model list from {path or 'package data'}: {e}")
            return cls()
        return cls.from_csv_text(text)

    def __len__(self) -> int:
        return len(self._table)

    def name_for(self, identifier: Optional[str]) -> Optional[str]:
        if not identifier:
            return None
        return self._table.get(identifier.strip().lower())
