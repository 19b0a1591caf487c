"""
MAC OUI vendor lookup.

Loads an IEEE registry export (Registry,Assignment,Organization Name,...)
and answers vendor queries by the first three octets of a MAC address.
Only MA-L (24-bit) assignments are used.
"""

from __future__ import annotations

import csv
import io
import logging
from importlib import resources
from pathlib import Path
from typing import Optional

from ._types import normalize_mac

logger = logging.getLogger(__name__)


class OUILookup:
    """Preloaded OUI prefix -> organization table."""

    def __init__(self, table: Optional[dict[str, str]] = None):
        self._table: dict[str, str] = dict(table or {})

    @classmethod
    def from_csv_text(cls, text: str) -> "OUILookup":
        table: dict[str, str] = {}
        reader = csv.reader(io.StringIO(text))
        next(reader, None)  # header
        for row in reader:
            if len(row) < 3:
                continue
            registry, assignment, vendor = row[0].strip(), row[1].strip().upper(), row[2].strip()
            if registry != "MA-L" or len(assignment) != 6 or not vendor:
                continue
            table[assignment] = vendor
        return cls(table)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "OUILookup":
        """
        Load the registry from a file, or the bundled copy when path is None.

        A missing or unreadable file yields an empty lookup.
        """
        try:
            if path is None:
                text = resources.files("lan_scanner").joinpath("data/oui.csv").read_text(encoding="utf-8")
            else:
                text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to load OUI registry from {path or 'package data'}: {e}")
            return cls()
        lookup = cls.from_csv_text(text)
        logger.debug(f"Loaded {len(lookup)} OUI assignments")
        return lookup

    def __len__(self) -> int:
        return len(self._table)

    def vendor_for(self, mac: Optional[str]) -> Optional[str]:
        """Organization name for a MAC address, or None if unknown."""
        normalized = normalize_mac(mac)
        if not normalized:
            return None
        octets = normalized.split(":")
        if len(octets) < 3:
            return None
        return self._table.get("".join(octets[:3]))
