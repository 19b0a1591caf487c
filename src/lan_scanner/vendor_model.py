"""Vendor and model extraction from fingerprint key/value pairs."""

from __future__ import annotations

from typing import Optional

VENDOR_KEYS = ("vendor", "manufacturer", "brand", "manu", "mf", "company")
MODEL_KEYS = ("model", "devicemodel", "md", "mdl", "modelname", "product", "ty")


def _first_value(lowered: dict[str, str], keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = lowered.get(key, "").strip()
        if value:
            return value
    return None


def extract_vendor_model(fingerprints: dict[str, str]) -> tuple[Optional[str], Optional[str]]:
    """
    Find vendor and model values in TXT records or probe results.

    Keys are compared case-insensitively; the first non-empty match in
    key priority order wins.

    Returns:
        (vendor, model), either may be None
    """
    if not fingerprints:
        return None, None
    lowered = {key.lower(): value for key, value in fingerprints.items()}
    return _first_value(lowered, VENDOR_KEYS), _first_value(lowered, MODEL_KEYS)
