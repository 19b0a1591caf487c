"""Tests for the OUI and Apple model lookup tables."""

from pathlib import Path

import pytest

from lan_scanner.apple_models import AppleModelDatabase, simplify_name
from lan_scanner.oui_lookup import OUILookup

OUI_CSV = """Registry,Assignment,Organization Name,Organization Address
MA-L,B827EB,Raspberry Pi Foundation,"Mitchell Wood House Caldecote GB CB23 7NU"
MA-L,3C22FB,"Apple, Inc.","1 Infinite Loop Cupertino CA US 95014"
MA-M,70B3D5123,Some Small Vendor,"Nowhere"
MA-L,BADROW
"""

APPLE_CSV = """Device_Type,Generation,Identifier
iPhone,iPhone SE (2nd generation),"iPhone12,8"
iPad Pro,iPad Pro (12.9-inch) (4th generation),"iPad8,11"
Mac mini,"Mac mini (M1, 2020)","Macmini9,1"
,Unknown,"Mystery1,1"
"""


class TestOUILookup:
    """Tests for MAC prefix vendor lookup."""

    def test_parses_ma_l_rows(self):
        lookup = OUILookup.from_csv_text(OUI_CSV)
        assert len(lookup) == 2
        assert lookup.vendor_for("b8:27:eb:12:34:56") == "Raspberry Pi Foundation"
        assert lookup.vendor_for("3C-22-FB-00-00-01") == "Apple, Inc."

    def test_unknown_prefix(self):
        lookup = OUILookup.from_csv_text(OUI_CSV)
        assert lookup.vendor_for("00:11:22:33:44:55") is None
        assert lookup.vendor_for(None) is None
        assert lookup.vendor_for("zz") is None

    def test_bundled_registry(self):
        lookup = OUILookup.load()
        assert len(lookup) > 0
        assert lookup.vendor_for("B8:27:EB:00:00:01") == "Raspberry Pi Foundation"

    def test_missing_file_is_empty(self, tmp_path: Path):
        lookup = OUILookup.load(tmp_path / "missing.csv")
        assert len(lookup) == 0

    def test_override_file(self, tmp_path: Path):
        path = tmp_path / "oui.csv"
        path.write_text(OUI_CSV)
        assert len(OUILookup.load(path)) == 2


class TestAppleModels:
    """Tests for Apple identifier lookup."""

    @pytest.mark.parametrize("device_type,generation,expected", [
        ("iPhone", "iPhone 12", "iPhone 12"),
        ("iPhone", "iPhone SE (2nd generation)", "iPhone SE"),
        ("iPad Pro", "iPad Pro (11-inch) (3rd generation)", "iPad Pro 11-inch"),
        ("iPad Pro", "iPad Pro (12.9-inch) (4th generation)", "iPad Pro 12.9-inch"),
        ("iPad", "iPad (9th generation)", "iPad"),
        ("MacBook Pro", "MacBook Pro (14-inch, 2021)", "MacBook Pro"),
    ])
    def test_simplify_name(self, device_type, generation, expected):
        assert simplify_name(device_type, generation) == expected

    def test_case_insensitive_lookup(self):
        db = AppleModelDatabase.from_csv_text(APPLE_CSV)
        assert db.name_for("macmini9,1") == "Mac mini"
        assert db.name_for("IPAD8,11") == "iPad Pro 12.9-inch"
        assert db.name_for("iPhone12,8") == "iPhone SE"

    def test_rows_without_type_skipped(self):
        db = AppleModelDatabase.from_csv_text(APPLE_CSV)
        assert len(db) == 3
        assert db.name_for("Mystery1,1") is None

    def test_missing_identifier(self):
        db = AppleModelDatabase.from_csv_text(APPLE_CSV)
        assert db.name_for(None) is None
        assert db.name_for("Unknown9,9") is None

    def test_bundled_models(self):
        db = AppleModelDatabase.load()
        assert db.name_for("AudioAccessory5,1") == "HomePod"
        assert db.name_for("MacBookPro18,3") == "MacBook Pro"
