"""Unit tests for the normalizer utilities.

Test Strategy:
1. Serial normalization is trimmed, uppercased and idempotent
2. Serial extraction from site-prefixed directory names
3. Software name grouping ignores version and architecture text
4. Device name keys and loose name matching
5. Edge cases (None, empty strings, punctuation-only input)

Each test follows the pattern:
- Given: A raw value as a source reports it
- When: The normalizer function is called
- Then: The key matches the expected canonical form
"""
import pytest

from app.services.sync.utils.normalizer import (
    extract_architecture,
    extract_serial,
    name_key,
    names_match,
    normalize_serial,
    normalize_software_name,
)


class TestNormalizeSerial:
    """Serial numbers are the cross-source join key."""

    # Canonical Form Tests
    # ─────────────────────────────────────────────────────────────

    def test_trims_and_uppercases(self):
        """Should strip surrounding whitespace and uppercase."""
        assert normalize_serial("  hkxrgk2 ") == "HKXRGK2"

    @pytest.mark.parametrize("raw", ["hkxrgk2", " 5cg1234xyz\t", "PF-3ABC9", "already UPPER"])
    def test_is_idempotent(self, raw):
        """normalize_serial(normalize_serial(s)) == normalize_serial(s)."""
        once = normalize_serial(raw)
        assert normalize_serial(once) == once

    def test_none_and_empty_give_empty_string(self):
        """Should be total: None and '' give ''."""
        assert normalize_serial(None) == ""
        assert normalize_serial("") == ""
        assert normalize_serial("   ") == ""


class TestExtractSerial:
    """Directory device names follow <site-prefix>-<serial>."""

    def test_extracts_suffix_after_first_hyphen(self):
        assert extract_serial("atl-HKXRGK2") == "HKXRGK2"

    def test_uppercases_extracted_serial(self):
        assert extract_serial("nyc-5cg1234xyz") == "5CG1234XYZ"

    def test_keeps_hyphens_inside_serial(self):
        """Should split on the first hyphen only."""
        assert extract_serial("nyc-ab-12") == "AB-12"

    def test_no_hyphen_returns_none(self):
        assert extract_serial("nohyphen") is None

    def test_empty_suffix_returns_none(self):
        assert extract_serial("atl-") is None
        assert extract_serial("atl-   ") is None

    def test_none_returns_none(self):
        assert extract_serial(None) is None
        assert extract_serial("") is None


class TestNormalizeSoftwareName:
    """Software titles group by product regardless of version/edition."""

    # Grouping Tests
    # ─────────────────────────────────────────────────────────────

    def test_versions_and_architectures_group_together(self):
        """'7-Zip 24.01 (x64)' and '7 Zip 23.0 x64' are the same product."""
        assert normalize_software_name("7-Zip 24.01 (x64)") == normalize_software_name("7 Zip 23.0 x64")
        assert normalize_software_name("7-Zip 24.01 (x64)") == "7zip"

    def test_strips_bit_width_tokens(self):
        assert normalize_software_name("Java 8 Update 401 (64-bit)") == normalize_software_name("Java 8 Update 401 32-bit")

    def test_strips_multi_part_versions(self):
        assert normalize_software_name("Google Chrome 126.0.6478.127") == "googlechrome"

    def test_different_products_stay_apart(self):
        assert normalize_software_name("Microsoft Teams") != normalize_software_name("Microsoft Edge")

    def test_none_and_empty(self):
        assert normalize_software_name(None) == ""
        assert normalize_software_name("") == ""

    def test_punctuation_only_input(self):
        """Should never raise, even when nothing alphanumeric remains."""
        assert normalize_software_name("--- (x64) ---") == ""


class TestExtractArchitecture:

    def test_maps_aliases(self):
        assert extract_architecture("7-Zip 24.01 (x64)") == "x64"
        assert extract_architecture("Runtime amd64") == "x64"
        assert extract_architecture("Tool 32-bit") == "x86"
        assert extract_architecture("Agent (arm64)") == "arm64"

    def test_no_token(self):
        assert extract_architecture("Notepad++") is None
        assert extract_architecture(None) is None


class TestNameMatching:
    """Loose device name comparison used as the last matching rule."""

    def test_name_key_drops_case_and_punctuation(self):
        assert name_key("ATL-HKXRGK2.corp") == "atlhkxrgk2corp"

    def test_equal_keys_match(self):
        assert names_match("ATL-HKXRGK2", "atl hkxrgk2")

    def test_containment_matches(self):
        """A truncated name matches the full one."""
        assert names_match("ATL-HKXRGK2", "ATL-HKXRGK2.corp.example.com")

    def test_short_keys_need_equality(self):
        """'pc' must not match every name containing it."""
        assert not names_match("pc", "reception-pc-01")
        assert names_match("pc", "P.C.")

    def test_empty_names_never_match(self):
        assert not names_match(None, "laptop")
        assert not names_match("", "")
