"""Tests for diff normalization rules engine."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from provisioner.diff_normalizer import (
    DEFAULT_NORMALIZATION_RULES,
    DiffNormalizer,
    FieldChange,
    NormalizationConfig,
    NormalizationRule,
    NormalizationType,
    create_normalizer_from_env,
)

VNET_KIND = "Microsoft.Network/virtualNetworks"
SITE_KIND = "Microsoft.Web/sites"


class TestNormalizationRule:
    """Tests for NormalizationRule matching."""

    def test_matches_exact_kind(self) -> None:
        """Test exact kind matching."""
        rule = NormalizationRule(
            kind=VNET_KIND,
            path_pattern="*",
            normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        )

        assert rule.matches(VNET_KIND, "tags") is True
        assert rule.matches("Microsoft.Network/privateEndpoints", "tags") is False

    def test_matches_glob_kind(self) -> None:
        """Test glob pattern in kind."""
        rule = NormalizationRule(
            kind="Microsoft.Network/*",
            path_pattern="*",
            normalization_type=NormalizationType.CASE_INSENSITIVE,
        )

        assert rule.matches(VNET_KIND, "location") is True
        assert rule.matches(SITE_KIND, "location") is False

    def test_matches_recursive_path(self) -> None:
        """Test ** crosses path segments but * does not."""
        deep = NormalizationRule(
            kind="*",
            path_pattern="**.enabled",
            normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        )
        shallow = NormalizationRule(
            kind="*",
            path_pattern="siteConfig.*",
            normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        )

        assert deep.matches(SITE_KIND, "siteConfig.logs.enabled") is True
        assert shallow.matches(SITE_KIND, "siteConfig.alwaysOn") is True
        assert shallow.matches(SITE_KIND, "siteConfig.logs.enabled") is False

    def test_case_insensitive_matching(self) -> None:
        """Test kinds and paths match regardless of case."""
        rule = NormalizationRule(
            kind=VNET_KIND,
            path_pattern="addressSpace.addressPrefixes",
            normalization_type=NormalizationType.ARRAY_UNORDERED,
        )
        assert rule.matches(VNET_KIND.lower(), "addressspace.addressprefixes") is True


class TestDiffNormalizer:
    """Tests for value normalization."""

    @pytest.fixture
    def normalizer(self) -> DiffNormalizer:
        return DiffNormalizer()

    @pytest.mark.parametrize("empty", [None, {}, ""])
    def test_empty_tags_equivalent(self, normalizer: DiffNormalizer, empty: object) -> None:
        """Test {} / "" / missing tags compare equal."""
        assert normalizer.are_equivalent(empty, None, VNET_KIND, "tags")

    def test_location_case(self, normalizer: DiffNormalizer) -> None:
        """Test region spelling variations."""
        assert normalizer.are_equivalent("East US", "eastus", VNET_KIND, "location")
        assert not normalizer.are_equivalent("westus", "eastus", VNET_KIND, "location")

    def test_sku_name_case(self, normalizer: DiffNormalizer) -> None:
        """Test SKU names nested in a dict."""
        assert normalizer.are_equivalent({"name": "b1"}, {"name": "B1"}, SITE_KIND, "sku")

    def test_boolean_strings(self, normalizer: DiffNormalizer) -> None:
        """Test string booleans equal real ones."""
        assert normalizer.are_equivalent("true", True, SITE_KIND, "httpsOnly")
        assert not normalizer.are_equivalent("false", True, SITE_KIND, "httpsOnly")

    def test_default_value(self, normalizer: DiffNormalizer) -> None:
        """Test a missing value equals the provider default."""
        assert normalizer.are_equivalent(None, False, SITE_KIND, "httpsOnly")

    def test_numeric_string(self, normalizer: DiffNormalizer) -> None:
        """Test budget amounts given as strings."""
        assert normalizer.are_equivalent(
            "100", 100, "Microsoft.Consumption/budgets", "amount"
        )

    def test_url_trailing_slash(self, normalizer: DiffNormalizer) -> None:
        """Test repository URLs ignore trailing slashes and scheme case."""
        assert normalizer.are_equivalent(
            "HTTPS://github.com/example/app/",
            "https://github.com/example/app",
            "Microsoft.Web/sites/sourcecontrols",
            "repoUrl",
        )

    def test_address_prefix_order(self, normalizer: DiffNormalizer) -> None:
        """Test unordered address prefixes."""
        assert normalizer.are_equivalent(
            {"addressPrefixes": ["10.1.0.0/16", "10.0.0.0/16"]},
            {"addressPrefixes": ["10.0.0.0/16", "10.1.0.0/16"]},
            VNET_KIND,
            "addressSpace",
        )

    def test_nested_empty_children_dropped(self, normalizer: DiffNormalizer) -> None:
        """Test nested empty tags do not produce differences."""
        assert normalizer.are_equivalent(
            {"dhcpOptions": {"dnsServers": []}},
            {"dhcpOptions": {}},
            VNET_KIND,
            "properties",
        )

    def test_default_rules_can_be_disabled(self) -> None:
        """Test a normalizer without default rules compares strictly."""
        strict = DiffNormalizer(enable_default_rules=False)
        assert not strict.are_equivalent("East US", "eastus", VNET_KIND, "location")

    def test_custom_rules_added(self) -> None:
        """Test custom rules extend the defaults."""
        custom = NormalizationRule(
            kind="*",
            path_pattern="kind",
            normalization_type=NormalizationType.CASE_INSENSITIVE,
        )
        normalizer = DiffNormalizer(rules=[custom])

        assert normalizer.are_equivalent("Linux", "linux", SITE_KIND, "kind")
        assert len(DEFAULT_NORMALIZATION_RULES) > 0


class TestDiff:
    """Tests for field-level diffs."""

    def test_no_changes(self) -> None:
        """Test equivalent configurations yield no changes."""
        normalizer = DiffNormalizer()
        before = {"location": "eastus", "tags": {}}
        after = {"location": "EastUS"}

        assert normalizer.diff(VNET_KIND, before, after) == []

    def test_changed_added_and_removed_fields(self) -> None:
        """Test desired fields come first, then removed ones."""
        normalizer = DiffNormalizer()
        before = {"location": "eastus", "dnsServers": ["10.0.0.4"]}
        after = {"location": "westus", "tags": {"env": "prod"}}

        changes = normalizer.diff(VNET_KIND, before, after)

        assert changes == [
            FieldChange("location", "eastus", "westus"),
            FieldChange("tags", None, {"env": "prod"}),
            FieldChange("dnsServers", ["10.0.0.4"], None),
        ]

    def test_skip_fields(self) -> None:
        """Test skipped fields are left out of the diff."""
        normalizer = DiffNormalizer()
        changes = normalizer.diff(
            SITE_KIND,
            {"subnetId": "/old"},
            {"subnetId": "/new"},
            skip_fields={"subnetId"},
        )
        assert changes == []


class TestNormalizationConfig:
    """Tests for environment configuration."""

    def test_defaults_enabled(self) -> None:
        """Test default rules are on unless disabled."""
        with patch.dict(os.environ, {}, clear=True):
            assert NormalizationConfig.from_env().enable_default_rules is True

    def test_disable_from_env(self) -> None:
        """Test disabling default rules from environment."""
        with patch.dict(os.environ, {"ENABLE_DEFAULT_NORMALIZATION_RULES": "false"}, clear=True):
            normalizer = create_normalizer_from_env()

        assert not normalizer.are_equivalent("East US", "eastus", VNET_KIND, "location")
