"""Tests for Pydantic models."""

import pytest
from pydantic import ValidationError

from provisioner.config import DeploymentSettings
from provisioner.models import (
    ResourceDeclaration,
    StackSpec,
    StateEntry,
    StateSnapshot,
)
from provisioner.references import ConfigReference, ResourceReference


class TestResourceDeclaration:
    """Tests for ResourceDeclaration model."""

    def test_valid_declaration(self) -> None:
        """Test creating a valid declaration."""
        decl = ResourceDeclaration(
            name="vnet",
            kind="Microsoft.Network/virtualNetworks",
            config={"location": "eastus"},
            dependsOn=["rg"],
        )
        assert decl.depends_on == ["rg"]
        assert decl.protect is False

    @pytest.mark.parametrize("name", ["", "1vnet", "has space", "a" * 129])
    def test_invalid_names(self, name: str) -> None:
        """Test that invalid logical names are rejected."""
        with pytest.raises(ValidationError):
            ResourceDeclaration(name=name, kind="Test/kind")

    def test_reserved_config_name(self) -> None:
        """Test that the settings root cannot be used as a resource name."""
        with pytest.raises(ValidationError, match="reserved"):
            ResourceDeclaration(name="config", kind="Test/kind")

    def test_empty_kind_rejected(self) -> None:
        """Test that kind is required."""
        with pytest.raises(ValidationError):
            ResourceDeclaration(name="vnet", kind="")

    def test_reference_values_allowed(self) -> None:
        """Test reference objects can live inside config."""
        decl = ResourceDeclaration(
            name="subnet",
            kind="Test/subnets",
            config={"virtualNetworkName": ResourceReference("vnet", "name")},
        )
        assert decl.config["virtualNetworkName"] == ResourceReference("vnet", "name")


class TestStateSnapshot:
    """Tests for StateSnapshot model."""

    def test_defaults(self) -> None:
        """Test a fresh snapshot has a lineage and serial 0."""
        snapshot = StateSnapshot()
        assert snapshot.serial == 0
        assert snapshot.lineage
        assert len(snapshot) == 0

    def test_distinct_lineages(self) -> None:
        """Test each fresh snapshot gets its own lineage."""
        assert StateSnapshot().lineage != StateSnapshot().lineage

    def test_json_round_trip_uses_aliases(self) -> None:
        """Test persisted JSON uses camelCase aliases."""
        snapshot = StateSnapshot(
            resources={
                "vnet": StateEntry(kind="Test/virtualNetworks", resourceId="/test/vnet"),
            }
        )
        data = snapshot.model_dump(mode="json", by_alias=True)

        assert data["resources"]["vnet"]["resourceId"] == "/test/vnet"
        restored = StateSnapshot.model_validate(data)
        assert restored.get("vnet").resource_id == "/test/vnet"
        assert "vnet" in restored

    def test_copy_is_deep(self) -> None:
        """Test copies do not share entries."""
        snapshot = StateSnapshot(resources={"vnet": StateEntry(kind="Test/virtualNetworks")})
        copy = snapshot.copy_snapshot()
        copy.resources["vnet"].outputs["id"] = "changed"

        assert snapshot.resources["vnet"].outputs == {}

    def test_dependents_of(self) -> None:
        """Test dependents are found from recorded dependencies."""
        snapshot = StateSnapshot(
            resources={
                "vnet": StateEntry(kind="Test/virtualNetworks"),
                "subnet": StateEntry(kind="Test/subnets", dependencies=["vnet"]),
                "app": StateEntry(kind="Test/sites", dependencies=["subnet"]),
            }
        )
        assert snapshot.dependents_of("vnet") == ["subnet"]
        assert snapshot.dependents_of("app") == []


class TestStackSpec:
    """Tests for StackSpec model."""

    def test_to_declarations_parses_references(self) -> None:
        """Test placeholders become reference objects in file order."""
        stack = StackSpec.model_validate(
            {
                "name": "paas",
                "resources": {
                    "vnet": {
                        "type": "Test/virtualNetworks",
                        "properties": {"location": "${config.location}"},
                    },
                    "subnet": {
                        "type": "Test/subnets",
                        "properties": {"virtualNetworkName": "${vnet.name}"},
                        "options": {"dependsOn": ["vnet"], "protect": True},
                    },
                },
            }
        )

        declarations = stack.to_declarations()

        assert [d.name for d in declarations] == ["vnet", "subnet"]
        assert declarations[0].config["location"] == ConfigReference("location")
        assert declarations[1].config["virtualNetworkName"] == ResourceReference("vnet", "name")
        assert declarations[1].depends_on == ["vnet"]
        assert declarations[1].protect is True

    def test_unknown_fields_rejected(self) -> None:
        """Test typos in stack files are caught."""
        with pytest.raises(ValidationError):
            StackSpec.model_validate(
                {"name": "paas", "resources": {"vnet": {"type": "T", "propertes": {}}}}
            )

    def test_to_settings_overrides_environment(self) -> None:
        """Test stack settings win over environment defaults."""
        stack = StackSpec.model_validate(
            {
                "name": "paas",
                "settings": {"location": "westeurope"},
                "variables": {"repoUrl": "https://example.com/app"},
            }
        )
        defaults = DeploymentSettings(
            location="eastus",
            resource_group_name="rg-env",
            variables={"branch": "main"},
        )

        settings = stack.to_settings(defaults)

        assert settings.location == "westeurope"
        assert settings.resource_group_name == "rg-env"
        assert settings.variables == {"branch": "main", "repoUrl": "https://example.com/app"}
