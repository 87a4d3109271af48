"""Tests for stack file loading."""

from pathlib import Path
from unittest.mock import patch

import pytest

from provisioner.references import ConfigReference, ResourceReference
from provisioner.spec_loader import SpecLoadError, load_stack, parse_stack

SAMPLE_STACK = Path(__file__).parent.parent / "stacks" / "paas.yaml"


class TestParseStack:
    """Tests for parse_stack."""

    def test_flat_document(self) -> None:
        """Test a plain stack mapping."""
        stack = parse_stack(
            {
                "name": "demo",
                "resources": {
                    "vnet": {"type": "Microsoft.Network/virtualNetworks"},
                },
            }
        )
        assert stack.name == "demo"
        assert list(stack.resources) == ["vnet"]

    def test_wrapped_document(self) -> None:
        """Test the apiVersion/metadata/spec form takes its name from metadata."""
        stack = parse_stack(
            {
                "apiVersion": "provisioner/v1",
                "kind": "Stack",
                "metadata": {"name": "wrapped"},
                "spec": {"resources": {}},
            }
        )
        assert stack.name == "wrapped"

    def test_not_a_mapping(self) -> None:
        """Test lists and scalars are rejected."""
        with pytest.raises(SpecLoadError, match="YAML mapping"):
            parse_stack(["a", "b"], source="list.yaml")

    def test_validation_errors_formatted(self) -> None:
        """Test pydantic errors are listed with their location."""
        with pytest.raises(SpecLoadError) as exc_info:
            parse_stack({"name": "demo", "resources": {"vnet": {"properties": {}}}}, "bad.yaml")

        message = str(exc_info.value)
        assert "Validation failed for bad.yaml" in message
        assert "resources.vnet.type" in message

    def test_invalid_resource_name(self) -> None:
        """Test logical names are validated."""
        with pytest.raises(SpecLoadError, match="name must match pattern"):
            parse_stack({"name": "demo", "resources": {"9lives": {"type": "T/x"}}})


class TestLoadStack:
    """Tests for load_stack."""

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a nonexistent path."""
        with pytest.raises(SpecLoadError, match="not found"):
            load_stack(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test syntactically broken YAML."""
        path = tmp_path / "stack.yaml"
        path.write_text("name: [unclosed\n")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_stack(path)

    def test_size_limit(self, tmp_path: Path) -> None:
        """Test oversized stack files are refused before parsing."""
        path = tmp_path / "stack.yaml"
        path.write_text("name: demo\n")

        with patch("provisioner.spec_loader.MAX_STACK_FILE_SIZE_BYTES", 4):
            with pytest.raises(SpecLoadError, match="exceeds maximum size"):
                load_stack(path)

    def test_sample_stack(self) -> None:
        """Test the shipped PaaS stack loads and references parse."""
        stack = load_stack(SAMPLE_STACK)
        declarations = {d.name: d for d in stack.to_declarations()}

        assert stack.name == "paas"
        assert {"vnet", "webApp", "languageAccount", "budget"} <= set(declarations)
        assert declarations["privateEndpoint"].depends_on == ["languageAccount"]
        assert isinstance(declarations["vnet"].config["location"], ConfigReference)

        app_settings = declarations["webApp"].config["siteConfig"]["appSettings"]
        values = [setting["value"] for setting in app_settings]
        assert ResourceReference("languageAccount", "key1") in values
