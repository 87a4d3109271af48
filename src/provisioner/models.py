"""Pydantic models for declarations, state snapshots and stack files.

These models provide:
1. Type-safe YAML parsing of stack files
2. Validation at the boundary (fail fast, fail loudly)
3. JSON round-tripping of the persisted state snapshot
"""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .config import VALID_RESOURCE_NAME_PATTERN, DeploymentSettings
from .references import CONFIG_ROOT, parse_value

# =============================================================================
# Declarations
# =============================================================================


class ResourceDeclaration(BaseModel):
    """Desired state of one resource.

    ``config`` values may be literals or reference objects from
    ``provisioner.references``; references are what give the graph its edges.
    """

    model_config = {
        "extra": "forbid",
        "populate_by_name": True,
        "arbitrary_types_allowed": True,
    }

    name: str
    kind: Annotated[str, Field(min_length=1)]
    config: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    # A protected resource is never deleted or replaced by a plan
    protect: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_RESOURCE_NAME_PATTERN, v):
            raise ValueError(f"name must match pattern {VALID_RESOURCE_NAME_PATTERN}: {v}")
        if v == CONFIG_ROOT:
            raise ValueError(f"'{CONFIG_ROOT}' is reserved for deployment settings")
        return v


# =============================================================================
# State
# =============================================================================


class StateEntry(BaseModel):
    """Last-applied state of one resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    kind: str
    config: dict[str, Any] = Field(default_factory=dict)
    resource_id: str | None = Field(None, alias="resourceId")
    outputs: dict[str, Any] = Field(default_factory=dict)

    # Needed to order deletes once the declaration itself is gone
    dependencies: list[str] = Field(default_factory=list)
    protect: bool = False

    # Masked wherever the entry is displayed
    sensitive_fields: list[str] = Field(default_factory=list, alias="sensitiveFields")
    sensitive_outputs: list[str] = Field(default_factory=list, alias="sensitiveOutputs")

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="createdAt")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="updatedAt")


def _new_lineage() -> str:
    return str(uuid.uuid4())


class StateSnapshot(BaseModel):
    """Everything that was provisioned, keyed by logical resource name.

    ``lineage`` identifies one stack's history; ``serial`` increases by one
    on every save. Together they let an apply detect that somebody else
    wrote the state after the plan was computed.
    """

    model_config = {"extra": "ignore"}

    version: int = 1
    lineage: str = Field(default_factory=_new_lineage)
    serial: int = 0
    resources: dict[str, StateEntry] = Field(default_factory=dict)

    def get(self, name: str) -> StateEntry | None:
        return self.resources.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.resources

    def __len__(self) -> int:
        return len(self.resources)

    def copy_snapshot(self) -> StateSnapshot:
        """Deep copy, used as the executor's working snapshot."""
        return self.model_copy(deep=True)

    def dependents_of(self, name: str) -> list[str]:
        """Names of recorded resources that list ``name`` as a dependency."""
        return [n for n, entry in self.resources.items() if name in entry.dependencies]


# =============================================================================
# Stack files
# =============================================================================


class ResourceOptions(BaseModel):
    """Per-resource options in a stack file."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    protect: bool = False


class ResourceSpec(BaseModel):
    """One entry under ``resources:`` in a stack file."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: Annotated[str, Field(min_length=1)]
    properties: dict[str, Any] = Field(default_factory=dict)
    options: ResourceOptions = Field(default_factory=ResourceOptions)


class StackSettings(BaseModel):
    """Stack-level deployment settings."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    subscription_id: str | None = Field(None, alias="subscriptionId")
    location: str | None = None
    resource_group_name: str | None = Field(None, alias="resourceGroupName")


class StackSpec(BaseModel):
    """A YAML stack: settings, variables and resource declarations.

    Example:
        name: paas
        settings:
          location: eastus
          resourceGroupName: rg-paas
        variables:
          repoUrl: https://github.com/example/app
        resources:
          vnet:
            type: Microsoft.Network/virtualNetworks
            properties:
              name: vnet-paas
              location: ${config.location}
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=64)]
    description: str | None = None
    settings: StackSettings = Field(default_factory=StackSettings)
    variables: dict[str, Any] = Field(default_factory=dict)
    resources: dict[str, ResourceSpec] = Field(default_factory=dict)

    def to_declarations(self) -> list[ResourceDeclaration]:
        """Convert stack entries to declarations, parsing ``${...}`` placeholders.

        Declaration order follows the file order, which keeps topological
        ties stable between runs.
        """
        return [
            ResourceDeclaration(
                name=name,
                kind=spec.type,
                config=parse_value(spec.properties),
                depends_on=list(spec.options.depends_on),
                protect=spec.options.protect,
            )
            for name, spec in self.resources.items()
        ]

    def to_settings(self, defaults: DeploymentSettings | None = None) -> DeploymentSettings:
        """Merge stack settings over environment defaults."""
        base = defaults or DeploymentSettings()
        return DeploymentSettings(
            subscription_id=self.settings.subscription_id or base.subscription_id,
            location=self.settings.location or base.location,
            resource_group_name=self.settings.resource_group_name or base.resource_group_name,
            variables={**base.variables, **self.variables},
        )
