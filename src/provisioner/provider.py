"""Provider interface consumed by the planner and the executor.

A provider owns everything cloud-specific:
1. Which kinds exist, and for each kind which configuration fields can be
   changed in place and which output attributes it produces (KindSchema)
2. Starting create/update/delete calls that complete asynchronously
   (long-running operations exposed as pollers)
3. Classifying failures as transient (retry) or fatal (give up on the node)

The planner reads schemas only; the executor is the only caller of the
begin_* methods.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import UnknownKindError
from .models import StateEntry

# Output attributes every kind provides
COMMON_OUTPUTS: frozenset[str] = frozenset({"id", "name"})


@dataclass(frozen=True)
class KindSchema:
    """Static description of one resource kind.

    Attributes:
        kind: Provider type tag (e.g. "Microsoft.Network/virtualNetworks").
        mutable_fields: Top-level config fields that can be updated in place.
        immutable_fields: Top-level config fields whose change forces replacement.
        outputs: Output attributes produced after provisioning.
        sensitive_outputs: Outputs holding secrets (access keys); never shown
            in plans or state listings.
    """

    kind: str
    mutable_fields: frozenset[str] = frozenset()
    immutable_fields: frozenset[str] = frozenset()
    outputs: frozenset[str] = COMMON_OUTPUTS
    sensitive_outputs: frozenset[str] = frozenset()

    def is_mutable(self, field_name: str) -> bool:
        """Whether a change to ``field_name`` can be applied in place.

        Fields listed in neither table are treated as immutable; replacing
        is always a valid way to reach the desired state.
        """
        if field_name in self.immutable_fields:
            return False
        return field_name in self.mutable_fields

    def has_output(self, attribute: str) -> bool:
        """Whether a (possibly dotted) attribute is rooted in a known output."""
        return attribute.split(".", 1)[0] in self.outputs

    def is_sensitive(self, attribute: str) -> bool:
        return attribute.split(".", 1)[0] in self.sensitive_outputs


@dataclass
class ProviderResult:
    """What a provider reports after a create or update reached a terminal state."""

    resource_id: str
    outputs: dict[str, Any] = field(default_factory=dict)


class Poller(Protocol):
    """The subset of azure.core.polling.LROPoller the executor relies on."""

    def result(self, timeout: float | None = None) -> Any: ...

    def done(self) -> bool: ...


class CompletedPoller:
    """Poller for operations that finish synchronously."""

    def __init__(self, value: Any = None) -> None:
        self._value = value

    def result(self, timeout: float | None = None) -> Any:  # noqa: ARG002
        return self._value

    def done(self) -> bool:
        return True


class Provider(ABC):
    """Capability the executor calls to change real infrastructure."""

    def kinds(self) -> Iterable[str]:
        """All kinds this provider can provision."""
        return list(self.schemas())

    def schema(self, kind: str) -> KindSchema:
        """Return the schema for ``kind``.

        Raises:
            UnknownKindError: If the provider does not support the kind.
        """
        schemas = self.schemas()
        if kind not in schemas:
            raise UnknownKindError(
                f"Unknown resource kind '{kind}'. Supported kinds: {sorted(schemas)}"
            )
        return schemas[kind]

    def close(self) -> None:
        """Release clients held by the provider."""

    @abstractmethod
    def schemas(self) -> dict[str, KindSchema]:
        """Mapping of kind to schema."""

    @abstractmethod
    def begin_create_or_update(
        self,
        name: str,
        kind: str,
        config: dict[str, Any],
        prior: StateEntry | None,
    ) -> Poller:
        """Start creating or updating a resource.

        Args:
            name: Logical resource name.
            kind: Resource kind.
            config: Fully resolved configuration.
            prior: Current state entry for updates, None for creates.

        Returns:
            Poller whose result() is a ProviderResult.

        Raises:
            TransientProviderError: For retryable failures.
            FatalProviderError: For permanent failures.
        """

    @abstractmethod
    def begin_delete(self, name: str, entry: StateEntry) -> Poller:
        """Start deleting a resource.

        The poller's result() returns once the provider confirms deletion.

        Raises:
            TransientProviderError: For retryable failures.
            FatalProviderError: For permanent failures.
        """
