"""Resource dependency graph construction and ordering.

This module turns a set of declarations into a validated DAG:
1. Deployment settings are substituted for ``${config.*}`` references
2. Edges are inferred from ``${resource.attribute}`` references
3. Explicit ``dependsOn`` lists add further edges
4. Cycles and dangling references are rejected before anything is planned

DESIGN PHILOSOPHY:
- Ordering is a property of the graph, never of statement order
- Ties in the topological order are broken by declaration order, so the
  same input always yields the same plan

EXAMPLE:
```yaml
resources:
  vnet:
    type: Microsoft.Network/virtualNetworks
  subnet:
    type: Microsoft.Network/virtualNetworks/subnets
    properties:
      virtualNetworkName: ${vnet.name}   # edge vnet -> subnet
```
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .config import MAX_RESOURCES_PER_STACK, DeploymentSettings
from .errors import (
    CycleError,
    DeclarationError,
    DuplicateResourceError,
    UnknownKindError,
    UnknownReferenceError,
)
from .models import ResourceDeclaration
from .references import iter_resource_references, resolve_config_references

if TYPE_CHECKING:
    from .provider import Provider

logger = logging.getLogger(__name__)


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    declaration: ResourceDeclaration
    index: int
    depends_on: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.declaration.name


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource declarations.

    Nodes are kept in declaration order; edges point from a dependency to
    the resources that need it.
    """

    nodes: dict[str, DependencyNode] = field(default_factory=dict)
    settings: DeploymentSettings = field(default_factory=DeploymentSettings)

    def add_node(
        self,
        declaration: ResourceDeclaration,
        depends_on: Iterable[str] | None = None,
    ) -> None:
        """Add a declaration to the graph.

        Raises:
            DuplicateResourceError: If the name is already declared.
        """
        if declaration.name in self.nodes:
            raise DuplicateResourceError(
                f"Resource '{declaration.name}' is declared more than once",
                resource=declaration.name,
                operation="declare",
            )

        deps: list[str] = []
        for dep in depends_on or []:
            if dep not in deps:
                deps.append(dep)

        self.nodes[declaration.name] = DependencyNode(
            declaration=declaration,
            index=len(self.nodes),
            depends_on=deps,
        )

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def declaration(self, name: str) -> ResourceDeclaration:
        return self.nodes[name].declaration

    def dependencies(self, name: str) -> list[str]:
        """Direct dependencies of a node, in first-mention order."""
        return list(self.nodes[name].depends_on)

    def dependents(self, name: str) -> list[str]:
        """Direct dependents of a node, in declaration order."""
        return [n.name for n in self.nodes.values() if name in n.depends_on]

    def transitive_dependents(self, name: str) -> list[str]:
        """Every node that directly or indirectly depends on ``name``.

        Returned in topological order.
        """
        found: set[str] = set()
        stack = [name]
        while stack:
            current = stack.pop()
            for dependent in self.dependents(current):
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return [n for n in self.topological_sort() if n in found]

    def validate(self) -> None:
        """Validate that every edge target exists and the graph is acyclic.

        Uses a depth-first traversal that tracks in-progress nodes; reaching
        an in-progress node again means a back edge, i.e. a cycle.

        Raises:
            UnknownReferenceError: If an edge names an undeclared resource.
            CycleError: If a cycle is detected.
        """
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep not in self.nodes:
                    raise UnknownReferenceError(
                        f"Resource '{node.name}' depends on undeclared resource '{dep}'",
                        resource=node.name,
                        operation="declare",
                    )

        visited: set[str] = set()
        in_progress: list[str] = []

        def visit(name: str) -> None:
            if name in in_progress:
                start = in_progress.index(name)
                raise CycleError([*in_progress[start:], name])
            if name in visited:
                return
            in_progress.append(name)
            for dep in self.nodes[name].depends_on:
                visit(dep)
            in_progress.pop()
            visited.add(name)

        for name in self.nodes:
            visit(name)

    def topological_sort(self) -> list[str]:
        """Return resource names in dependency order (dependencies first).

        Kahn's algorithm with a priority queue keyed on declaration index,
        so among ready nodes the earliest declared always comes first.

        Raises:
            CycleError: If a cycle is detected.
        """
        self.validate()

        in_degree: dict[str, int] = {name: len(n.depends_on) for name, n in self.nodes.items()}
        dependents: dict[str, list[str]] = {name: [] for name in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.name)

        queue = [(n.index, name) for name, n in self.nodes.items() if in_degree[name] == 0]
        heapq.heapify(queue)

        result: list[str] = []
        while queue:
            _, current = heapq.heappop(queue)
            result.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(queue, (self.nodes[dependent].index, dependent))

        return result

    def get_ready(self, satisfied: set[str]) -> list[str]:
        """Get resources whose dependencies are all satisfied.

        Args:
            satisfied: Names already provisioned.

        Returns:
            Names that could be provisioned now, in declaration order.
        """
        return [
            node.name
            for node in self.nodes.values()
            if node.name not in satisfied
            and all(dep in satisfied for dep in node.depends_on)
        ]


def build_graph(
    declarations: Iterable[ResourceDeclaration],
    settings: DeploymentSettings | None = None,
    provider: Provider | None = None,
) -> DependencyGraph:
    """Build and validate the dependency graph for a declaration set.

    Args:
        declarations: Declarations in their source order.
        settings: Values for ``${config.*}`` references.
        provider: Optional provider used to check kinds and output attributes.

    Returns:
        A validated DependencyGraph.

    Raises:
        DuplicateResourceError: If two declarations share a name.
        UnknownReferenceError: If a reference names something undeclared.
        UnknownKindError: If the provider does not know a kind.
        CycleError: If the declarations form a cycle.
    """
    settings = settings or DeploymentSettings()
    graph = DependencyGraph(settings=settings)

    declarations = list(declarations)
    if len(declarations) > MAX_RESOURCES_PER_STACK:
        raise DeclarationError(
            f"Stack declares {len(declarations)} resources; "
            f"the maximum is {MAX_RESOURCES_PER_STACK}"
        )

    for declaration in declarations:
        try:
            config = resolve_config_references(declaration.config, settings.lookup)
        except KeyError as e:
            raise UnknownReferenceError(
                f"Resource '{declaration.name}' references unknown setting "
                f"'config.{e.args[0]}'",
                resource=declaration.name,
                operation="declare",
            ) from e

        resolved = declaration.model_copy(update={"config": config})

        deps: list[str] = [ref.resource for ref in iter_resource_references(config)]
        deps.extend(declaration.depends_on)
        graph.add_node(resolved, deps)

    if provider is not None:
        for node in graph.nodes.values():
            try:
                provider.schema(node.declaration.kind)
            except UnknownKindError as e:
                raise UnknownKindError(e.message, resource=node.name, operation="declare") from e

    # Check references against declared names and, if known, output schemas
    for node in graph.nodes.values():
        for ref in iter_resource_references(node.declaration.config):
            if ref.resource not in graph.nodes:
                raise UnknownReferenceError(
                    f"Resource '{node.name}' references undeclared resource "
                    f"'{ref.resource}' ({ref})",
                    resource=node.name,
                    operation="declare",
                )
            if provider is not None:
                target_kind = graph.declaration(ref.resource).kind
                if not provider.schema(target_kind).has_output(ref.attribute):
                    raise UnknownReferenceError(
                        f"Resource '{node.name}' references attribute '{ref.attribute}' "
                        f"which kind '{target_kind}' does not output ({ref})",
                        resource=node.name,
                        operation="declare",
                    )

    graph.validate()

    logger.debug(
        "Dependency graph built",
        extra={
            "resource_count": len(graph),
            "edge_count": sum(len(n.depends_on) for n in graph.nodes.values()),
        },
    )
    return graph
