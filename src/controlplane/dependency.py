"""Resource kind dependency ordering and validation.

This module implements dependency management between sub-resource kinds:
1. Dependency graph construction from the kind declarations
2. Topological sorting and tiering for execution order
3. Cycle detection to prevent deadlocks

Creates and updates run tier by tier in ascending order (dependencies first).
Deletes run in descending order so that dependents are removed before the
objects they reference.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .models import ResourceKind

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


# Sub-resource kinds with the kinds they reference
KIND_DEPENDENCIES: dict[ResourceKind, list[ResourceKind]] = {
    # Warehouse - database before tenant schemas
    ResourceKind.WAREHOUSE_DATABASE: [],
    ResourceKind.WAREHOUSE_SCHEMA: [ResourceKind.WAREHOUSE_DATABASE],
    # Streaming sink - connector runs the uploaded plugin
    ResourceKind.CONNECTOR_PLUGIN: [],
    ResourceKind.SINK_CONNECTOR: [ResourceKind.CONNECTOR_PLUGIN],
    # BI assets - datasets query tenant schemas
    ResourceKind.BI_DATASET: [ResourceKind.WAREHOUSE_SCHEMA],
    ResourceKind.BI_ANALYSIS: [ResourceKind.BI_DATASET],
    ResourceKind.BI_DASHBOARD: [ResourceKind.BI_ANALYSIS],
    ResourceKind.BI_FOLDER: [],
    ResourceKind.BI_FOLDER_MEMBERSHIP: [ResourceKind.BI_DASHBOARD, ResourceKind.BI_FOLDER],
}


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of sub-resource kind dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    @classmethod
    def for_kinds(
        cls, dependencies: dict[ResourceKind, list[ResourceKind]] | None = None
    ) -> DependencyGraph:
        """Build and validate a graph from kind declarations.

        Args:
            dependencies: Kind to referenced kinds. Defaults to KIND_DEPENDENCIES.

        Raises:
            CyclicDependencyError: If the declarations contain a cycle.
        """
        graph = cls()
        for kind, deps in (dependencies or KIND_DEPENDENCIES).items():
            graph.add_node(kind.value, [d.value for d in deps])
        graph.validate()
        return graph

    def add_node(self, name: str, depends_on: list[str] | None = None) -> None:
        """Add a node to the dependency graph.

        Args:
            name: Node name.
            depends_on: Names this node depends on.
        """
        if name in self.nodes:
            if depends_on:
                self.nodes[name].depends_on = depends_on
        else:
            self.nodes[name] = DependencyNode(name=name, depends_on=depends_on or [])

        # Ensure all dependencies have nodes (even if not yet defined)
        for dep in depends_on or []:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(name=dep)

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        # Kahn's algorithm for cycle detection
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in in_degree:
                    in_degree[dep] += 1

        queue = [node for node, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1

            for dep in self.nodes[current].depends_on:
                if dep in in_degree:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        queue.append(dep)

        if processed != len(self.nodes):
            cycle_nodes = sorted(node for node, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    def tiers(self) -> list[list[str]]:
        """Group nodes into tiers by dependency depth.

        Tier 0 holds nodes without dependencies; every node sits one tier
        above its deepest dependency. Nodes within a tier are independent
        and may be processed concurrently.

        Returns:
            Tiers in ascending order, names sorted within a tier.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        depth: dict[str, int] = {}

        def resolve(name: str) -> int:
            if name not in depth:
                deps = self.nodes[name].depends_on
                depth[name] = 1 + max((resolve(dep) for dep in deps), default=-1)
            return depth[name]

        for name in self.nodes:
            resolve(name)

        result: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for name, level in depth.items():
            result[level].append(name)
        return [sorted(tier) for tier in result]
