"""Change-set computation between two desired configurations.

Compares the previously applied sub-resource map against the new one:
- keys only in the previous map are deleted
- keys only in the new map are created
- keys in both with unequal specs are updated, or replaced when an
  immutable field changed
- keys in both with equal specs are left alone

Kinds listed in a replacement trigger are rebuilt from scratch: every
previous key of the kind is deleted and every new key is created, whatever
their specs.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .dependency import DependencyGraph
from .models import DesiredResource, ResourceKind

logger = logging.getLogger(__name__)


class ChangeAction(str, Enum):
    """What happens to one sub-resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"


@dataclass(frozen=True)
class Change:
    """A single sub-resource change."""

    key: str
    kind: ResourceKind
    action: ChangeAction
    old_spec: dict[str, Any] | None = None
    new_spec: dict[str, Any] | None = None


@dataclass
class ChangeSet:
    """Ordered changes for one lifecycle request.

    A replace appears once in to_delete and once in to_create.
    """

    to_delete: list[Change] = field(default_factory=list)
    to_create: list[Change] = field(default_factory=list)
    to_update: list[Change] = field(default_factory=list)
    replaced_kinds: frozenset[ResourceKind] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not (self.to_delete or self.to_create or self.to_update)

    @property
    def total(self) -> int:
        return len(self.to_delete) + len(self.to_create) + len(self.to_update)

    def keys(self, action: ChangeAction | None = None) -> set[str]:
        """Return keys of changes, optionally filtered by action."""
        return {
            c.key
            for c in (*self.to_delete, *self.to_create, *self.to_update)
            if action is None or c.action == action
        }

    def summary(self) -> dict[str, int]:
        """Count changes per action."""
        replaced = sum(1 for c in self.to_create if c.action == ChangeAction.REPLACE)
        return {
            "create": len(self.to_create) - replaced,
            "update": len(self.to_update),
            "delete": len(self.to_delete) - replaced,
            "replace": replaced,
        }


def changed_fields(old: Mapping[str, Any], new: Mapping[str, Any]) -> list[str]:
    """Return top-level spec fields whose values differ."""
    return sorted(k for k in set(old) | set(new) if old.get(k) != new.get(k))


class DiffEngine:
    """Computes ordered change-sets over keyed sub-resource maps."""

    def __init__(
        self,
        graph: DependencyGraph | None = None,
        immutable_fields: Mapping[ResourceKind, Iterable[str]] | None = None,
        reapply_kinds: Iterable[ResourceKind] = (),
    ) -> None:
        """Initialize the diff engine.

        Args:
            graph: Kind dependency graph used for ordering.
            immutable_fields: Per kind, spec fields that cannot change in place.
            reapply_kinds: Kinds whose unchanged keys are updated whenever
                any other key of the same kind changes.
        """
        self._graph = graph or DependencyGraph.for_kinds()
        self._immutable = {k: frozenset(v) for k, v in (immutable_fields or {}).items()}
        self._reapply = frozenset(reapply_kinds)
        self._tier = {
            name: index for index, tier in enumerate(self._graph.tiers()) for name in tier
        }

    def requires_replace(self, kind: ResourceKind, old: Mapping[str, Any], new: Mapping[str, Any]) -> list[str]:
        """Return the immutable fields that differ between two specs."""
        immutable = self._immutable.get(kind, frozenset())
        return [f for f in changed_fields(old, new) if f in immutable or "*" in immutable]

    def diff(
        self,
        previous: Mapping[str, DesiredResource],
        new: Mapping[str, DesiredResource],
        replace_kinds: Iterable[ResourceKind] = (),
    ) -> ChangeSet:
        """Compute the change-set turning previous into new.

        Args:
            previous: Previously applied sub-resources by key.
            new: Desired sub-resources by key.
            replace_kinds: Kinds to rebuild from scratch.

        Returns:
            Change-set with deletes in descending and creates/updates in
            ascending dependency order.
        """
        replace_kinds = frozenset(replace_kinds)
        to_delete: list[Change] = []
        to_create: list[Change] = []
        to_update: list[Change] = []
        unchanged: list[DesiredResource] = []

        for key in sorted(set(previous) - set(new)):
            old = previous[key]
            to_delete.append(Change(key, old.kind, ChangeAction.DELETE, old_spec=old.spec))

        for key in sorted(set(new) - set(previous)):
            desired = new[key]
            to_create.append(Change(key, desired.kind, ChangeAction.CREATE, new_spec=desired.spec))

        for key in sorted(set(previous) & set(new)):
            old, desired = previous[key], new[key]
            if old.kind in replace_kinds or desired.kind in replace_kinds or old.kind != desired.kind:
                to_delete.append(Change(key, old.kind, ChangeAction.REPLACE, old.spec, desired.spec))
                to_create.append(Change(key, desired.kind, ChangeAction.REPLACE, old.spec, desired.spec))
                continue
            if old.spec == desired.spec:
                unchanged.append(desired)
                continue
            if self.requires_replace(desired.kind, old.spec, desired.spec):
                to_delete.append(Change(key, old.kind, ChangeAction.REPLACE, old.spec, desired.spec))
                to_create.append(Change(key, desired.kind, ChangeAction.REPLACE, old.spec, desired.spec))
            else:
                to_update.append(Change(key, desired.kind, ChangeAction.UPDATE, old.spec, desired.spec))

        changed_kinds = {c.kind for c in (*to_delete, *to_create, *to_update)}
        for desired in unchanged:
            if desired.kind in self._reapply and desired.kind in changed_kinds:
                to_update.append(
                    Change(desired.key, desired.kind, ChangeAction.UPDATE, desired.spec, desired.spec)
                )

        # Only report kinds that have keys on either side
        replaced = frozenset(
            kind
            for kind in replace_kinds
            if any(r.kind == kind for r in (*previous.values(), *new.values()))
        )

        change_set = ChangeSet(
            to_delete=sorted(to_delete, key=lambda c: (-self._tier_for(c.kind), c.key)),
            to_create=sorted(to_create, key=lambda c: (self._tier_for(c.kind), c.key)),
            to_update=sorted(to_update, key=lambda c: (self._tier_for(c.kind), c.key)),
            replaced_kinds=replaced,
        )

        logger.debug(
            "Computed change-set",
            extra={**change_set.summary(), "replaced_kinds": sorted(k.value for k in replaced)},
        )
        return change_set

    def _tier_for(self, kind: ResourceKind) -> int:
        return self._tier.get(kind.value, 0)

    def tier_for(self, kind: ResourceKind) -> int:
        """Return the dependency tier of a kind."""
        return self._tier_for(kind)
