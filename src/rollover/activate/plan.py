"""Transition plans derived from an old and a new manifest."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Set

from rollover.activate.orderer import DependencyGraph
from rollover.core.exceptions import ConfigurationError
from rollover.core.models import ActivationMapping, Manifest, MappingRef, Target

MappingEquality = Callable[[ActivationMapping, ActivationMapping], bool]


def same_identity(old: ActivationMapping, new: ActivationMapping) -> bool:
    """Unchanged when build reference and target match."""
    return old.key == new.key


def same_configuration(old: ActivationMapping, new: ActivationMapping) -> bool:
    """Unchanged only when every activation input matches as well."""
    return (
        old.key == new.key
        and old.type == new.type
        and old.container == new.container
        and old.environment() == new.environment()
    )


EQUALITY_PREDICATES: Dict[str, MappingEquality] = {
    "identity": same_identity,
    "strict": same_configuration,
}


def get_equality(name: str) -> MappingEquality:
    try:
        return EQUALITY_PREDICATES[name]
    except KeyError:
        raise ConfigurationError(f"Unknown mapping equality: {name}", code="unknown_equality") from None


@dataclass
class TransitionPlan:
    """What a transition deactivates, activates and locks.

    ``deactivate_after`` maps each mapping being deactivated to the
    dependents it waits for; ``activate_after`` maps each mapping being
    activated to the dependencies it waits for.
    """

    to_deactivate: List[ActivationMapping] = field(default_factory=list)
    to_activate: List[ActivationMapping] = field(default_factory=list)
    lock_set: List[Target] = field(default_factory=list)
    deactivate_after: Dict[MappingRef, Set[MappingRef]] = field(default_factory=dict)
    activate_after: Dict[MappingRef, Set[MappingRef]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.to_deactivate and not self.to_activate

    @classmethod
    def compute(cls, old: Manifest, new: Manifest, equality: MappingEquality = same_identity) -> "TransitionPlan":
        """Diff two manifests. Raises DependencyCycleError before anything else."""
        old_graph = DependencyGraph(old.activation)
        new_graph = DependencyGraph(new.activation)
        old_graph.check()
        new_graph.check()

        def unchanged(mapping: ActivationMapping, other: Manifest) -> bool:
            counterpart = other.find(mapping.key)
            return counterpart is not None and equality(mapping, counterpart)

        removed = [m.key for m in old.activation if not unchanged(m, new)]
        added = [m.key for m in new.activation if not unchanged(m, old)]

        targets: Dict[str, Target] = dict(old.referenced_targets())
        targets.update(new.referenced_targets())
        lock_set = [targets[name] for name in sorted(targets)]

        return cls(
            to_deactivate=old_graph.deactivation_order(removed),
            to_activate=new_graph.activation_order(added),
            lock_set=lock_set,
            deactivate_after=old_graph.prerequisites_for_deactivation(removed),
            activate_after=new_graph.prerequisites_for_activation(added),
        )
