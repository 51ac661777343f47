from __future__ import annotations

from typing import Sequence

from claude_vm.capabilities import Capability
from claude_vm.errors import CycleError, DependencyError, ValidationError


def resolve_order(capabilities: Sequence[Capability]) -> list[Capability]:
    """Order enabled capabilities so each follows everything it requires.

    Depth-first over the input order, which is the tie-break: for the same
    enabled set in the same order the result is always identical. Every
    ``requires`` entry must itself be enabled.
    """
    by_id = {capability.id: capability for capability in capabilities}
    ordered: list[Capability] = []
    done: set[str] = set()
    chain: list[str] = []

    def visit(capability: Capability) -> None:
        if capability.id in done:
            return
        if capability.id in chain:
            loop = chain[chain.index(capability.id):] + [capability.id]
            raise CycleError(
                f"Error: Circular capability dependency: {' -> '.join(loop)}",
                loop,
            )
        chain.append(capability.id)
        for dep_id in capability.requires:
            dependency = by_id.get(dep_id)
            if dependency is None:
                path = chain + [dep_id]
                raise DependencyError(
                    f"Error: Capability '{capability.id}' requires '{dep_id}' but it is not enabled "
                    f"({' -> '.join(path)}). Enable it with --{dep_id}",
                    path,
                )
            visit(dependency)
        chain.pop()
        done.add(capability.id)
        ordered.append(capability)

    for capability in capabilities:
        visit(capability)
    return ordered


def check_conflicts(capabilities: Sequence[Capability]) -> None:
    enabled = {capability.id for capability in capabilities}
    for capability in capabilities:
        for other in capability.conflicts:
            if other in enabled:
                raise ValidationError(
                    f"Error: Capability '{capability.id}' conflicts with '{other}'; enable only one of them"
                )
