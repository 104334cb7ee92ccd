"""
Nav catalogue (``change_control.domain.nav``).

The catalogue is a tree of MODULE nodes, grouping nodes and addressable
SCREEN/VOUCHER/REPORT leaves.  Permission checks need the owning module of
any scope; that relation is flattened once when the catalogue is built and
then treated as read-only.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from change_control.domain.actor import ScopeType


@dataclass(frozen=True)
class NavNode:
    """One catalogue node.  Grouping nodes carry no scope."""

    label: str
    scope_type: ScopeType | None = None
    scope_key: str | None = None
    children: tuple[NavNode, ...] = ()

    @property
    def is_scope(self) -> bool:
        return self.scope_type is not None and bool(self.scope_key)


@dataclass(frozen=True)
class ScopeEntry:
    """Flattened catalogue entry used to seed the permission scope registry."""

    scope_type: ScopeType
    scope_key: str
    module: str
    label: str


def module_of_key(scope_key: str | None) -> str | None:
    """Prefix before the first dot of a dotted scope key."""
    if not scope_key:
        return None
    head = scope_key.split(".", 1)[0]
    return head or None


def flatten_catalogue(roots: Sequence[NavNode]) -> list[ScopeEntry]:
    """Walk the tree once, depth-first, inheriting the nearest MODULE."""
    entries: list[ScopeEntry] = []
    seen: set[tuple[ScopeType, str]] = set()
    stack: list[tuple[NavNode, str | None]] = [(n, None) for n in reversed(roots)]
    while stack:
        node, current_module = stack.pop()
        module = node.scope_key if node.scope_type == ScopeType.MODULE else current_module
        if node.is_scope and module:
            ident = (node.scope_type, node.scope_key)
            if ident not in seen:
                seen.add(ident)
                entries.append(ScopeEntry(node.scope_type, node.scope_key, module, node.label))
        for child in reversed(node.children):
            stack.append((child, module))
    return entries


class NavCatalogue:
    """Read-only catalogue with the precomputed scope -> module map."""

    def __init__(self, roots: Sequence[NavNode]):
        self._roots = tuple(roots)
        self._entries = flatten_catalogue(self._roots)
        self._module_map: dict[str, str] = {
            f"{e.scope_type.value}:{e.scope_key}": e.module for e in self._entries
        }

    @property
    def roots(self) -> tuple[NavNode, ...]:
        return self._roots

    def module_for(self, scope_type: ScopeType | str, scope_key: str) -> str | None:
        """Module registered for the scope, or None if it is not catalogued."""
        return self._module_map.get(f"{ScopeType(scope_type).value}:{scope_key}")

    def effective_module(self, scope_type: ScopeType | str, scope_key: str) -> str | None:
        """Registered module, falling back to the first path segment."""
        return self.module_for(scope_type, scope_key) or module_of_key(scope_key)

    def entries(self) -> Iterator[ScopeEntry]:
        return iter(self._entries)

    def __contains__(self, item: tuple[ScopeType | str, str]) -> bool:
        scope_type, scope_key = item
        return f"{ScopeType(scope_type).value}:{scope_key}" in self._module_map

    def __len__(self) -> int:
        return len(self._entries)
