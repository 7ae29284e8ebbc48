"""
Stratum Variable Store

Raw variable bindings tagged by the tier they were declared at and the
source (group, host, play) that declared them. The store is a passive
structure: it records bindings, answers per-layer lookups and merges
layers, while the ContextResolver decides which layers apply.
"""

from __future__ import annotations

import enum
import itertools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from stratum.inventory.graph import InventoryGraph

logger = logging.getLogger(__name__)


class Scope(enum.IntEnum):
    """Precedence tiers, highest (1) to lowest (9)."""

    EXTRA = 1
    TASK = 2
    BLOCK = 3
    ROLE = 4
    PLAY = 5
    FACTS = 6
    HOST = 7
    GROUP = 8
    ROLE_DEFAULTS = 9


@dataclass(frozen=True)
class VariableBinding:
    """A single key/value assignment and where it came from."""

    key: str
    value: Any
    scope: Scope
    source: Optional[str] = None
    sequence: int = 0

    def outranks(self, other: 'VariableBinding') -> bool:
        """True if this binding wins over ``other``: higher tier, then later declaration."""
        if self.scope != other.scope:
            return self.scope < other.scope
        return self.sequence > other.sequence


def combine_vars(base: Mapping[str, Any], override: Mapping[str, Any], recursive: bool = False) -> Dict[str, Any]:
    """
    Merge two variable mappings, ``override`` winning.

    With ``recursive`` nested dictionaries are merged key by key instead
    of being replaced wholesale.
    """
    result = dict(base)
    for key, value in override.items():
        if recursive and isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = combine_vars(result[key], value, recursive=True)
        else:
            result[key] = value
    return result


class VariableStore:
    """
    Bindings grouped into layers keyed by (scope, source).

    Within a layer a key maps to its most recent binding; rebinding a key
    replaces it with a fresh sequence number, so the later declaration
    wins. Layers for different hosts are disjoint, which lets concurrent
    hosts register results without coordination.
    """

    def __init__(self):
        self._layers: Dict[Tuple[Scope, Optional[str]], Dict[str, VariableBinding]] = {}
        self._sequence = itertools.count(1)

    @classmethod
    def from_inventory(cls, graph: 'InventoryGraph') -> 'VariableStore':
        """Create a store holding the group and host variables of an inventory."""
        store = cls()
        for name in graph.topological_order():
            group = graph.get_group(name)
            if group is not None and group.vars:
                store.bind_many(Scope.GROUP, group.vars, source=name)
        for name, host in graph.hosts.items():
            if host.vars:
                store.bind_many(Scope.HOST, host.vars, source=name)
        return store

    def bind(self, scope: Scope, key: str, value: Any, source: Optional[str] = None) -> VariableBinding:
        """Record ``key = value`` at the given scope and source."""
        binding = VariableBinding(
            key=key,
            value=value,
            scope=Scope(scope),
            source=source,
            sequence=next(self._sequence),
        )
        layer = self._layers.setdefault((binding.scope, source), {})
        # Re-insert so layer iteration follows declaration recency
        layer.pop(key, None)
        layer[key] = binding
        return binding

    def bind_many(self, scope: Scope, variables: Mapping[str, Any], source: Optional[str] = None) -> List[VariableBinding]:
        """Record every item of a mapping, in its iteration order."""
        return [self.bind(scope, key, value, source) for key, value in variables.items()]

    def unbind(self, scope: Scope, key: str, source: Optional[str] = None) -> Optional[VariableBinding]:
        """Remove a binding, returning it if it existed."""
        layer = self._layers.get((Scope(scope), source))
        if layer is None:
            return None
        return layer.pop(key, None)

    def lookup(self, scope: Scope, key: str, source: Optional[str] = None) -> Optional[VariableBinding]:
        """The binding for ``key`` in one layer, or None."""
        layer = self._layers.get((Scope(scope), source))
        if layer is None:
            return None
        return layer.get(key)

    def layer(self, scope: Scope, source: Optional[str] = None) -> Dict[str, Any]:
        """Key/value view of one layer, oldest binding first."""
        bindings = self._layers.get((Scope(scope), source), {})
        return {key: binding.value for key, binding in bindings.items()}

    def bindings(self, scope: Optional[Scope] = None, source: Optional[str] = None) -> List[VariableBinding]:
        """All bindings, optionally restricted to a scope and source, in declaration order."""
        result: List[VariableBinding] = []
        for (layer_scope, layer_source), bindings in self._layers.items():
            if scope is not None and layer_scope != scope:
                continue
            if source is not None and layer_source != source:
                continue
            result.extend(bindings.values())
        result.sort(key=lambda b: b.sequence)
        return result

    def sources(self, scope: Scope) -> List[Optional[str]]:
        """Sources that have a layer at the given scope."""
        return [source for (layer_scope, source) in self._layers if layer_scope == scope]

    def merged(self, layers: Iterable[Tuple[Scope, Optional[str]]], recursive: bool = False) -> Dict[str, Any]:
        """
        Merge several layers, given lowest precedence first.

        Returns the flat mapping a first-hit scan over the reversed layer
        list would produce (or a deep merge with ``recursive``).
        """
        result: Dict[str, Any] = {}
        for scope, source in layers:
            result = combine_vars(result, self.layer(scope, source), recursive=recursive)
        return result

    def __len__(self) -> int:
        return sum(len(layer) for layer in self._layers.values())

    def __repr__(self) -> str:
        return f"VariableStore(layers={len(self._layers)}, bindings={len(self)})"
