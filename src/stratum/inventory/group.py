"""
Inventory groups.

A Group only records names: directly assigned hosts, child groups and
parent groups, each in declaration order. Whether those names resolve,
and whether the links form a DAG, is checked by InventoryGraph.
"""

from typing import Any, Dict, List, Mapping, Optional


def _append_once(names: List[str], name: str) -> None:
    if name not in names:
        names.append(name)


class Group:
    """A named set of hosts and child groups with its own group vars."""

    def __init__(self, name: str, variables: Optional[Mapping[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = dict(variables or {})
        self._members: List[str] = []
        self._children: List[str] = []
        self._parents: List[str] = []

    @property
    def host_names(self) -> List[str]:
        """Hosts assigned directly to this group (not through children)."""
        return list(self._members)

    @property
    def children(self) -> List[str]:
        return list(self._children)

    @property
    def parents(self) -> List[str]:
        return list(self._parents)

    def add_host(self, host_name: str) -> None:
        _append_once(self._members, host_name)

    def add_child(self, group_name: str) -> None:
        _append_once(self._children, group_name)

    def add_parent(self, group_name: str) -> None:
        _append_once(self._parents, group_name)

    def set_variable(self, key: str, value: Any) -> None:
        """Assign a group var; a later assignment of the same key replaces it."""
        self.vars[key] = value

    def __repr__(self) -> str:
        return f"Group({self.name!r}, parents={self._parents}, children={self._children})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Group):
            return other.name == self.name
        return NotImplemented

    def __hash__(self) -> int:
        return hash(('group', self.name))
