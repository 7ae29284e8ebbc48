"""
Inventory hosts.

A Host carries its inventory vars and the names of the groups it was
declared in. Transitive membership (``all``, parent groups) is computed
by InventoryGraph, not stored here.
"""

from typing import Any, Dict, List, Mapping, Optional


class Host:
    """One target machine, identified by its inventory name."""

    def __init__(self, name: str, variables: Optional[Mapping[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = dict(variables or {})
        self._declared_in: List[str] = []

    @property
    def short_name(self) -> str:
        """Inventory name up to the first dot (``inventory_hostname_short``)."""
        return self.name.partition('.')[0]

    @property
    def groups(self) -> List[str]:
        """Groups this host was placed in directly, in declaration order."""
        return list(self._declared_in)

    def add_group(self, group_name: str) -> None:
        if group_name not in self._declared_in:
            self._declared_in.append(group_name)

    def set_variable(self, key: str, value: Any) -> None:
        self.vars[key] = value

    def __repr__(self) -> str:
        return f"Host({self.name!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Host):
            return other.name == self.name
        return NotImplemented

    def __hash__(self) -> int:
        return hash(('host', self.name))
