"""
Inventory Graph

Hosts, groups and the group DAG. The graph is validated once when it is
constructed and is read-only afterwards, so any number of hosts may
query it concurrently.

Group order for variable precedence is derived from depth in the DAG:
``all`` has depth 0 and every other group sits one level below its
deepest parent. Sorting by (depth, declaration index) yields a
topological order (parents before children); the reverse of that order
is the order in which group variables are consulted for a host.
"""

import fnmatch
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Set, Union

from stratum.engine.errors import CyclicGroupError, InventoryError, UnknownHostError
from stratum.inventory.group import Group
from stratum.inventory.host import Host

logger = logging.getLogger(__name__)

ALL_GROUP = 'all'
UNGROUPED_GROUP = 'ungrouped'


class InventoryGraph:
    """
    Validated host/group graph.

    Construction reads the given Host and Group objects without changing
    them. The graph keeps its own membership tables, in which it:
    - normalizes parent/child links in both directions
    - places every host in ``all`` and group-less hosts in ``ungrouped``
    - attaches every parent-less group under ``all``
    - rejects parent/child cycles with CyclicGroupError
    """

    def __init__(
        self,
        hosts: Union[Mapping[str, Host], Iterable[Host]] = (),
        groups: Union[Mapping[str, Group], Iterable[Group]] = (),
    ):
        host_list = list(hosts.values()) if isinstance(hosts, Mapping) else list(hosts)
        group_list = list(groups.values()) if isinstance(groups, Mapping) else list(groups)

        self._hosts: Dict[str, Host] = {host.name: host for host in host_list}

        # 'all' and 'ungrouped' always lead the declaration order
        self._groups: Dict[str, Group] = {
            ALL_GROUP: Group(ALL_GROUP),
            UNGROUPED_GROUP: Group(UNGROUPED_GROUP),
        }
        for group in group_list:
            self._groups[group.name] = group
        for host in host_list:
            for group_name in host.groups:
                if group_name not in self._groups:
                    self._groups[group_name] = Group(group_name)

        # Derived membership, owned by the graph
        self._children: Dict[str, List[str]] = {name: [] for name in self._groups}
        self._parents: Dict[str, List[str]] = {name: [] for name in self._groups}
        self._members: Dict[str, List[str]] = {name: [] for name in self._groups}
        self._host_groups: Dict[str, List[str]] = {name: [] for name in self._hosts}

        self._link_groups()
        self._link_hosts()
        self._attach_to_all()

        cycle = self._find_cycle()
        if cycle:
            raise CyclicGroupError(cycle)

        self._group_index: Dict[str, int] = {name: i for i, name in enumerate(self._groups)}
        self._host_index: Dict[str, int] = {name: i for i, name in enumerate(self._hosts)}
        self._depth: Dict[str, int] = {}
        for name in self._groups:
            self._compute_depth(name)
        self._topological_order: List[str] = sorted(
            self._groups, key=lambda g: (self._depth[g], self._group_index[g])
        )

        logger.debug(
            "Inventory graph built: %d hosts, %d groups",
            len(self._hosts), len(self._groups),
        )

    # ------------------------------------------------------------------
    # Construction helpers

    @staticmethod
    def _add(table: Dict[str, List[str]], key: str, value: str) -> None:
        if value not in table[key]:
            table[key].append(value)

    def _link(self, parent: str, child: str) -> None:
        self._add(self._children, parent, child)
        self._add(self._parents, child, parent)

    def _join(self, host_name: str, group_name: str) -> None:
        self._add(self._members, group_name, host_name)
        self._add(self._host_groups, host_name, group_name)

    def _link_groups(self) -> None:
        """Make parent/child links symmetric, rejecting undeclared groups."""
        for group in list(self._groups.values()):
            for child_name in group.children:
                if child_name not in self._groups:
                    raise InventoryError(
                        f"Group '{group.name}' lists undeclared child group '{child_name}'"
                    )
                self._link(group.name, child_name)
            for parent_name in group.parents:
                if parent_name not in self._groups:
                    raise InventoryError(
                        f"Group '{group.name}' lists undeclared parent group '{parent_name}'"
                    )
                self._link(parent_name, group.name)

    def _link_hosts(self) -> None:
        """Make host/group membership symmetric."""
        for group in self._groups.values():
            for host_name in group.host_names:
                if host_name not in self._hosts:
                    raise InventoryError(
                        f"Group '{group.name}' references unknown host '{host_name}'"
                    )
                self._join(host_name, group.name)

        for host in self._hosts.values():
            for group_name in host.groups:
                self._join(host.name, group_name)

            explicit = [g for g in self._host_groups[host.name] if g not in (ALL_GROUP, UNGROUPED_GROUP)]
            if not explicit:
                self._join(host.name, UNGROUPED_GROUP)
            self._join(host.name, ALL_GROUP)

    def _attach_to_all(self) -> None:
        for name in self._groups:
            if name != ALL_GROUP and not self._parents[name]:
                self._link(ALL_GROUP, name)

    def _find_cycle(self) -> Optional[List[str]]:
        """Depth-first search over child links; returns the first cycle path found."""
        unvisited, in_progress, done = 0, 1, 2
        state = {name: unvisited for name in self._groups}
        path: List[str] = []

        def visit(name: str) -> Optional[List[str]]:
            state[name] = in_progress
            path.append(name)
            for child in self._children[name]:
                if state[child] == in_progress:
                    return path[path.index(child):] + [child]
                if state[child] == unvisited:
                    found = visit(child)
                    if found:
                        return found
            path.pop()
            state[name] = done
            return None

        for name in self._groups:
            if state[name] == unvisited:
                found = visit(name)
                if found:
                    return found
        return None

    def _compute_depth(self, name: str) -> int:
        if name not in self._depth:
            parents = self._parents[name]
            self._depth[name] = 0 if not parents else 1 + max(self._compute_depth(p) for p in parents)
        return self._depth[name]

    # ------------------------------------------------------------------
    # Read accessors

    @property
    def hosts(self) -> Dict[str, Host]:
        """Hosts by name, in declaration order."""
        return dict(self._hosts)

    @property
    def groups(self) -> Dict[str, Group]:
        """Groups by name, in declaration order."""
        return dict(self._groups)

    def has_host(self, name: str) -> bool:
        return name in self._hosts

    def has_group(self, name: str) -> bool:
        return name in self._groups

    def get_host(self, name: str) -> Host:
        """Return the named host or raise UnknownHostError."""
        try:
            return self._hosts[name]
        except KeyError:
            raise UnknownHostError(name) from None

    def get_group(self, name: str) -> Optional[Group]:
        return self._groups.get(name)

    def parents_of(self, group_name: str) -> List[str]:
        """Direct parent groups, ``all`` included for top-level groups."""
        return list(self._parents.get(group_name, ()))

    def children_of(self, group_name: str) -> List[str]:
        return list(self._children.get(group_name, ()))

    def all_groups(self) -> Set[str]:
        """Names of every group, including ``all`` and ``ungrouped``."""
        return set(self._groups)

    def groups_of(self, host: Union[str, Host]) -> Set[str]:
        """Transitive closure of the host's group membership, including ``all``."""
        name = host.name if isinstance(host, Host) else host
        if name not in self._hosts:
            raise UnknownHostError(name)
        result: Set[str] = set()
        pending = list(self._host_groups[name])
        while pending:
            group = pending.pop()
            if group in result:
                continue
            result.add(group)
            pending.extend(self._parents[group])
        return result

    def members_of(self, group_name: str) -> Set[str]:
        """Host names in the group or any of its descendants."""
        if group_name not in self._groups:
            return set()
        result: Set[str] = set()
        seen: Set[str] = set()
        pending = [group_name]
        while pending:
            name = pending.pop()
            if name in seen:
                continue
            seen.add(name)
            result.update(self._members[name])
            pending.extend(self._children[name])
        return result

    def hosts_in_group(self, group_name: str) -> List[str]:
        """Transitive members of a group, in inventory declaration order."""
        return self._ordered(self.members_of(group_name))

    def topological_order(self) -> List[str]:
        """Every group, parents before children, ties in declaration order."""
        return list(self._topological_order)

    def depth(self, group_name: str) -> int:
        return self._depth[group_name]

    def group_precedence(self, host: Union[str, Host]) -> List[str]:
        """
        Groups whose variables apply to a host, most specific first.

        Children come before their parents and ``all`` comes last. Among
        unrelated groups at the same depth the later-declared group comes
        first, so its value wins.
        """
        member_of = self.groups_of(host)
        return [g for g in reversed(self._topological_order) if g in member_of]

    # ------------------------------------------------------------------
    # Host patterns

    def match(self, pattern: str) -> List[str]:
        """
        Get host names matching a pattern, in declaration order.

        Supported patterns:
        - "all" or "*" - all hosts
        - "group_name" - all hosts in a group (including children)
        - "host_name" - single host
        - "web*" - glob over host and group names
        - "host1,host2" or "a:b" - union
        - "group1:&group2" - intersection
        - "!group" - exclusion
        """
        if not pattern or pattern.strip() in (ALL_GROUP, '*'):
            return list(self._hosts)

        parts = [p.strip() for p in pattern.replace(':&', ',&').replace(':!', ',!').replace(':', ',').split(',')]
        selected: Set[str] = set()
        intersections: List[Set[str]] = []
        exclusions: Set[str] = set()

        for part in parts:
            if not part:
                continue
            if part.startswith('&'):
                intersections.append(self._match_single(part[1:]))
            elif part.startswith('!'):
                exclusions.update(self._match_single(part[1:]))
            else:
                selected.update(self._match_single(part))

        # A pattern that starts with an exclusion selects from everything
        if not selected and exclusions and not intersections:
            selected = set(self._hosts)
        for subset in intersections:
            selected &= subset
        selected -= exclusions
        return self._ordered(selected)

    def _match_single(self, pattern: str) -> Set[str]:
        if pattern in (ALL_GROUP, '*'):
            return set(self._hosts)
        if pattern in self._groups:
            return self.members_of(pattern)
        if pattern in self._hosts:
            return {pattern}
        if any(ch in pattern for ch in '*?['):
            result = {h for h in self._hosts if fnmatch.fnmatchcase(h, pattern)}
            for group_name in self._groups:
                if fnmatch.fnmatchcase(group_name, pattern):
                    result.update(self.members_of(group_name))
            return result
        return set()

    def _ordered(self, names: Iterable[str]) -> List[str]:
        return sorted(names, key=self._host_index.__getitem__)

    def __repr__(self) -> str:
        return f"InventoryGraph(hosts={len(self._hosts)}, groups={len(self._groups)})"
