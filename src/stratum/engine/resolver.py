"""
Stratum Context Resolver

Computes the effective variables of a host at a point in a play. Every
source of variables is a tier provider exposing ``lookup(key)``; the
providers are kept in precedence order and resolution is one ordered
scan where the first tier that defines a key supplies its value.

Tiers, highest first:

1. extra vars
2. task vars
3. block vars (innermost block first)
4. role / include vars
5. play vars
6. host facts
7. host inventory vars (and results registered at host scope)
8. group vars (most specific group first, ``all`` last)
9. role defaults

Magic variables (``hostvars``, ``groups``, ``group_names``,
``inventory_hostname``...) are read-only views over the inventory and the
run state, injected into every resolved mapping.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from stratum.config import get_config
from stratum.engine.context import PlayContext
from stratum.engine.errors import UndefinedVariableError, UnknownHostError
from stratum.engine.facts import FactCache, FactSnapshot, FactStore
from stratum.engine.variables import Scope, VariableStore

if TYPE_CHECKING:
    from stratum.inventory.graph import InventoryGraph
    from stratum.inventory.host import Host

logger = logging.getLogger(__name__)

MAGIC_VARIABLES = frozenset({
    'hostvars',
    'groups',
    'group_names',
    'inventory_hostname',
    'inventory_hostname_short',
    'play_hosts',
    'ansible_play_hosts',
})


class _Missing:
    """Sentinel for 'no binding in this tier'."""

    _instance: Optional['_Missing'] = None

    def __new__(cls) -> '_Missing':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return 'MISSING'


MISSING: Any = _Missing()


class TierProvider(ABC):
    """One precedence tier."""

    scope: Scope

    @abstractmethod
    def lookup(self, key: str) -> Any:
        """The tier's value for ``key``, or MISSING."""

    @abstractmethod
    def keys(self) -> List[str]:
        """Every key this tier defines."""

    def __contains__(self, key: str) -> bool:
        return self.lookup(key) is not MISSING

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.scope.name}, keys={len(self.keys())})"


class MappingTier(TierProvider):
    """A tier backed by a single mapping."""

    def __init__(self, scope: Scope, mapping: Optional[Mapping[str, Any]] = None):
        self.scope = scope
        self._mapping = mapping if mapping is not None else {}

    def lookup(self, key: str) -> Any:
        return self._mapping.get(key, MISSING)

    def keys(self) -> List[str]:
        return list(self._mapping.keys())


class ChainTier(TierProvider):
    """A tier made of several mappings; the first one defining a key wins."""

    def __init__(self, scope: Scope, mappings: Sequence[Mapping[str, Any]]):
        self.scope = scope
        self._mappings = list(mappings)

    def lookup(self, key: str) -> Any:
        for mapping in self._mappings:
            if key in mapping:
                return mapping[key]
        return MISSING

    def keys(self) -> List[str]:
        seen: Dict[str, None] = {}
        for mapping in self._mappings:
            for key in mapping:
                seen.setdefault(key, None)
        return list(seen)


class FactTier(TierProvider):
    """Gathered facts: every fact key, plus the whole snapshot as ``ansible_facts``."""

    scope = Scope.FACTS

    def __init__(self, snapshot: Optional[FactSnapshot]):
        self._snapshot = snapshot

    def lookup(self, key: str) -> Any:
        if self._snapshot is None:
            return MISSING
        if key == 'ansible_facts':
            return self._snapshot.to_dict()
        return self._snapshot.get(key, MISSING)

    def keys(self) -> List[str]:
        if self._snapshot is None:
            return []
        return self._snapshot.keys() + ['ansible_facts']


class ContextResolver:
    """
    Resolve variables for hosts of one inventory.

    The inventory graph and the inventory layers of the variable store are
    shared, read-only inputs; PlayContext objects are per host. Results
    registered by a host are written to that host's own layer only.
    """

    def __init__(
        self,
        graph: 'InventoryGraph',
        store: Optional[VariableStore] = None,
        facts: Optional[FactStore] = None,
        extra_vars: Optional[Mapping[str, Any]] = None,
    ):
        self.graph = graph
        self.store = store if store is not None else VariableStore.from_inventory(graph)
        self.facts = facts if facts is not None else _default_fact_store()
        if extra_vars:
            self.store.bind_many(Scope.EXTRA, extra_vars)

    # ------------------------------------------------------------------
    # Tier providers

    def providers(
        self,
        host: Union[str, 'Host'],
        play_context: Optional[PlayContext] = None,
    ) -> List[TierProvider]:
        """The host's tiers in precedence order, highest first."""
        name = self._host_name(host)
        tiers: List[TierProvider] = [MappingTier(Scope.EXTRA, self.store.layer(Scope.EXTRA))]

        if play_context is not None:
            tiers.extend([
                MappingTier(Scope.TASK, play_context.task_vars),
                ChainTier(Scope.BLOCK, play_context.block_chain()),
                MappingTier(Scope.ROLE, play_context.role_vars),
                MappingTier(Scope.PLAY, play_context.play_vars),
            ])

        tiers.append(FactTier(self.facts.get(name)))
        tiers.append(MappingTier(Scope.HOST, self.store.layer(Scope.HOST, name)))
        tiers.append(ChainTier(
            Scope.GROUP,
            [self.store.layer(Scope.GROUP, group) for group in self.graph.group_precedence(name)],
        ))

        if play_context is not None:
            tiers.append(MappingTier(Scope.ROLE_DEFAULTS, play_context.role_defaults))

        return tiers

    # ------------------------------------------------------------------
    # Resolution

    def lookup(
        self,
        host: Union[str, 'Host'],
        key: str,
        play_context: Optional[PlayContext] = None,
    ) -> Any:
        """
        Resolve one key for a host.

        Raises:
            UnknownHostError: The host is not in the inventory.
            UndefinedVariableError: No tier defines the key.
        """
        name = self._host_name(host)
        if key in MAGIC_VARIABLES:
            return self.magic_vars(name, play_context)[key]

        for tier in self.providers(name, play_context):
            value = tier.lookup(key)
            if value is not MISSING:
                return value
        raise UndefinedVariableError(key, host=name)

    def which_tier(
        self,
        host: Union[str, 'Host'],
        key: str,
        play_context: Optional[PlayContext] = None,
    ) -> Optional[Scope]:
        """The tier that supplies ``key`` for the host, or None."""
        for tier in self.providers(host, play_context):
            if key in tier:
                return tier.scope
        return None

    def resolve(
        self,
        host: Union[str, 'Host'],
        play_context: Optional[PlayContext] = None,
    ) -> Dict[str, Any]:
        """
        The host's full effective mapping, magic variables included.

        The returned values are copies; mutating them never changes the
        underlying bindings.
        """
        name = self._host_name(host)
        result: Dict[str, Any] = {}
        for tier in self.providers(name, play_context):
            for key in tier.keys():
                if key not in result:
                    result[key] = tier.lookup(key)

        result = copy.deepcopy(result)
        result.update(self.magic_vars(name, play_context))
        return result

    def magic_vars(self, host: str, play_context: Optional[PlayContext] = None) -> Dict[str, Any]:
        """Read-only run state injected into every context."""
        host_obj = self.graph.get_host(host)
        magic: Dict[str, Any] = {
            'inventory_hostname': host_obj.name,
            'inventory_hostname_short': host_obj.short_name,
            'group_names': sorted(g for g in self.graph.groups_of(host_obj) if g != 'all'),
            'groups': GroupsView(self.graph),
            'hostvars': self.hostvars(),
        }
        if play_context is not None and play_context.play_hosts:
            magic['play_hosts'] = list(play_context.play_hosts)
            magic['ansible_play_hosts'] = list(play_context.play_hosts)
        return magic

    # ------------------------------------------------------------------
    # Cross-host access and run state

    def hostvars(self) -> 'HostVars':
        """Read-only mapping of every host's inventory-and-facts variables."""
        return HostVars(self)

    def register(self, host: Union[str, 'Host'], key: str, value: Any) -> None:
        """Store a task result at host scope (later than the inventory vars, so it wins)."""
        name = self._host_name(host)
        self.store.bind(Scope.HOST, key, value, source=name)
        logger.debug("Registered %s for %s", key, name)

    def all_groups(self) -> set:
        return self.graph.all_groups()

    def hosts_in_group(self, name: str) -> List[str]:
        return self.graph.hosts_in_group(name)

    def _host_name(self, host: Union[str, 'Host']) -> str:
        name = host if isinstance(host, str) else host.name
        if not self.graph.has_host(name):
            raise UnknownHostError(name)
        return name


class GroupsView(Mapping):
    """``groups`` magic variable: group name to member host names."""

    def __init__(self, graph: 'InventoryGraph'):
        self._graph = graph

    def __getitem__(self, name: str) -> List[str]:
        if not self._graph.has_group(name):
            raise KeyError(name)
        return self._graph.hosts_in_group(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self._graph.topological_order())

    def __len__(self) -> int:
        return len(self._graph.all_groups())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._graph.has_group(name)

    def __repr__(self) -> str:
        return f"GroupsView({sorted(self._graph.all_groups())})"


class HostVars(Mapping):
    """
    ``hostvars`` magic variable.

    ``hostvars[name]`` resolves the named host with no play context, so
    play, block, task and role variables of the requesting play never
    leak into it. Unknown host names raise UnknownHostError.
    """

    def __init__(self, resolver: ContextResolver):
        self._resolver = resolver

    def __getitem__(self, name: str) -> 'HostVarsView':
        if not isinstance(name, str) or not self._resolver.graph.has_host(name):
            raise UnknownHostError(str(name))
        return HostVarsView(self._resolver, name)

    def __iter__(self) -> Iterator[str]:
        return iter(self._resolver.graph.hosts)

    def __len__(self) -> int:
        return len(self._resolver.graph.hosts)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._resolver.graph.has_host(name)

    def __repr__(self) -> str:
        return f"HostVars({list(self._resolver.graph.hosts)})"


class HostVarsView(Mapping):
    """Lazily resolved, read-only variables of one host."""

    def __init__(self, resolver: ContextResolver, host: str):
        self._resolver = resolver
        self._host = host
        self._resolved: Optional[Dict[str, Any]] = None

    def _variables(self) -> Dict[str, Any]:
        if self._resolved is None:
            self._resolved = self._resolver.resolve(self._host)
        return self._resolved

    def __getitem__(self, key: str) -> Any:
        value = self._variables()[key]
        if isinstance(value, (dict, list)):
            return copy.deepcopy(value)
        return value

    def __iter__(self) -> Iterator[str]:
        return iter(self._variables())

    def __len__(self) -> int:
        return len(self._variables())

    def __repr__(self) -> str:
        return f"HostVarsView({self._host!r})"


def _default_fact_store() -> FactStore:
    """A FactStore backed by the persistent cache when one is configured."""
    config = get_config()
    if config.fact_cache_dir:
        return FactStore(FactCache(config.fact_cache_dir, ttl=config.fact_cache_ttl))
    return FactStore()
