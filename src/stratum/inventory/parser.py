"""
Inventory loading.

Reads INI, YAML and JSON inventory sources, plus the ``group_vars/`` and
``host_vars/`` directories beside them, and hands the collected hosts and
groups to InventoryGraph for validation. The flat INI form and the nested
YAML form produce the same graph.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import yaml

from stratum.engine.errors import InventoryError
from stratum.inventory.graph import InventoryGraph
from stratum.inventory.group import Group
from stratum.inventory.host import Host

logger = logging.getLogger(__name__)

# web[01:10].example.com
_RANGE = re.compile(r'\[(\d+):(\d+)\]')
# key=value, key="quoted value" or key='quoted value'
_INLINE_VAR = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')
# [group], [group:vars], [group:children]
_SECTION = re.compile(r'^\[\s*([^\]:]*?)\s*(?::(vars|children))?\s*\]$')

_VARS_SUFFIXES = ('.yml', '.yaml', '.json')
_SKIPPED_SUFFIXES = ('.bak', '.orig', '.pyc', '.pyo', '.md')

_KEYWORDS = {
    'true': True, 'yes': True,
    'false': False, 'no': False,
    'null': None, 'none': None, '~': None,
}


def convert_scalar(text: str) -> Any:
    """Type an unquoted INI value: booleans, null, int, float, else the text."""
    lowered = text.lower()
    if lowered in _KEYWORDS:
        return _KEYWORDS[lowered]
    for number in (int, float):
        try:
            return number(text)
        except ValueError:
            continue
    return text


def expand_host_pattern(pattern: str) -> List[str]:
    """Expand numeric ranges such as ``db[1:3]``; zero padding is kept."""
    match = _RANGE.search(pattern)
    if match is None:
        return [pattern]
    first, last = match.group(1), match.group(2)
    head, tail = pattern[:match.start()], pattern[match.end():]
    names: List[str] = []
    for number in range(int(first), int(last) + 1):
        names.extend(expand_host_pattern(f"{head}{str(number).zfill(len(first))}{tail}"))
    return names


def _unquote(value: str) -> Tuple[bool, str]:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in '"\'':
        return True, value[1:-1]
    return False, value


class InventoryParser:
    """
    Collect hosts and groups from inventory sources.

    Besides plain host lines, INI sources understand ``[group:vars]``,
    ``[group:children]`` and numeric host ranges. YAML sources nest groups
    under ``children`` starting from the top-level keys.
    """

    def __init__(self):
        self.hosts: Dict[str, Host] = {}
        self.groups: Dict[str, Group] = {}
        self._source: Optional[str] = None

    @classmethod
    def load(cls, source: Union[str, Path]) -> InventoryGraph:
        return cls().parse(source)

    @classmethod
    def from_string(cls, content: str, fmt: str = 'auto') -> InventoryGraph:
        """Parse inventory text; ``fmt`` is 'ini', 'yaml' or 'auto'."""
        parser = cls()
        use_yaml = fmt == 'yaml' or (fmt == 'auto' and parser._looks_like_yaml(content))
        if use_yaml:
            parser._read_yaml_text(content)
        else:
            parser._read_ini_text(content)
        return parser.build()

    def parse(self, source: Union[str, Path]) -> InventoryGraph:
        """Parse a file or every inventory file of a directory, then its vars dirs."""
        path = Path(source)
        self._source = str(path)
        if not path.exists():
            raise InventoryError(f"Inventory path does not exist: {path}")

        if path.is_dir():
            for item in sorted(path.iterdir()):
                if item.is_file() and not item.name.startswith('.') and item.suffix not in _SKIPPED_SUFFIXES:
                    self._read_file(item)
            base_dir = path
        else:
            self._read_file(path)
            base_dir = path.parent

        self._apply_vars_dirs(base_dir)
        return self.build()

    def build(self) -> InventoryGraph:
        return InventoryGraph(self.hosts, self.groups)

    def _group(self, name: str) -> Group:
        return self.groups.setdefault(name, Group(name))

    def _declare_host(self, name: str, variables: Mapping[str, Any], group_name: Optional[str]) -> Host:
        """Add a host or fold new vars into an earlier declaration of it."""
        host = self.hosts.get(name)
        if host is None:
            host = self.hosts[name] = Host(name, variables=variables)
        else:
            for key, value in variables.items():
                host.set_variable(key, value)
        if group_name:
            self._group(group_name).add_host(name)
            host.add_group(group_name)
        return host

    def _link(self, parent: str, child: str) -> None:
        self._group(parent).add_child(child)
        self._group(child).add_parent(parent)

    @staticmethod
    def _looks_like_yaml(content: str) -> bool:
        stripped = content.strip()
        if stripped.startswith(('---', '{')):
            return True
        for line in stripped.splitlines():
            line = line.strip()
            if line and not line.startswith('#'):
                return re.match(r'^[\w.-]+:\s*$', line) is not None
        return False

    def _read_file(self, path: Path) -> None:
        content = path.read_text(encoding='utf-8')
        if path.suffix == '.json':
            try:
                data = json.loads(content)
            except ValueError as e:
                raise InventoryError(f"Invalid JSON inventory: {e}", file_path=str(path))
            self._read_yaml_groups(data)
        elif path.suffix in ('.yml', '.yaml') or self._looks_like_yaml(content):
            self._read_yaml_text(content, path)
        else:
            self._read_ini_text(content)

    # -- group_vars/ and host_vars/ --

    def _apply_vars_dirs(self, base_dir: Path) -> None:
        for name, data in self._vars_entries(base_dir / 'group_vars'):
            group = self._group(name)
            for key, value in data.items():
                group.set_variable(key, value)

        for name, data in self._vars_entries(base_dir / 'host_vars'):
            host = self.hosts.get(name)
            if host is None:
                logger.debug("Ignoring host_vars for unknown host %s", name)
                continue
            for key, value in data.items():
                host.set_variable(key, value)

    def _vars_entries(self, directory: Path) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield (name, vars) for each file or subdirectory of a vars dir."""
        if not directory.is_dir():
            return
        for item in sorted(directory.iterdir()):
            if item.is_dir():
                merged: Dict[str, Any] = {}
                for child in sorted(item.iterdir()):
                    if child.is_file() and child.suffix in _VARS_SUFFIXES:
                        merged.update(self._load_vars_file(child))
                yield item.name, merged
            elif item.suffix in _VARS_SUFFIXES or not item.suffix:
                yield item.stem, self._load_vars_file(item)

    def _load_vars_file(self, path: Path) -> Dict[str, Any]:
        try:
            data = yaml.safe_load(path.read_text(encoding='utf-8'))
        except yaml.YAMLError as e:
            raise InventoryError(f"Invalid YAML in vars file: {e}", file_path=str(path))
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise InventoryError("Vars file must contain a mapping", file_path=str(path))
        return data

    # -- INI --

    def _read_ini_text(self, content: str) -> None:
        group_name: Optional[str] = None
        kind = 'hosts'

        for lineno, raw_line in enumerate(content.splitlines(), 1):
            line = raw_line.strip()
            if not line or line[0] in '#;':
                continue

            if line.startswith('[') and line.endswith(']'):
                section = _SECTION.match(line)
                if section is None or not section.group(1):
                    raise InventoryError(f"Invalid group header at line {lineno}: {line}", file_path=self._source)
                group_name, kind = section.group(1), section.group(2) or 'hosts'
                self._group(group_name)
                continue

            if kind == 'vars':
                key, sep, value = line.partition('=')
                if not sep:
                    raise InventoryError(
                        f"Expected key=value in [{group_name}:vars] at line {lineno}",
                        file_path=self._source,
                    )
                quoted, text = _unquote(value.strip())
                self._group(group_name).set_variable(key.strip(), text if quoted else convert_scalar(text))
            elif kind == 'children':
                self._link(group_name, line.split()[0])
            else:
                pattern, *rest = line.split(None, 1)
                variables = self._inline_vars(rest[0] if rest else '')
                for name in expand_host_pattern(pattern):
                    self._declare_host(name, variables, group_name)

    @staticmethod
    def _inline_vars(text: str) -> Dict[str, Any]:
        variables: Dict[str, Any] = {}
        for match in _INLINE_VAR.finditer(text):
            key, double, single, bare = match.groups()
            if double is not None:
                variables[key] = double
            elif single is not None:
                variables[key] = single
            else:
                variables[key] = convert_scalar(bare)
        return variables

    # -- YAML / JSON --

    def _read_yaml_text(self, content: str, path: Optional[Path] = None) -> None:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise InventoryError(f"YAML syntax error: {e}", file_path=str(path) if path else self._source)
        if data:
            self._read_yaml_groups(data)

    def _read_yaml_groups(self, data: Any) -> None:
        if not isinstance(data, dict):
            raise InventoryError("YAML inventory must be a mapping of groups", file_path=self._source)
        for name, body in data.items():
            self._read_yaml_group(str(name), body or {})

    def _read_yaml_group(self, name: str, body: Any) -> None:
        self._group(name)
        if not isinstance(body, dict):
            raise InventoryError(f"Group '{name}' must be a mapping", file_path=self._source)

        hosts = body.get('hosts') or {}
        if isinstance(hosts, list):
            hosts = dict.fromkeys(hosts)
        for pattern, host_vars in hosts.items():
            for host_name in expand_host_pattern(str(pattern)):
                self._declare_host(host_name, host_vars or {}, name)

        group_vars = body.get('vars') or {}
        if not isinstance(group_vars, dict):
            raise InventoryError(f"'vars' of group '{name}' must be a mapping", file_path=self._source)
        for key, value in group_vars.items():
            self.groups[name].set_variable(key, value)

        for child, child_body in (body.get('children') or {}).items():
            child = str(child)
            self._group(name).add_child(child)
            self._read_yaml_group(child, child_body or {})
            self._group(child).add_parent(name)
