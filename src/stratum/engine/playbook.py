"""
Stratum Playbook Parser

Parses YAML playbooks into Play, Block and Task objects. Blocks keep
their nesting and their own vars, since block vars form a precedence
tier of their own. Roles contribute role vars and role defaults to
each of their tasks, and the vars of an include join the role vars.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from stratum.engine.errors import ParseError
from stratum.engine.variables import combine_vars

logger = logging.getLogger(__name__)

# Keywords that can never be the module of a task
TASK_KEYWORDS = {
    'name', 'vars', 'when', 'register', 'loop', 'loop_control', 'with_items',
    'with_list', 'ignore_errors', 'notify', 'listen', 'block', 'rescue',
    'always', 'args',
}

# Accepted for compatibility but without effect; a warning names each use
IGNORED_KEYWORDS = {
    'tags', 'become', 'become_user', 'become_method', 'connection',
    'environment', 'strategy', 'serial', 'changed_when', 'failed_when',
    'delegate_to', 'run_once', 'no_log', 'check_mode', 'diff',
}

FREE_FORM_MODULES = {'command', 'shell', 'raw', 'script', 'win_command', 'win_shell'}

# Pattern for inline "key=value" module arguments
INLINE_ARG_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')

Condition = Union[str, bool, List[Any], None]


@dataclass
class Task:
    """One module invocation with its task keywords."""

    name: str
    module: str
    args: Dict[str, Any] = field(default_factory=dict)
    register: Optional[str] = None
    when: Condition = None
    loop: Any = None
    loop_var: str = "item"
    vars: Dict[str, Any] = field(default_factory=dict)
    ignore_errors: bool = False
    notify: List[str] = field(default_factory=list)
    listen: List[str] = field(default_factory=list)  # extra names this handler answers to
    role_name: Optional[str] = None
    role_vars: Dict[str, Any] = field(default_factory=dict)
    role_defaults: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"Task(name={self.name!r}, module={self.module!r})"


@dataclass
class Block:
    """A group of tasks with its own vars and rescue/always sections."""

    name: str = ""
    vars: Dict[str, Any] = field(default_factory=dict)
    block: List[Union['Task', 'Block']] = field(default_factory=list)
    rescue: List[Union['Task', 'Block']] = field(default_factory=list)
    always: List[Union['Task', 'Block']] = field(default_factory=list)
    when: Condition = None

    def __repr__(self) -> str:
        return f"Block(name={self.name!r}, tasks={len(self.block)})"


TaskItem = Union[Task, Block]


@dataclass
class Play:
    """One play: target pattern, vars and flattened task sections."""

    name: str
    hosts: str
    tasks: List[TaskItem] = field(default_factory=list)
    handlers: List[Task] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    vars_files: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    gather_facts: Optional[bool] = None  # None = use the configured default
    fact_filter: Union[str, List[str], None] = None

    def __repr__(self) -> str:
        return f"Play(name={self.name!r}, hosts={self.hosts!r}, tasks={len(self.tasks)})"


def iter_tasks(items: List[TaskItem]):
    """Yield every Task in a task tree, depth first."""
    for item in items:
        if isinstance(item, Block):
            yield from iter_tasks(item.block)
            yield from iter_tasks(item.rescue)
            yield from iter_tasks(item.always)
        else:
            yield item


class PlaybookParser:
    """
    Parse YAML playbooks into Play objects.

    Relative paths (vars_files, include_tasks, roles/) resolve against the
    playbook's directory.
    """

    def __init__(self, playbook_path: Union[str, Path, None] = None, base_dir: Union[str, Path, None] = None):
        self.playbook_path = Path(playbook_path) if playbook_path else None
        if base_dir is not None:
            self._base_dir = Path(base_dir)
        elif self.playbook_path is not None:
            self._base_dir = self.playbook_path.parent
        else:
            self._base_dir = Path.cwd()
        self.plays: List[Play] = []

    @classmethod
    def from_string(cls, content: str, base_dir: Union[str, Path, None] = None) -> List[Play]:
        """Parse playbook YAML given as a string."""
        parser = cls(base_dir=base_dir)
        return parser.parse_content(content)

    @property
    def _source(self) -> Optional[str]:
        return str(self.playbook_path) if self.playbook_path else None

    def parse(self) -> List[Play]:
        """
        Parse the playbook file.

        Returns:
            List of Play objects

        Raises:
            ParseError: If the playbook is missing or malformed
        """
        if self.playbook_path is None or not self.playbook_path.exists():
            raise ParseError(f"Playbook not found: {self.playbook_path}", file_path=self._source)
        return self.parse_content(self.playbook_path.read_text(encoding='utf-8'))

    def parse_content(self, content: str) -> List[Play]:
        try:
            documents = list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            line = None
            mark = getattr(e, 'problem_mark', None)
            if mark is not None:
                line = mark.line + 1
            raise ParseError(f"YAML syntax error: {e}", file_path=self._source, line=line) from None

        all_plays: List[Any] = []
        for doc in documents:
            if doc is None:
                continue
            if isinstance(doc, list):
                all_plays.extend(doc)
            elif isinstance(doc, dict):
                all_plays.append(doc)
            else:
                raise ParseError(f"Playbook must be a list of plays, got {type(doc).__name__}",
                                 file_path=self._source)

        for play_data in all_plays:
            if not isinstance(play_data, dict):
                raise ParseError(f"Play must be a mapping, got {type(play_data).__name__}",
                                 file_path=self._source)
            self.plays.append(self._parse_play(play_data))

        logger.debug("Parsed %d play(s) from %s", len(self.plays), self._source or '<string>')
        return self.plays

    def _parse_play(self, data: Dict[str, Any]) -> Play:
        """Build a Play from one mapping of the playbook list."""
        if 'hosts' not in data:
            raise ParseError("Play missing required 'hosts' field", file_path=self._source)

        hosts = data['hosts']
        if isinstance(hosts, list):
            hosts = ','.join(str(h) for h in hosts)

        self._warn_ignored(data, f"play {data.get('name', hosts)!r}")
        gather_facts = data.get('gather_facts')
        play = Play(
            name=data.get('name', str(hosts)),
            hosts=str(hosts),
            gather_facts=None if gather_facts is None else bool(gather_facts),
            fact_filter=data.get('fact_filter'),
        )
        play.vars = self._ensure_dict(data.get('vars'), 'vars')

        # vars_files override inline play vars, in listed order
        play.vars_files = [str(f) for f in self._ensure_list(data.get('vars_files'))]
        for vars_file in play.vars_files:
            play.vars = combine_vars(play.vars, self._load_vars_file(self._base_dir / vars_file))

        pre_tasks = self._parse_task_list(data.get('pre_tasks'))

        role_tasks: List[TaskItem] = []
        for role_entry in self._ensure_list(data.get('roles')):
            name, tasks = self._load_role(role_entry)
            play.roles.append(name)
            role_tasks.extend(tasks)

        tasks = self._parse_task_list(data.get('tasks'))
        post_tasks = self._parse_task_list(data.get('post_tasks'))

        # pre_tasks -> roles -> tasks -> post_tasks
        play.tasks = pre_tasks + role_tasks + tasks + post_tasks

        for handler_data in self._ensure_list(data.get('handlers')):
            if not isinstance(handler_data, dict):
                raise ParseError("Handler must be a mapping", file_path=self._source)
            play.handlers.append(self._parse_task(handler_data))

        return play

    def _parse_task_list(self, items: Any) -> List[TaskItem]:
        result: List[TaskItem] = []
        for data in self._ensure_list(items):
            if not isinstance(data, dict):
                raise ParseError(f"Task must be a mapping, got {type(data).__name__}", file_path=self._source)
            parsed = self._parse_task_or_block(data)
            if isinstance(parsed, list):
                result.extend(parsed)
            else:
                result.append(parsed)
        return result

    def _parse_task_or_block(self, data: Dict[str, Any]) -> Union[TaskItem, List[TaskItem]]:
        """Parse a task, a block, or a static include."""
        if 'block' in data:
            return self._parse_block(data)
        if 'include_tasks' in data or 'import_tasks' in data:
            return self._parse_include_tasks(data)
        if 'include_role' in data or 'import_role' in data:
            return self._parse_include_role(data)
        return self._parse_task(data)

    def _parse_block(self, data: Dict[str, Any]) -> Block:
        """Parse a block, keeping nested blocks as Block objects."""
        self._warn_ignored(data, f"block {data.get('name', 'block')!r}")
        return Block(
            name=data.get('name', 'block'),
            vars=self._ensure_dict(data.get('vars'), 'vars'),
            block=self._parse_task_list(data.get('block')),
            rescue=self._parse_task_list(data.get('rescue')),
            always=self._parse_task_list(data.get('always')),
            when=data.get('when'),
        )

    def _parse_include_tasks(self, data: Dict[str, Any]) -> Block:
        """
        Parse include_tasks or import_tasks.

        Both are inlined at parse time and wrapped in a block carrying the
        include's when condition. The include's vars are role-scoped: they
        join the role vars of every included task, below any block vars.
        """
        tasks_file = data.get('include_tasks') or data.get('import_tasks')
        if isinstance(tasks_file, dict):
            tasks_file = tasks_file.get('file')
        if not tasks_file:
            raise ParseError("include_tasks/import_tasks requires a file path", file_path=self._source)

        tasks_path = self._base_dir / tasks_file
        tasks_data = self._load_yaml(tasks_path)
        if tasks_data is None:
            tasks_data = []
        if not isinstance(tasks_data, list):
            raise ParseError(f"Tasks file must contain a list: {tasks_file}", file_path=str(tasks_path))

        include_vars = self._ensure_dict(data.get('vars'), 'vars')
        items = self._parse_task_list(tasks_data)
        for task in iter_tasks(items):
            # Vars of an include nested deeper (or of a role) stay on top
            task.role_vars = combine_vars(include_vars, task.role_vars)

        self._warn_ignored(data, f"include {tasks_file}")
        return Block(
            name=data.get('name', f"include {tasks_file}"),
            block=items,
            when=data.get('when'),
        )

    def _parse_include_role(self, data: Dict[str, Any]) -> Block:
        role_data = data.get('include_role') or data.get('import_role')
        if isinstance(role_data, str):
            entry: Dict[str, Any] = {'role': role_data}
        elif isinstance(role_data, dict) and role_data.get('name'):
            entry = {'role': role_data['name']}
        else:
            raise ParseError("include_role/import_role requires a role name", file_path=self._source)

        # include_role vars are role params (tier 4)
        entry.update(self._ensure_dict(data.get('vars'), 'vars'))
        name, tasks = self._load_role(entry)
        self._warn_ignored(data, f"include role {name!r}")
        return Block(
            name=data.get('name', f"include role {name}"),
            block=tasks,
            when=data.get('when'),
        )

    def _load_role(self, role_entry: Any) -> tuple:
        """
        Load a role's tasks, vars and defaults.

        Args:
            role_entry: Either a role name or a dict with 'role' (or 'name')
                and role parameters

        Returns:
            (role name, list of task items)
        """
        if isinstance(role_entry, str):
            role_name = role_entry
            params: Dict[str, Any] = {}
            role_when: Condition = None
        elif isinstance(role_entry, dict):
            role_name = role_entry.get('role') or role_entry.get('name')
            if not role_name:
                raise ParseError("Role entry must have 'role' or 'name' key", file_path=self._source)
            params = {
                k: v for k, v in role_entry.items()
                if k not in ('role', 'name', 'when', 'vars') and k not in IGNORED_KEYWORDS
            }
            params.update(self._ensure_dict(role_entry.get('vars'), 'vars'))
            role_when = role_entry.get('when')
            self._warn_ignored(role_entry, f"role {role_name!r}")
        else:
            raise ParseError(f"Invalid role entry type: {type(role_entry).__name__}", file_path=self._source)

        role_path = self._find_role_path(role_name)
        if role_path is None:
            raise ParseError(f"Role not found: {role_name}", file_path=self._source)

        defaults = self._load_vars_file(role_path / "defaults" / "main.yml", required=False)
        # Role params win over vars/main.yml
        role_vars = combine_vars(self._load_vars_file(role_path / "vars" / "main.yml", required=False), params)

        tasks_file = role_path / "tasks" / "main.yml"
        tasks_data = self._load_yaml(tasks_file) if tasks_file.exists() else []
        if tasks_data is None:
            tasks_data = []
        if not isinstance(tasks_data, list):
            raise ParseError(f"Role tasks must be a list: {tasks_file}", file_path=str(tasks_file))

        items = self._parse_task_list(tasks_data)
        for task in iter_tasks(items):
            # Tasks of a role included from this one keep their own role
            if task.role_name is None:
                task.role_name = role_name
            task.role_vars = combine_vars(role_vars, task.role_vars)
            task.role_defaults = combine_vars(defaults, task.role_defaults)
            if role_when is not None:
                task.when = _and_conditions(role_when, task.when)

        logger.debug("Loaded role %s from %s (%d task item(s))", role_name, role_path, len(items))
        return role_name, items

    def _find_role_path(self, role_name: str) -> Optional[Path]:
        """
        Find the path to a role.

        Searches in:
        1. <playbook_dir>/roles/<role_name>
        2. ./roles/<role_name>
        """
        for path in (self._base_dir / "roles" / role_name, Path.cwd() / "roles" / role_name):
            if path.is_dir():
                return path
        return None

    def _parse_task(self, data: Dict[str, Any]) -> Task:
        """Build a Task from one task mapping."""
        module_name = None
        module_args: Any = None
        for key, value in data.items():
            if key in TASK_KEYWORDS or key in IGNORED_KEYWORDS:
                continue
            if module_name is not None:
                raise ParseError(f"Task has more than one module: {module_name!r} and {key!r}",
                                 file_path=self._source)
            module_name = key
            module_args = value

        if module_name is None:
            raise ParseError(f"Task has no module: {list(data.keys())}", file_path=self._source)

        self._warn_ignored(data, f"task {data.get('name', module_name)!r}")

        args = self._normalize_args(module_name, module_args)
        if isinstance(data.get('args'), dict):
            args = combine_vars(data['args'], args)

        loop = None
        if 'loop' in data:
            loop = data['loop']
        elif 'with_items' in data:
            loop = data['with_items']
        elif 'with_list' in data:
            loop = data['with_list']

        loop_var = "item"
        if isinstance(data.get('loop_control'), dict):
            loop_var = data['loop_control'].get('loop_var', 'item')

        return Task(
            name=data.get('name', f'{module_name} task'),
            module=module_name,
            args=args,
            register=data.get('register'),
            when=data.get('when'),
            loop=loop,
            loop_var=loop_var,
            vars=self._ensure_dict(data.get('vars'), 'vars'),
            ignore_errors=bool(data.get('ignore_errors', False)),
            notify=[str(n) for n in self._ensure_list(data.get('notify'))],
            listen=[str(n) for n in self._ensure_list(data.get('listen'))],
        )

    def _normalize_args(self, module_name: str, args: Any) -> Dict[str, Any]:
        """Module args as a dict, splitting key=value strings."""
        if args is None:
            return {}
        if isinstance(args, dict):
            return args
        if isinstance(args, str):
            # Inline args: "src=foo dest=bar"
            parsed: Dict[str, Any] = {}
            for match in INLINE_ARG_PATTERN.finditer(args):
                key, *values = match.groups()
                parsed[key] = next(value for value in values if value is not None)
            if not parsed or module_name in FREE_FORM_MODULES:
                return {'_raw_params': args}
            return parsed
        return {'_raw_params': args}

    def _load_yaml(self, path: Path) -> Any:
        if not path.exists():
            raise ParseError(f"File not found: {path}", file_path=self._source)
        try:
            return yaml.safe_load(path.read_text(encoding='utf-8'))
        except yaml.YAMLError as e:
            raise ParseError(f"YAML syntax error: {e}", file_path=str(path)) from None

    def _load_vars_file(self, path: Path, required: bool = True) -> Dict[str, Any]:
        if not required and not path.exists():
            return {}
        data = self._load_yaml(path)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ParseError(f"Vars file must contain a mapping: {path}", file_path=str(path))
        return data

    def _ensure_dict(self, value: Any, what: str) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ParseError(f"'{what}' must be a dictionary, got {type(value).__name__}", file_path=self._source)
        return dict(value)

    def _warn_ignored(self, data: Dict[str, Any], where: str) -> None:
        for key in sorted(IGNORED_KEYWORDS.intersection(data)):
            logger.warning("Ignoring unsupported keyword %r in %s (%s)", key, where, self._source or '<string>')

    @staticmethod
    def _ensure_list(value: Any) -> List[Any]:
        """Wrap a scalar in a list; None becomes []."""
        if value is None:
            return []
        if isinstance(value, list):
            return value
        return [value]


def _and_conditions(first: Condition, second: Condition) -> Condition:
    """Combine two when conditions into one list that must all hold."""
    combined: List[Any] = []
    for condition in (first, second):
        if condition is None:
            continue
        if isinstance(condition, list):
            combined.extend(condition)
        else:
            combined.append(condition)
    return combined or None
