"""
Stratum Templating Engine

Jinja2-based templating with Ansible-like behavior:

- strict undefined handling: using an undefined value for anything but a
  test or ``default`` raises UndefinedVariableError
- a template made of a single ``{{ expr }}`` returns the expression's
  native value instead of its string form
- the whole template is parsed (syntax and filter names) before anything
  renders, so a failing template never yields partial output
- string values in the context that are themselves templates are
  rendered lazily on first access
"""

import base64
import json
import logging
import os
import re
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Set, Tuple, Union

import yaml
from jinja2 import ChainableUndefined, Environment, StrictUndefined, Template, Undefined, nodes
from jinja2.exceptions import TemplateSyntaxError as JinjaSyntaxError
from jinja2.exceptions import UndefinedError
from jinja2.nativetypes import NativeEnvironment
from jinja2.utils import LRUCache

from stratum.engine.errors import (
    StratumError,
    TemplateError,
    TemplateSyntaxError,
    UndefinedVariableError,
    UnknownFilterError,
)

logger = logging.getLogger(__name__)

TEMPLATE_MARKERS = ('{{', '{%', '{#')

_UNDEFINED_NAME = re.compile(r"'([^']+)' is undefined")


class StrictChainableUndefined(ChainableUndefined, StrictUndefined):
    """
    Undefined that allows attribute chaining but nothing else.

    ``{{ missing.attr | default('x') }}`` works; printing, iterating,
    comparing or testing the truth of an undefined value raises.
    """

    __slots__ = ()


def _filter_default(value: Any, default_value: Any = '', boolean: bool = False) -> Any:
    """Return default_value if value is undefined (or falsy with boolean=True)."""
    if isinstance(value, Undefined):
        return default_value
    if boolean and not value:
        return default_value
    return value


def _filter_mandatory(value: Any, msg: Optional[str] = None) -> Any:
    """Fail unless value is defined."""
    if isinstance(value, Undefined):
        name = getattr(value, '_undefined_name', None)
        raise UndefinedVariableError(name, message=msg or f"Mandatory variable '{name}' not defined")
    return value


def _filter_bool(value: Any) -> bool:
    """The bool filter."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ('true', 'yes', '1', 'on')
    return bool(value)


def _filter_to_yaml(value: Any, **kwargs) -> str:
    """Dump a value as block-style YAML."""
    kwargs.setdefault('default_flow_style', False)
    return yaml.safe_dump(value, **kwargs)


def _filter_from_yaml(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return yaml.safe_load(value)


def _filter_to_json(value: Any, **kwargs) -> str:
    return json.dumps(value, default=str, **kwargs)


def _filter_from_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return json.loads(value)


def _filter_basename(path: str) -> str:
    """Get basename of a path."""
    return os.path.basename(str(path))


def _filter_dirname(path: str) -> str:
    return os.path.dirname(str(path))


def _filter_regex_replace(value: str, pattern: str, replacement: str = '', ignorecase: bool = False) -> str:
    """re.sub with the value as the subject."""
    flags = re.IGNORECASE if ignorecase else 0
    return re.sub(pattern, replacement, str(value), flags=flags)


def _filter_b64decode(value: str) -> str:
    """Base64 text back to a UTF-8 string."""
    return base64.b64decode(value).decode('utf-8')


def _filter_b64encode(value: Union[str, bytes]) -> str:
    """Encode string to base64."""
    if isinstance(value, bytes):
        return base64.b64encode(value).decode('utf-8')
    return base64.b64encode(str(value).encode('utf-8')).decode('utf-8')


def _regex_test(value: Any, pattern: str = '', ignorecase: bool = False, multiline: bool = False,
                match_type: str = 'search') -> bool:
    if isinstance(value, Undefined) or value is None:
        return False
    flags = 0
    if ignorecase:
        flags |= re.IGNORECASE
    if multiline:
        flags |= re.MULTILINE
    method = getattr(re.compile(pattern, flags), match_type)
    return method(str(value)) is not None


def _test_match(value: Any, pattern: str = '', ignorecase: bool = False, multiline: bool = False) -> bool:
    """Pattern matches at the start of the value."""
    return _regex_test(value, pattern, ignorecase, multiline, 'match')


def _test_search(value: Any, pattern: str = '', ignorecase: bool = False, multiline: bool = False) -> bool:
    """Pattern matches anywhere in the value."""
    return _regex_test(value, pattern, ignorecase, multiline, 'search')


# Filters added on top of the Jinja2 built-ins
CUSTOM_FILTERS: Dict[str, Callable[..., Any]] = {
    'default': _filter_default,
    'd': _filter_default,
    'mandatory': _filter_mandatory,
    'bool': _filter_bool,
    'to_json': _filter_to_json,
    'from_json': _filter_from_json,
    'to_yaml': _filter_to_yaml,
    'from_yaml': _filter_from_yaml,
    'basename': _filter_basename,
    'dirname': _filter_dirname,
    'regex_replace': _filter_regex_replace,
    'b64decode': _filter_b64decode,
    'b64encode': _filter_b64encode,
}

CUSTOM_TESTS: Dict[str, Callable[..., bool]] = {
    'match': _test_match,
    'search': _test_search,
    'regex': _test_search,
}


def is_template(value: Any) -> bool:
    """True if value is a string containing template markers."""
    return isinstance(value, str) and any(marker in value for marker in TEMPLATE_MARKERS)


def to_bool(value: Any) -> bool:
    """Truthiness with yes/on/1 strings counted as true."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        value_lower = value.lower().strip()
        if value_lower in ('true', 'yes', '1', 'on'):
            return True
        if value_lower in ('false', 'no', '0', 'off', '', 'none'):
            return False
        return True
    return bool(value)


class TemplateVars(Mapping):
    """
    The variable mapping a template renders against.

    Values that are themselves templates render on first access, against
    this same mapping, and are cached for the rest of the render. A value
    whose rendering needs itself raises TemplateError. Names not in the
    context fall back to the environment globals (``range``, ``dict``...).
    """

    def __init__(self, engine: 'TemplateEngine', variables: Mapping[str, Any]):
        self._engine = engine
        self._variables = variables
        self._rendered: Dict[str, Any] = {}
        self._active: Set[str] = set()

    def __getitem__(self, key: str) -> Any:
        if key in self._rendered:
            return self._rendered[key]
        if key not in self._variables:
            return self._engine.env.globals[key]

        value = self._variables[key]
        if not isinstance(value, (str, list, dict)):
            return value

        if key in self._active:
            raise TemplateError(f"recursive loop detected in template for '{key}'", variable=key)
        self._active.add(key)
        try:
            value = self._engine.render_recursive(value, self)
        finally:
            self._active.discard(key)
        self._rendered[key] = value
        return value

    def __contains__(self, key: object) -> bool:
        return key in self._variables or key in self._engine.env.globals

    def __iter__(self) -> Iterator[str]:
        return iter(self._variables)

    def __len__(self) -> int:
        return len(self._variables)

    def raw(self, key: str, default: Any = None) -> Any:
        """The unrendered value of a variable."""
        return self._variables.get(key, default)


class TemplateEngine:
    """
    Compiles and renders templates against a variable mapping.

    Provides:
    - interpolation in strings, native values for a lone expression
    - rendering of every string inside dicts and lists
    - conditional (when) evaluation
    - the extra filters plus the match, search and regex tests
    """

    CACHE_SIZE = 400  # compiled templates kept, least recently used dropped first

    def __init__(self, filters: Optional[Dict[str, Callable[..., Any]]] = None,
                 tests: Optional[Dict[str, Callable[..., bool]]] = None):
        options = dict(
            undefined=StrictChainableUndefined,
            variable_start_string='{{',
            variable_end_string='}}',
            block_start_string='{%',
            block_end_string='%}',
            comment_start_string='{#',
            comment_end_string='#}',
            # Plain text output, never HTML
            autoescape=False,
            keep_trailing_newline=True,
        )
        self.env = Environment(**options)
        self.native_env = NativeEnvironment(**options)

        for env in (self.env, self.native_env):
            env.filters.update(CUSTOM_FILTERS)
            env.filters.update(filters or {})
            env.tests.update(CUSTOM_TESTS)
            env.tests.update(tests or {})

        # source -> (compiled template, renders natively)
        self._cache = LRUCache(self.CACHE_SIZE)

    # ------------------------------------------------------------------
    # Compilation

    def parse(self, source: str) -> nodes.Template:
        """
        Parse a template and check every filter and test it names.

        Raises:
            TemplateSyntaxError: Malformed template (unbalanced blocks...)
            UnknownFilterError: A filter name is not registered
        """
        try:
            ast = self.env.parse(source)
        except JinjaSyntaxError as e:
            raise TemplateSyntaxError(e.message or str(e), template=source, line=e.lineno) from None

        for node in ast.find_all(nodes.Filter):
            if node.name not in self.env.filters:
                raise UnknownFilterError(node.name, template=source)
        for node in ast.find_all(nodes.Test):
            if node.name not in self.env.tests:
                raise TemplateSyntaxError(f"no test named '{node.name}'", template=source, line=node.lineno)
        return ast

    @staticmethod
    def _is_single_expression(ast: nodes.Template) -> bool:
        if len(ast.body) != 1 or not isinstance(ast.body[0], nodes.Output):
            return False
        children = ast.body[0].nodes
        return len(children) == 1 and not isinstance(children[0], nodes.TemplateData)

    def _compile(self, source: str) -> Tuple[Template, bool]:
        """Compiled template for source, and whether it renders natively."""
        cached = self._cache.get(source)
        if cached is not None:
            return cached

        ast = self.parse(source)
        native = self._is_single_expression(ast)
        env = self.native_env if native else self.env
        try:
            template = env.from_string(ast)
        except JinjaSyntaxError as e:
            raise TemplateSyntaxError(e.message or str(e), template=source, line=e.lineno) from None
        self._cache[source] = (template, native)
        return template, native

    # ------------------------------------------------------------------
    # Rendering

    def render(self, template_str: Any, variables: Mapping[str, Any]) -> Any:
        """
        Render one template.

        Args:
            template_str: Text that may hold {{ }} or {% %} markup
            variables: Names visible to the template

        Returns:
            The rendered string, or the native value when the template is a
            single ``{{ expr }}``. Non-strings are returned unchanged.

        Raises:
            TemplateSyntaxError, UnknownFilterError: Before anything renders
            UndefinedVariableError: A required variable is undefined
            TemplateError: Any other rendering failure
        """
        if not is_template(template_str):
            return template_str

        template, native = self._compile(template_str)
        context_vars = variables if isinstance(variables, TemplateVars) else TemplateVars(self, variables)

        try:
            ctx = template.new_context(context_vars, shared=True)
            chunks = list(template.root_render_func(ctx))
        except StratumError as e:
            if isinstance(e, TemplateError) and e.template is None:
                e.template = template_str
            raise
        except UndefinedError as e:
            raise self._undefined_error(e, template_str) from None
        except JinjaSyntaxError as e:
            raise TemplateSyntaxError(e.message or str(e), template=template_str, line=e.lineno) from None
        except Exception as e:
            raise TemplateError(str(e) or type(e).__name__, template=template_str) from e

        if native:
            value = chunks[0] if chunks else None
            if isinstance(value, Undefined):
                raise UndefinedVariableError(getattr(value, '_undefined_name', None), template=template_str)
            return value
        return ''.join(str(chunk) for chunk in chunks)

    @staticmethod
    def _undefined_error(error: UndefinedError, template: str) -> UndefinedVariableError:
        message = error.message or str(error)
        match = _UNDEFINED_NAME.search(message)
        if match:
            return UndefinedVariableError(match.group(1), template=template)
        return UndefinedVariableError(None, template=template, message=message)

    def render_recursive(self, data: Any, variables: Mapping[str, Any]) -> Any:
        """
        Render the strings of a nested structure.

        Dict keys and string leaves are rendered; the container shape is kept.
        """
        if isinstance(data, str):
            return self.render(data, variables)

        if isinstance(data, dict):
            return {
                self.render(k, variables) if isinstance(k, str) else k:
                self.render_recursive(v, variables)
                for k, v in data.items()
            }

        if isinstance(data, list):
            return [self.render_recursive(item, variables) for item in data]

        if isinstance(data, tuple):
            return tuple(self.render_recursive(item, variables) for item in data)

        return data

    def evaluate_condition(self, condition: Union[str, bool, None, List[Any]], variables: Mapping[str, Any]) -> bool:
        """
        Evaluate a 'when' condition.

        Args:
            condition: Jinja2 expression without braces, a list of such
                expressions (all must hold), a bool or None
            variables: Mapping of variables for evaluation

        Raises:
            TemplateError: If the condition is invalid or references an
                undefined variable
        """
        if condition is None:
            return True
        if isinstance(condition, bool):
            return condition
        if isinstance(condition, (list, tuple)):
            return all(self.evaluate_condition(item, variables) for item in condition)
        if not isinstance(condition, str):
            return to_bool(condition)

        condition = condition.strip()
        if not condition:
            return True

        # Already templated conditions are evaluated as given
        if is_template(condition):
            template_str = condition
        else:
            template_str = "{{ " + condition + " }}"

        return to_bool(self.render(template_str, variables))

    evaluate_when = evaluate_condition


# Shared engine for module-level helpers
_engine: Optional[TemplateEngine] = None


def get_template_engine() -> TemplateEngine:
    """Process-wide TemplateEngine, created on first use."""
    global _engine
    if _engine is None:
        _engine = TemplateEngine()
    return _engine


def render(template_str: Any, variables: Mapping[str, Any]) -> Any:
    """Render one string with the shared engine."""
    return get_template_engine().render(template_str, variables)


def render_recursive(data: Any, variables: Mapping[str, Any]) -> Any:
    """Render every string inside a nested structure with the shared engine."""
    return get_template_engine().render_recursive(data, variables)


def evaluate_when(condition: Any, variables: Mapping[str, Any]) -> bool:
    """Evaluate a conditional with the shared engine."""
    return get_template_engine().evaluate_condition(condition, variables)
