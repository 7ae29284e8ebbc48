"""
Stratum Engine Module

Variable resolution, templating and the execution driver.
"""

from stratum.engine.context import PlayContext
from stratum.engine.errors import (
    CollectionError,
    CyclicGroupError,
    InventoryError,
    ParseError,
    StratumError,
    TemplateError,
    TemplateSyntaxError,
    UndefinedVariableError,
    UnknownFilterError,
    UnknownHostError,
)
from stratum.engine.facts import FactCache, FactSnapshot, FactStore
from stratum.engine.playbook import Block, Play, PlaybookParser, Task
from stratum.engine.resolver import MISSING, ContextResolver, HostVars
from stratum.engine.results import PlaybookResult, PlayResult, TaskResult, TaskStatus
from stratum.engine.scheduler import Scheduler
from stratum.engine.templating import TemplateEngine
from stratum.engine.variables import Scope, VariableBinding, VariableStore

__all__ = [
    'PlayContext',
    'FactCache',
    'FactSnapshot',
    'FactStore',
    'Block',
    'Play',
    'PlaybookParser',
    'Task',
    'MISSING',
    'ContextResolver',
    'HostVars',
    'PlaybookResult',
    'PlayResult',
    'TaskResult',
    'TaskStatus',
    'Scheduler',
    'TemplateEngine',
    'Scope',
    'VariableBinding',
    'VariableStore',
    'StratumError',
    'ParseError',
    'InventoryError',
    'CyclicGroupError',
    'UnknownHostError',
    'TemplateError',
    'TemplateSyntaxError',
    'UnknownFilterError',
    'UndefinedVariableError',
    'CollectionError',
]
