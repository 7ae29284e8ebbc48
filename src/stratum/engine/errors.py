# Copyright (c) 2024 Stratum Contributors
# MIT License

"""
Stratum Error Classes.

Every exception carries the process exit code it maps to.
Load-time errors (parse, cyclic groups) abort a run; everything raised
while resolving or rendering for one host is scoped to that host.
"""

from __future__ import annotations

import enum
from typing import List, Optional, Sequence


class ExitCode(enum.IntEnum):
    """Process exit codes, numbered like ansible-playbook's."""

    SUCCESS = 0
    GENERIC_ERROR = 1
    HOST_FAILED = 2
    PARSE_ERROR = 3


class StratumError(Exception):
    """Base exception for all Stratum errors."""

    exit_code: int = ExitCode.GENERIC_ERROR

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class ParseError(StratumError):
    """An input file could not be loaded or is malformed."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        line: int | None = None,
        details: str | None = None,
    ) -> None:
        self.file_path = file_path
        self.line = line
        location = ""
        if file_path:
            location = f" in {file_path}"
            if line:
                location += f" at line {line}"
        super().__init__(f"Parse error{location}: {message}", details)


class InventoryError(ParseError):
    """Malformed inventory source or inconsistent group layout."""

    def __init__(self, message: str, file_path: str | None = None) -> None:
        super().__init__(message, file_path=file_path)


class CyclicGroupError(InventoryError):
    """The group parent/child relation contains a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle: List[str] = list(cycle)
        super().__init__(f"Group dependency cycle detected: {' -> '.join(self.cycle)}")


class UnknownHostError(StratumError):
    """A host name was referenced that the inventory does not contain."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(self, host: str) -> None:
        self.host = host
        super().__init__(f"Unknown host: {host}")


class TemplateError(StratumError):
    """Rendering a template failed."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        message: str,
        template: str | None = None,
        variable: str | None = None,
    ) -> None:
        self.template = template
        self.variable = variable

        details = None
        if template:
            # Truncate long templates
            truncated = template[:100] + "..." if len(template) > 100 else template
            details = f"Template: {truncated}"

        super().__init__(f"Template error: {message}", details)


class TemplateSyntaxError(TemplateError):
    """Malformed template, detected before anything is rendered."""

    def __init__(self, message: str, template: str | None = None, line: int | None = None) -> None:
        self.line = line
        where = f" (line {line})" if line else ""
        super().__init__(f"syntax error{where}: {message}", template=template)


class UnknownFilterError(TemplateError):
    """A template pipeline names a filter that is not registered."""

    def __init__(self, filter_name: str, template: str | None = None) -> None:
        self.filter_name = filter_name
        super().__init__(f"no filter named '{filter_name}'", template=template)


class UndefinedVariableError(TemplateError):
    """A variable was required but no tier defines it."""

    def __init__(
        self,
        variable: str | None,
        template: str | None = None,
        host: str | None = None,
        message: str | None = None,
    ) -> None:
        self.host = host
        if message is None:
            message = f"'{variable}' is undefined"
            if host:
                message += f" for host {host}"
        super().__init__(message, template=template, variable=variable)


class CollectionError(StratumError):
    """Fact collection failed for a host. Non-fatal to the run."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(self, host: str, message: str, details: Optional[str] = None) -> None:
        self.host = host
        super().__init__(f"Fact collection from {host} failed: {message}", details)

