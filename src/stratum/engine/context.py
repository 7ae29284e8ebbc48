"""
Stratum Play Context

Transient, per (play, host) state: play vars, role vars and defaults,
the stack of enclosing blocks and the current task's vars. A context is
owned by exactly one host evaluation and discarded when the play ends.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional


@dataclass
class PlayContext:
    """Variables contributed by the play currently executing for one host."""

    play_name: str = ""
    play_vars: Dict[str, Any] = field(default_factory=dict)
    role_vars: Dict[str, Any] = field(default_factory=dict)
    role_defaults: Dict[str, Any] = field(default_factory=dict)
    block_vars: List[Dict[str, Any]] = field(default_factory=list)  # outermost first
    task_vars: Dict[str, Any] = field(default_factory=dict)
    task_name: Optional[str] = None
    play_hosts: List[str] = field(default_factory=list)

    def push_block(self, variables: Optional[Mapping[str, Any]]) -> None:
        """Enter a block."""
        self.block_vars.append(dict(variables or {}))

    def pop_block(self) -> Dict[str, Any]:
        """Leave the innermost block."""
        return self.block_vars.pop()

    def block_chain(self) -> List[Dict[str, Any]]:
        """Block vars, innermost block first."""
        return list(reversed(self.block_vars))

    def for_task(
        self,
        task_name: Optional[str],
        task_vars: Optional[Mapping[str, Any]] = None,
        role_vars: Optional[Mapping[str, Any]] = None,
        role_defaults: Optional[Mapping[str, Any]] = None,
    ) -> 'PlayContext':
        """
        Derive the context for one task.

        The block stack is snapshotted so later pushes and pops on this
        context do not affect the derived one.
        """
        return replace(
            self,
            task_name=task_name,
            task_vars=dict(task_vars or {}),
            role_vars=dict(role_vars) if role_vars is not None else self.role_vars,
            role_defaults=dict(role_defaults) if role_defaults is not None else self.role_defaults,
            block_vars=list(self.block_vars),
        )

    def with_task_vars(self, extra: Mapping[str, Any]) -> 'PlayContext':
        """Copy of this context with additional task-level vars (e.g. a loop item)."""
        return replace(self, task_vars={**self.task_vars, **extra}, block_vars=list(self.block_vars))
