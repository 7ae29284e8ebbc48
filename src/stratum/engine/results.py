"""
Outcome records produced by the scheduler.

A TaskResult describes one task on one host. PlayResult collects them
per play together with per-host counters, and PlaybookResult folds the
plays into the final recap and the process exit code.
"""

import json
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from stratum.engine.errors import ExitCode

# Keys of a module's return mapping that become TaskResult attributes
_RESULT_FIELDS = ('changed', 'failed', 'skipped', 'rc', 'stdout', 'stderr', 'msg', 'unreachable')


class TaskStatus(Enum):
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNREACHABLE = "unreachable"


def _status_of(raw: Mapping[str, Any]) -> TaskStatus:
    # First matching flag wins; unreachable outranks failed
    for flag, status in (
        ('unreachable', TaskStatus.UNREACHABLE),
        ('failed', TaskStatus.FAILED),
        ('skipped', TaskStatus.SKIPPED),
        ('changed', TaskStatus.CHANGED),
    ):
        if raw.get(flag):
            return status
    return TaskStatus.OK


def _text(raw: Mapping[str, Any], key: str) -> str:
    return str(raw.get(key) or '')


@dataclass
class TaskResult:
    """What happened when one task ran against one host."""

    host: str
    task_name: str
    status: TaskStatus
    changed: bool = False
    rc: int = 0
    stdout: str = ""
    stderr: str = ""
    msg: str = ""
    # Module return keys other than the standard ones
    results: Dict[str, Any] = field(default_factory=dict)
    # One entry per loop item, None when the task had no loop
    loop_results: Optional[List['TaskResult']] = None
    ignored: bool = False
    rescued: bool = False

    @classmethod
    def from_module(cls, host: str, task_name: str, raw: Any) -> 'TaskResult':
        """
        Normalize a dispatcher return value.

        TaskResult instances pass through. None counts as an empty mapping.
        Anything that is not a mapping turns into a failed result.
        """
        if isinstance(raw, TaskResult):
            return raw
        raw = {} if raw is None else raw
        if not isinstance(raw, Mapping):
            return cls(host, task_name, TaskStatus.FAILED,
                       msg=f"module returned {type(raw).__name__}, expected a mapping")

        rc = raw.get('rc', 0)
        extra = {key: value for key, value in raw.items() if key not in _RESULT_FIELDS}
        return cls(
            host,
            task_name,
            _status_of(raw),
            changed=bool(raw.get('changed')),
            rc=rc if isinstance(rc, int) else 0,
            stdout=_text(raw, 'stdout'),
            stderr=_text(raw, 'stderr'),
            msg=_text(raw, 'msg'),
            results=extra,
        )

    @property
    def failed(self) -> bool:
        return self.status in (TaskStatus.FAILED, TaskStatus.UNREACHABLE)

    @property
    def ok(self) -> bool:
        return self.status in (TaskStatus.OK, TaskStatus.CHANGED)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready form; empty optional fields are left out."""
        data: Dict[str, Any] = {
            "host": self.host,
            "task": self.task_name,
            "status": self.status.value,
            "changed": self.changed,
            "rc": self.rc,
        }
        optional = {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "msg": self.msg,
            "results": self.results,
            "ignored": self.ignored,
            "rescued": self.rescued,
        }
        data.update({key: value for key, value in optional.items() if value})
        if self.loop_results:
            data["loop_results"] = [item.to_dict() for item in self.loop_results]
        return data

    def to_register(self) -> Dict[str, Any]:
        """The value a ``register:`` keyword binds for this result."""
        registered: Dict[str, Any] = dict(self.results)
        registered["changed"] = self.changed
        registered["failed"] = self.status is TaskStatus.FAILED
        registered["skipped"] = self.status is TaskStatus.SKIPPED
        registered["rc"] = self.rc
        registered["msg"] = self.msg
        for stream in ("stdout", "stderr"):
            text = getattr(self, stream)
            registered[stream] = text
            registered[f"{stream}_lines"] = text.splitlines()
        if self.status is TaskStatus.UNREACHABLE:
            registered["unreachable"] = True
        if self.loop_results is not None:
            registered["results"] = [item.to_register() for item in self.loop_results]
        return registered


@dataclass
class HostStats:
    """Recap counters of one host."""

    host: str
    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unreachable: int = 0
    ignored: int = 0
    rescued: int = 0

    def record(self, result: TaskResult) -> None:
        if result.ignored:
            self.ignored += 1
            return
        counter = result.status.value
        setattr(self, counter, getattr(self, counter) + 1)

    def merge(self, other: 'HostStats') -> None:
        for counter in fields(self):
            if counter.name != 'host':
                setattr(self, counter.name, getattr(self, counter.name) + getattr(other, counter.name))

    @property
    def has_failures(self) -> bool:
        return bool(self.failed or self.unreachable)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PlayResult:
    """Task results and recap counters of one play."""

    play_name: str
    hosts: List[str]
    task_results: List[TaskResult] = field(default_factory=list)
    host_stats: Dict[str, HostStats] = field(default_factory=dict)
    failed_hosts: List[str] = field(default_factory=list)

    def add_result(self, result: TaskResult) -> None:
        self.task_results.append(result)
        stats = self.host_stats.setdefault(result.host, HostStats(result.host))
        stats.record(result)

    def mark_rescued(self, result: TaskResult) -> None:
        """Move a failure handled by a rescue section from failed to rescued."""
        if result.rescued:
            return
        result.rescued = True
        if result.status is not TaskStatus.FAILED or result.ignored:
            return
        stats = self.host_stats.get(result.host)
        if stats is not None:
            stats.failed -= 1
            stats.rescued += 1

    def results_for(self, host: str) -> List[TaskResult]:
        return [result for result in self.task_results if result.host == host]

    @property
    def has_failures(self) -> bool:
        if self.failed_hosts:
            return True
        return any(stats.has_failures for stats in self.host_stats.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "play": self.play_name,
            "hosts": self.hosts,
            "tasks": [result.to_dict() for result in self.task_results],
            "stats": {host: stats.to_dict() for host, stats in self.host_stats.items()},
            "failed_hosts": self.failed_hosts,
        }


@dataclass
class PlaybookResult:
    """Every play of one run, in execution order."""

    playbook_path: str = ""
    play_results: List[PlayResult] = field(default_factory=list)

    def add_play_result(self, result: PlayResult) -> None:
        self.play_results.append(result)

    def get_final_stats(self) -> Dict[str, HostStats]:
        """Per-host counters summed over all plays."""
        totals: Dict[str, HostStats] = {}
        for play in self.play_results:
            for host, stats in play.host_stats.items():
                totals.setdefault(host, HostStats(host)).merge(stats)
        return totals

    @property
    def success(self) -> bool:
        return all(not play.has_failures for play in self.play_results)

    @property
    def exit_code(self) -> int:
        if self.success:
            return ExitCode.SUCCESS
        return ExitCode.HOST_FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playbook": self.playbook_path,
            "plays": [play.to_dict() for play in self.play_results],
            "stats": {host: stats.to_dict() for host, stats in self.get_final_stats().items()},
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)
