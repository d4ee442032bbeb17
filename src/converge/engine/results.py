"""
Converge Result Classes

Data structures for task, play, and run results, plus the per-host,
per-task result log exposed to reporting.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TaskStatus(Enum):
    """Status of a task execution."""
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNREACHABLE = "unreachable"


class HostOutcome(Enum):
    """Final outcome of a host for a play or a run."""
    OK = "ok"
    FAILED = "failed"
    UNREACHABLE = "unreachable"
    CANCELLED = "cancelled"


# Severity used when folding per-play outcomes into a run outcome
_OUTCOME_SEVERITY = {
    HostOutcome.OK: 0,
    HostOutcome.CANCELLED: 1,
    HostOutcome.FAILED: 2,
    HostOutcome.UNREACHABLE: 3,
}


@dataclass
class TaskResult:
    """
    Result of running one task (or one loop item) for one target host.

    Module-specific fields live in ``data``. For looped tasks ``results``
    holds one entry per bound item, each carrying the original ``item``.
    """

    changed: bool = False
    failed: bool = False
    skipped: bool = False
    unreachable: bool = False
    msg: str = ""
    rc: Optional[int] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    # Facts the module wants stored on the target host
    facts: Dict[str, Any] = field(default_factory=dict)
    results: Optional[List['TaskResult']] = None
    item: Any = None
    loop_index: Optional[int] = None
    skip_reason: Optional[str] = None
    # Failure tolerated through ignore_errors
    ignored: bool = False
    host: str = ""
    task_name: str = ""
    delegated_to: Optional[str] = None
    is_handler: bool = False

    @property
    def status(self) -> TaskStatus:
        if self.unreachable:
            return TaskStatus.UNREACHABLE
        if self.failed:
            return TaskStatus.FAILED
        if self.skipped:
            return TaskStatus.SKIPPED
        if self.changed:
            return TaskStatus.CHANGED
        return TaskStatus.OK

    @property
    def ok(self) -> bool:
        """Check if the task succeeded (ok or changed)."""
        return self.status in (TaskStatus.OK, TaskStatus.CHANGED)

    @property
    def is_loop_item(self) -> bool:
        return self.loop_index is not None

    @property
    def fatal(self) -> bool:
        """True when the host must stop running this play."""
        return self.unreachable or (self.failed and not self.ignored)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to the dictionary stored by ``register``.

        Module fields come first so the engine-owned keys always win.
        """
        result: Dict[str, Any] = dict(self.data)
        result.update({
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "msg": self.msg,
        })
        if self.unreachable:
            result["unreachable"] = True
        if self.rc is not None:
            result["rc"] = self.rc
        if self.stdout is not None:
            result["stdout"] = self.stdout
            result["stdout_lines"] = self.stdout.splitlines()
        if self.stderr is not None:
            result["stderr"] = self.stderr
            result["stderr_lines"] = self.stderr.splitlines()
        if self.skip_reason:
            result["skip_reason"] = self.skip_reason
        if self.facts:
            result["facts"] = dict(self.facts)
        if self.delegated_to:
            result["delegated_to"] = self.delegated_to
        if self.results is not None:
            result["results"] = [r.to_dict() for r in self.results]
        if self.is_loop_item:
            result["item"] = self.item
        return result


@dataclass
class ResultRecord:
    """One line of the result log: one task (or handler) on one host."""

    play: str
    host: str
    task: str
    changed: bool = False
    failed: bool = False
    skipped: bool = False
    unreachable: bool = False
    message: str = ""
    skip_reason: Optional[str] = None
    ignored: bool = False
    handler: bool = False
    delegated_to: Optional[str] = None

    @classmethod
    def from_result(cls, play: str, result: TaskResult) -> 'ResultRecord':
        return cls(
            play=play,
            host=result.host,
            task=result.task_name,
            changed=result.changed,
            failed=result.failed,
            skipped=result.skipped,
            unreachable=result.unreachable,
            message=result.msg,
            skip_reason=result.skip_reason,
            ignored=result.ignored,
            handler=result.is_handler,
            delegated_to=result.delegated_to,
        )

    @property
    def status(self) -> TaskStatus:
        if self.unreachable:
            return TaskStatus.UNREACHABLE
        if self.failed:
            return TaskStatus.FAILED
        if self.skipped:
            return TaskStatus.SKIPPED
        if self.changed:
            return TaskStatus.CHANGED
        return TaskStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "play": self.play,
            "host": self.host,
            "task": self.task,
            "status": self.status.value,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "message": self.message,
        }
        if self.unreachable:
            result["unreachable"] = True
        if self.skip_reason:
            result["skip_reason"] = self.skip_reason
        if self.ignored:
            result["ignored"] = True
        if self.handler:
            result["handler"] = True
        if self.delegated_to:
            result["delegated_to"] = self.delegated_to
        return result


@dataclass
class HostStats:
    """Statistics for a single host across all tasks."""

    host: str
    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unreachable: int = 0
    ignored: int = 0

    def record(self, record: ResultRecord) -> None:
        """Record a result log entry."""
        status = record.status
        if status == TaskStatus.OK:
            self.ok += 1
        elif status == TaskStatus.CHANGED:
            self.changed += 1
        elif status == TaskStatus.FAILED:
            if record.ignored:
                self.ignored += 1
            else:
                self.failed += 1
        elif status == TaskStatus.SKIPPED:
            self.skipped += 1
        elif status == TaskStatus.UNREACHABLE:
            self.unreachable += 1

    def merge(self, other: 'HostStats') -> None:
        """Merge another HostStats into this one."""
        self.ok += other.ok
        self.changed += other.changed
        self.failed += other.failed
        self.skipped += other.skipped
        self.unreachable += other.unreachable
        self.ignored += other.ignored

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "ok": self.ok,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "unreachable": self.unreachable,
            "ignored": self.ignored,
        }

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or self.unreachable > 0


@dataclass
class PlayResult:
    """Result of executing a single play."""

    play_name: str
    hosts: List[str]
    records: List[ResultRecord] = field(default_factory=list)
    host_stats: Dict[str, HostStats] = field(default_factory=dict)
    host_outcomes: Dict[str, HostOutcome] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for host in self.hosts:
            self.host_stats.setdefault(host, HostStats(host))
            self.host_outcomes.setdefault(host, HostOutcome.OK)

    def add_result(self, result: TaskResult) -> ResultRecord:
        """Append a task result to the log."""
        record = ResultRecord.from_result(self.play_name, result)
        self.records.append(record)
        if record.host not in self.host_stats:
            self.host_stats[record.host] = HostStats(record.host)
        self.host_stats[record.host].record(record)
        return record

    def set_outcome(self, host: str, outcome: HostOutcome) -> None:
        self.host_outcomes[host] = outcome

    def to_dict(self) -> Dict[str, Any]:
        return {
            "play": self.play_name,
            "hosts": self.hosts,
            "tasks": [r.to_dict() for r in self.records],
            "stats": {h: s.to_dict() for h, s in self.host_stats.items()},
            "outcomes": {h: o.value for h, o in self.host_outcomes.items()},
        }

    @property
    def has_failures(self) -> bool:
        return any(
            o in (HostOutcome.FAILED, HostOutcome.UNREACHABLE)
            for o in self.host_outcomes.values()
        )

    @property
    def was_cancelled(self) -> bool:
        return HostOutcome.CANCELLED in self.host_outcomes.values()


@dataclass
class RunReport:
    """Result of one engine invocation over a list of plays."""

    play_results: List[PlayResult] = field(default_factory=list)
    playbook_path: Optional[str] = None

    def add_play_result(self, result: PlayResult) -> None:
        self.play_results.append(result)

    @property
    def records(self) -> List[ResultRecord]:
        """The ordered per-host, per-task result log for all plays."""
        return [r for play in self.play_results for r in play.records]

    def get_final_stats(self) -> Dict[str, HostStats]:
        """Aggregate stats for all hosts across all plays."""
        final_stats: Dict[str, HostStats] = {}
        for play_result in self.play_results:
            for host, stats in play_result.host_stats.items():
                if host not in final_stats:
                    final_stats[host] = HostStats(host)
                final_stats[host].merge(stats)
        return final_stats

    def host_outcomes(self) -> Dict[str, HostOutcome]:
        """Worst outcome of every host across all plays."""
        outcomes: Dict[str, HostOutcome] = {}
        for play_result in self.play_results:
            for host, outcome in play_result.host_outcomes.items():
                current = outcomes.get(host, HostOutcome.OK)
                if _OUTCOME_SEVERITY[outcome] >= _OUTCOME_SEVERITY[current]:
                    outcomes[host] = outcome
        return outcomes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playbook": self.playbook_path,
            "plays": [p.to_dict() for p in self.play_results],
            "stats": {h: s.to_dict() for h, s in self.get_final_stats().items()},
            "outcomes": {h: o.value for h, o in self.host_outcomes().items()},
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)

    @property
    def success(self) -> bool:
        return not any(p.has_failures or p.was_cancelled for p in self.play_results)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 2
