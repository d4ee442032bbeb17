"""
Converge Playbook Runner

The Engine prepares and runs plays against an inventory and produces a
RunReport. PlaybookRunner is the command-line front end: it loads inventory
and playbooks, prints progress, and maps outcomes to exit codes.
"""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from converge.config import EngineConfig, get_config
from converge.connections.base import ConnectionFactory, ConnectionPool
from converge.engine.delegation import DelegationResolver
from converge.engine.errors import (
    ConvergeError,
    ExitCode,
    ParseError,
    UnsupportedFeatureError,
)
from converge.engine.executor import TaskExecutor
from converge.engine.inventory import Host, Inventory, InventoryResolver, load_inventory
from converge.engine.plan import Plan, PlanBuilder
from converge.engine.playbook import Play, PlaybookParser
from converge.engine.results import (
    HostOutcome,
    HostStats,
    PlayResult,
    RunReport,
    TaskResult,
    TaskStatus,
)
from converge.engine.scheduler import PlayRunner, ResultCallback
from converge.engine.variables import VariableStore
from converge.logging import log_performance
from converge.modules.base import ModuleRegistry


logger = logging.getLogger(__name__)

PreparedPlay = Tuple[Play, Plan, List[Host]]


class Engine:
    """
    Runs plays against one inventory.

    All plays are prepared (host patterns resolved, plans built) before the
    first one executes, so configuration errors never leave a run half
    applied. Hosts that fail or become unreachable in one play are left out
    of the plays after it.
    """

    def __init__(
        self,
        inventory: Inventory,
        registry: Optional[ModuleRegistry] = None,
        config: Optional[EngineConfig] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        self.inventory = inventory
        self.resolver = InventoryResolver(inventory)
        self.registry = registry or ModuleRegistry.default()
        self.config = config or get_config()
        self.connection_factory = connection_factory
        self.delegation = DelegationResolver(self.resolver)
        self._current: Optional[PlayRunner] = None
        self._cancelled = False

    def prepare(
        self,
        plays: Sequence[Play],
        tags: Optional[Iterable[str]] = None,
        skip_tags: Optional[Iterable[str]] = None,
        limit: Optional[str] = None,
    ) -> List[PreparedPlay]:
        """
        Resolve hosts and build plans for every play.

        Raises:
            UnknownPattern, UnknownModule, UnknownHandler: configuration errors
        """
        tags = self.config.tags if tags is None else tags
        skip_tags = self.config.skip_tags if skip_tags is None else skip_tags
        limit = self.config.limit if limit is None else limit

        allowed = set(self.resolver.resolve(limit)) if limit else None
        builder = PlanBuilder(self.registry, self.delegation)
        prepared = []
        for play in plays:
            hosts = self.resolver.resolve(play.hosts)
            if allowed is not None:
                hosts = [h for h in hosts if h in allowed]
            prepared.append((play, builder.build(play, tags, skip_tags), hosts))
        return prepared

    async def run_playbook(
        self,
        plays: Sequence[Play],
        tags: Optional[Iterable[str]] = None,
        skip_tags: Optional[Iterable[str]] = None,
        limit: Optional[str] = None,
        callback: Optional[ResultCallback] = None,
        playbook_path: Optional[str] = None,
    ) -> RunReport:
        """Prepare and run ``plays`` in order."""
        prepared = self.prepare(plays, tags, skip_tags, limit)
        self._cancelled = False

        variables = VariableStore(self.resolver, self.config.defaults)
        variables.clear_facts()
        pool = ConnectionPool(self.connection_factory)
        executor = TaskExecutor(
            variables,
            self.delegation,
            pool,
            semaphore=asyncio.Semaphore(self.config.forks),
        )

        report = RunReport(playbook_path=playbook_path)
        removed: set = set()
        try:
            for play, plan, hosts in prepared:
                hosts = [h for h in hosts if h.name not in removed]
                if self._cancelled:
                    play_result = PlayResult(play.name, [h.name for h in hosts])
                    for host in hosts:
                        play_result.set_outcome(host.name, HostOutcome.CANCELLED)
                    report.add_play_result(play_result)
                    continue

                variables.reset(play.vars)
                runner = PlayRunner(
                    plan,
                    hosts,
                    executor,
                    variables,
                    timeout=self.config.timeout,
                    force_handlers=play.force_handlers or self.config.force_handlers,
                    callback=callback,
                )
                self._current = runner
                with log_performance(logger, f"Play '{play.name}'", hosts=len(hosts)):
                    play_result = await runner.run()
                self._current = None
                report.add_play_result(play_result)

                if runner.cancelled:
                    self._cancelled = True
                for host, outcome in play_result.host_outcomes.items():
                    if outcome in (HostOutcome.FAILED, HostOutcome.UNREACHABLE):
                        removed.add(host)
        finally:
            await pool.close_all()
        return report

    def cancel(self) -> None:
        """Cancel the running play and skip the remaining ones."""
        self._cancelled = True
        if self._current is not None:
            self._current.cancel()


def run_playbook(
    plays: Sequence[Play],
    inventory: Inventory,
    tags: Optional[Iterable[str]] = None,
    skip_tags: Optional[Iterable[str]] = None,
    limit: Optional[str] = None,
    registry: Optional[ModuleRegistry] = None,
    config: Optional[EngineConfig] = None,
    connection_factory: Optional[ConnectionFactory] = None,
) -> RunReport:
    """Synchronous convenience wrapper around Engine.run_playbook."""
    engine = Engine(inventory, registry, config, connection_factory)
    return asyncio.run(engine.run_playbook(plays, tags, skip_tags, limit))


class PlaybookRunner:
    """
    High-level playbook runner.

    Coordinates:
    - Inventory loading
    - Playbook parsing
    - Engine execution
    - Output formatting
    """

    COLORS = {
        'ok': '\033[32m',       # Green
        'changed': '\033[33m',  # Yellow
        'failed': '\033[31m',   # Red
        'unreachable': '\033[31m',
        'skipped': '\033[36m',  # Cyan
    }
    RESET = '\033[0m'

    def __init__(
        self,
        inventory_source: str,
        playbook_paths: List[str],
        config: Optional[EngineConfig] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        self.inventory_source = inventory_source
        self.playbook_paths = playbook_paths
        self.config = config or get_config()
        self.connection_factory = connection_factory
        self.json_output = self.config.json_output
        self.verbosity = self.config.verbosity
        self._last_banner: Optional[Tuple[bool, str]] = None

    def run(self) -> int:
        """
        Run playbooks synchronously.

        Returns:
            Exit code (0=success, 2=host failures, 3=parse error, 4=unsupported)
        """
        try:
            report = asyncio.run(self.run_async())
            if self.json_output:
                print(report.to_json())
            return report.exit_code
        except UnsupportedFeatureError as e:
            self._report_error("unsupported_feature", e)
            return ExitCode.UNSUPPORTED_FEATURE
        except ParseError as e:
            self._report_error("parse_error", e)
            return ExitCode.PARSE_ERROR
        except ConvergeError as e:
            error_type = "configuration_error" if e.exit_code == ExitCode.PARSE_ERROR else "error"
            self._report_error(error_type, e)
            return int(e.exit_code)
        except KeyboardInterrupt:
            if self.json_output:
                self._print_json_error("interrupted", "Execution interrupted", ExitCode.KEYBOARD_INTERRUPT)
            else:
                self._print_error("\nInterrupted")
            return ExitCode.KEYBOARD_INTERRUPT

    async def run_async(self) -> RunReport:
        """Load everything, then run all plays of all playbooks as one run."""
        self._print_header("Loading inventory...")
        inventory = load_inventory(self.inventory_source)

        plays: List[Play] = []
        for playbook_path in self.playbook_paths:
            plays.extend(PlaybookParser(playbook_path).parse())

        engine = Engine(inventory, config=self.config, connection_factory=self.connection_factory)
        for play in plays:
            logger.info("Play '%s' targets '%s'", play.name, play.hosts)

        report = await engine.run_playbook(
            plays,
            callback=self._on_result,
            playbook_path=self.playbook_paths[0] if self.playbook_paths else None,
        )
        self._print_recap(report.get_final_stats())
        return report

    def _report_error(self, error_type: str, error: ConvergeError) -> None:
        if self.json_output:
            self._print_json_error(error_type, str(error), int(error.exit_code))
        else:
            self._print_error(f"ERROR: {error}")

    def _print_json_error(self, error_type: str, message: str, exit_code: int) -> None:
        """Print an error in JSON format."""
        error_obj: Dict[str, Any] = {
            "error": True,
            "error_type": error_type,
            "message": message,
            "exit_code": int(exit_code),
        }
        print(json.dumps(error_obj, indent=2))

    # Output methods (suppressed when json_output is True)

    def _on_result(self, result: TaskResult) -> None:
        banner = (result.is_handler, result.task_name)
        if banner != self._last_banner:
            self._last_banner = banner
            kind = "RUNNING HANDLER" if result.is_handler else "TASK"
            self._print_header(f"\n{kind} [{result.task_name}] " + "*" * 50)
        self._print_host_result(result)

    def _print_header(self, msg: str) -> None:
        if not self.json_output:
            print(msg)

    def _print_host_result(self, result: TaskResult) -> None:
        if self.json_output:
            return
        status = result.status.value
        if result.status == TaskStatus.FAILED and result.ignored:
            status = "failed (ignored)"
        color = self.COLORS.get(result.status.value, '')
        target = result.host
        if result.delegated_to:
            target += f" -> {result.delegated_to}"

        msg = result.msg
        show_msg = msg and (
            result.failed or result.unreachable or self.verbosity > 0 or "msg" in result.data
        )
        if show_msg:
            print(f"{color}{status}: [{target}]{self.RESET} => {msg}")
        else:
            print(f"{color}{status}: [{target}]{self.RESET}")

        if self.verbosity >= 2 and result.stdout:
            print(f"  stdout: {result.stdout[:200]}")
        if self.verbosity >= 1 and result.stderr:
            print(f"  stderr: {result.stderr[:200]}")

    def _print_error(self, msg: str) -> None:
        """Errors go to stderr."""
        print(f"\033[31m{msg}\033[0m", file=sys.stderr)

    def _print_recap(self, host_stats: Dict[str, HostStats]) -> None:
        if self.json_output:
            return

        print("\nPLAY RECAP " + "*" * 60)
        for host, stats in sorted(host_stats.items()):
            status_parts = []
            if stats.ok:
                status_parts.append(f"\033[32mok={stats.ok}\033[0m")
            if stats.changed:
                status_parts.append(f"\033[33mchanged={stats.changed}\033[0m")
            if stats.failed:
                status_parts.append(f"\033[31mfailed={stats.failed}\033[0m")
            if stats.skipped:
                status_parts.append(f"\033[36mskipped={stats.skipped}\033[0m")
            if stats.unreachable:
                status_parts.append(f"\033[31munreachable={stats.unreachable}\033[0m")
            if stats.ignored:
                status_parts.append(f"ignored={stats.ignored}")

            status_str = "  ".join(status_parts) if status_parts else "ok=0"
            print(f"{host:40} : {status_str}")
