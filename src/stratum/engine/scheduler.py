"""
Stratum Scheduler

Async execution driver with fork-style parallelism using asyncio. For
each host and task it asks the ContextResolver for the effective
variables, renders the task through the TemplateEngine and hands the
rendered arguments to an injected module dispatcher.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Union

from stratum.config import StratumConfig, get_config
from stratum.engine.context import PlayContext
from stratum.engine.errors import CollectionError, StratumError, UnknownFilterError
from stratum.engine.facts import Collector
from stratum.engine.playbook import Block, Play, Task, TaskItem, iter_tasks
from stratum.engine.resolver import ContextResolver
from stratum.engine.results import PlaybookResult, PlayResult, TaskResult, TaskStatus
from stratum.engine.templating import TemplateEngine, get_template_engine, is_template
from stratum.inventory.host import Host

logger = logging.getLogger(__name__)

Dispatcher = Callable[[str, Dict[str, Any], Host], Awaitable[Union[Dict[str, Any], TaskResult]]]


@dataclass
class HostState:
    """Runtime state of a single host during one play."""

    host: Host
    context: PlayContext
    failed: bool = False
    notified: List[str] = field(default_factory=list)  # Handlers to run, in notify order
    last_failure: Optional[TaskResult] = None

    def notify(self, names: List[str]) -> None:
        for name in names:
            if name not in self.notified:
                self.notified.append(name)


class Scheduler:
    """
    Async scheduler for playbook execution.

    Uses asyncio with a semaphore to limit concurrency (like Ansible's forks).
    Executes tasks in "linear" strategy: each top-level task or block runs
    across all hosts in parallel (up to the forks limit) before the next
    one starts. A failure on one host marks only that host failed.
    """

    def __init__(
        self,
        resolver: ContextResolver,
        dispatcher: Dispatcher,
        collector: Optional[Collector] = None,
        forks: Optional[int] = None,
        engine: Optional[TemplateEngine] = None,
        config: Optional[StratumConfig] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            resolver: Variable resolution for the inventory being run
            dispatcher: Async callable running a module: (module, args, host) -> result
            collector: Async fact collector: (host, filter) -> facts
            forks: Maximum number of parallel host executions
            engine: Template engine (defaults to the shared one)
            config: Settings (defaults to the global configuration)
        """
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.collector = collector
        self.config = config or get_config()
        self.forks = max(1, forks if forks is not None else self.config.forks)
        self.engine = engine or get_template_engine()
        self._semaphore: Optional[asyncio.Semaphore] = None

    # ------------------------------------------------------------------
    # Playbook / play

    async def run_playbook(self, plays: List[Play], playbook_path: str = "") -> PlaybookResult:
        """
        Run plays in order.

        Raises:
            TemplateSyntaxError: A play contains a malformed template;
                nothing runs for that play or any later one.
        """
        for play in plays:
            self.validate_play(play)

        result = PlaybookResult(playbook_path=playbook_path)
        for play in plays:
            play_result = await self.run_play(play, validate=False)
            result.add_play_result(play_result)

            # If all hosts failed, stop
            if play_result.hosts and len(play_result.failed_hosts) == len(play_result.hosts):
                logger.warning("All hosts failed in play %r, stopping", play.name)
                break
        return result

    async def run_play(self, play: Play, validate: bool = True) -> PlayResult:
        """Run a single play against the hosts its pattern selects."""
        if validate:
            self.validate_play(play)

        host_names = self.resolver.graph.match(play.hosts)
        play_result = PlayResult(play_name=play.name, hosts=host_names)
        if not host_names:
            logger.warning("Play %r matched no hosts (pattern %r)", play.name, play.hosts)
            return play_result

        self._semaphore = asyncio.Semaphore(self.forks)
        states = {
            name: HostState(
                host=self.resolver.graph.get_host(name),
                context=PlayContext(play_name=play.name, play_vars=dict(play.vars), play_hosts=list(host_names)),
            )
            for name in host_names
        }

        gather = play.gather_facts if play.gather_facts is not None else self.config.gather_facts
        if gather:
            await self._gather_facts(list(states.values()), play.fact_filter or self.config.fact_filter)

        for item in play.tasks:
            await self._run_across_hosts(item, states, play_result)

        await self._run_handlers(play, states, play_result)

        play_result.failed_hosts = [name for name, state in states.items() if state.failed]
        return play_result

    def validate_play(self, play: Play) -> None:
        """
        Parse every template of a play up front.

        Raises:
            TemplateSyntaxError: On the first malformed template
        """
        for source in _play_templates(play):
            try:
                self.engine.parse(source)
            except UnknownFilterError:
                # Reported per host when the template renders
                continue

    # ------------------------------------------------------------------
    # Facts

    async def _gather_facts(self, states: List[HostState], fact_filter: Any) -> None:
        if self.collector is None:
            logger.debug("No fact collector configured, skipping fact gathering")
            return

        async def gather_one(state: HostState) -> None:
            async with self._semaphore:
                try:
                    await self.resolver.facts.gather(state.host, self.collector, fact_filter)
                except CollectionError as e:
                    logger.warning("%s", e)

        await asyncio.gather(*[gather_one(state) for state in states])

    # ------------------------------------------------------------------
    # Task tree

    async def _run_across_hosts(
        self,
        item: TaskItem,
        states: Dict[str, HostState],
        play_result: PlayResult,
    ) -> None:
        active = [state for state in states.values() if not state.failed]
        if not active:
            return

        async def run_on_host(state: HostState) -> bool:
            async with self._semaphore:
                return await self._run_item(item, state, play_result)

        outcomes = await asyncio.gather(*[run_on_host(state) for state in active], return_exceptions=True)

        for state, outcome in zip(active, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("Host %s failed: %s", state.host.name, outcome)
                play_result.add_result(TaskResult(
                    host=state.host.name,
                    task_name=getattr(item, 'name', ''),
                    status=TaskStatus.FAILED,
                    msg=str(outcome),
                ))
                state.failed = True
            elif not outcome:
                state.failed = True

    async def _run_items(self, items: List[TaskItem], state: HostState, play_result: PlayResult) -> bool:
        """Run items in order for one host; stop at the first failure."""
        for item in items:
            if not await self._run_item(item, state, play_result):
                return False
        return True

    async def _run_item(self, item: TaskItem, state: HostState, play_result: PlayResult) -> bool:
        if isinstance(item, Block):
            return await self._run_block(item, state, play_result)
        return await self._run_task(item, state, play_result)

    async def _run_block(self, block: Block, state: HostState, play_result: PlayResult) -> bool:
        """
        Run a block for one host.

        Block vars apply to every task inside, nested blocks included.
        A failure in ``block`` runs ``rescue``; a successful rescue clears
        the failure. ``always`` runs either way.
        """
        state.context.push_block(block.vars)
        try:
            if block.when is not None:
                try:
                    variables = self.resolver.resolve(state.host, state.context)
                    if not self.engine.evaluate_condition(block.when, variables):
                        logger.debug("Skipping block %r on %s", block.name, state.host.name)
                        return True
                except StratumError as e:
                    state.last_failure = self._failure(state, block.name, e)
                    play_result.add_result(state.last_failure)
                    return False

            ok = await self._run_items(block.block, state, play_result)
            if not ok and block.rescue:
                failure = state.last_failure
                ok = await self._run_items(block.rescue, state, play_result)
                if ok and failure is not None:
                    play_result.mark_rescued(failure)

            if block.always:
                always_ok = await self._run_items(block.always, state, play_result)
                ok = ok and always_ok
            return ok
        finally:
            state.context.pop_block()

    async def _run_task(self, task: Task, state: HostState, play_result: PlayResult) -> bool:
        """Run one task for one host. Returns False if the host failed."""
        host = state.host
        ctx = state.context.for_task(
            task.name,
            task.vars,
            role_vars=task.role_vars,
            role_defaults=task.role_defaults,
        )

        try:
            if task.loop is not None:
                result = await self._run_loop(task, state, ctx)
            else:
                variables = self.resolver.resolve(host, ctx)
                if not self.engine.evaluate_condition(task.when, variables):
                    result = TaskResult(host=host.name, task_name=task.name, status=TaskStatus.SKIPPED,
                                        msg="Conditional result was False")
                else:
                    result = await self._dispatch(task, host, self.engine.render_recursive(task.args, variables))
        except StratumError as e:
            result = self._failure(state, task.name, e)

        if result.failed and task.ignore_errors:
            result.ignored = True

        if task.register:
            self.resolver.register(host, task.register, result.to_register())

        if result.changed and task.notify:
            state.notify(task.notify)

        play_result.add_result(result)

        if result.failed and not result.ignored:
            logger.warning("Task %r failed on %s: %s", task.name, host.name, result.msg)
            state.last_failure = result
            return False
        return True

    async def _run_loop(self, task: Task, state: HostState, ctx: PlayContext) -> TaskResult:
        """Run a task once per loop item; the combined result fails on the first failed item."""
        host = state.host
        items = self.engine.render_recursive(task.loop, self.resolver.resolve(host, ctx))
        if isinstance(items, (str, dict)) or not hasattr(items, '__iter__'):
            items = [items]

        loop_results: List[TaskResult] = []
        for item in items:
            item_ctx = ctx.with_task_vars({task.loop_var: item})
            variables = self.resolver.resolve(host, item_ctx)
            if not self.engine.evaluate_condition(task.when, variables):
                loop_results.append(TaskResult(host=host.name, task_name=task.name, status=TaskStatus.SKIPPED))
                continue

            result = await self._dispatch(task, host, self.engine.render_recursive(task.args, variables))
            result.results.setdefault(task.loop_var, item)
            loop_results.append(result)
            if result.failed and not task.ignore_errors:
                break

        changed = any(r.changed for r in loop_results)
        if any(r.failed for r in loop_results):
            status = TaskStatus.FAILED
        elif loop_results and all(r.status == TaskStatus.SKIPPED for r in loop_results):
            status = TaskStatus.SKIPPED
        else:
            status = TaskStatus.CHANGED if changed else TaskStatus.OK

        failed = [r for r in loop_results if r.failed]
        return TaskResult(
            host=host.name,
            task_name=task.name,
            status=status,
            changed=changed,
            loop_results=loop_results,
            msg=failed[0].msg if failed else f"Loop completed with {len(loop_results)} iterations",
        )

    async def _dispatch(self, task: Task, host: Host, args: Dict[str, Any]) -> TaskResult:
        """Hand rendered arguments to the module dispatcher."""
        try:
            raw = await self.dispatcher(task.module, args, host)
        except StratumError as e:
            return TaskResult(host=host.name, task_name=task.name, status=TaskStatus.FAILED, msg=e.message)
        except Exception as e:
            logger.debug("Dispatcher raised for %s on %s", task.module, host.name, exc_info=True)
            return TaskResult(host=host.name, task_name=task.name, status=TaskStatus.FAILED,
                              msg=f"{type(e).__name__}: {e}")
        return TaskResult.from_module(host.name, task.name, raw)

    @staticmethod
    def _failure(state: HostState, task_name: str, error: StratumError) -> TaskResult:
        return TaskResult(
            host=state.host.name,
            task_name=task_name,
            status=TaskStatus.FAILED,
            msg=str(error),
            results={'exception': type(error).__name__},
        )

    # ------------------------------------------------------------------
    # Handlers

    async def _run_handlers(self, play: Play, states: Dict[str, HostState], play_result: PlayResult) -> None:
        """Run notified handlers at the end of the play, in handler definition order."""
        for handler in play.handlers:
            triggers = {handler.name, *handler.listen}
            targets = [
                state for state in states.values()
                if not state.failed and triggers.intersection(state.notified)
            ]
            if not targets:
                continue

            logger.debug("Running handler %r on %d host(s)", handler.name, len(targets))

            async def run_on_host(state: HostState) -> bool:
                async with self._semaphore:
                    return await self._run_task(handler, state, play_result)

            outcomes = await asyncio.gather(*[run_on_host(state) for state in targets])
            for state, ok in zip(targets, outcomes):
                if not ok:
                    state.failed = True


def _play_templates(play: Play) -> Iterator[str]:
    """Every template string a play can render, conditions wrapped in braces."""

    def conditions(when: Any) -> Iterator[str]:
        for condition in (when if isinstance(when, list) else [when]):
            if isinstance(condition, str) and condition.strip():
                yield condition if is_template(condition) else "{{ " + condition + " }}"

    def strings(data: Any) -> Iterator[str]:
        if isinstance(data, str):
            if is_template(data):
                yield data
        elif isinstance(data, dict):
            for key, value in data.items():
                yield from strings(key)
                yield from strings(value)
        elif isinstance(data, (list, tuple)):
            for value in data:
                yield from strings(value)

    def blocks(items: List[TaskItem]) -> Iterator[Block]:
        for item in items:
            if isinstance(item, Block):
                yield item
                yield from blocks(item.block + item.rescue + item.always)

    yield from strings(play.vars)
    for block in blocks(play.tasks):
        yield from strings(block.vars)
        yield from conditions(block.when)
    for task in list(iter_tasks(play.tasks)) + play.handlers:
        yield from strings(task.vars)
        yield from strings(task.role_vars)
        yield from strings(task.role_defaults)
        yield from strings(task.args)
        yield from strings(task.loop)
        yield from conditions(task.when)
