# mediaboot/tasks.py
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from itertools import groupby
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from .errors import DependencyCycleError, DependencyUnsatisfiedError, TaskGraphError

log = logging.getLogger("startup")

TaskAction = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class StartupTask:
    name: str
    action: TaskAction
    can_defer: bool = False
    phase: int = 1
    depends_on: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # accept lists for convenience, store an immutable tuple
        object.__setattr__(self, "depends_on", tuple(self.depends_on or ()))


async def run_action(action: TaskAction) -> Any:
    result = action()
    if inspect.isawaitable(result):
        result = await result
    return result


def _find_cycle(graph: Dict[str, tuple[str, ...]]) -> Optional[List[str]]:
    WHITE, GREY, BLACK = 0, 1, 2
    color = {name: WHITE for name in graph}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GREY
        stack.append(node)
        for dep in graph.get(node, ()):
            if dep not in graph:
                continue  # pre-completed name, no outgoing edges
            if color[dep] == GREY:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for name in graph:
        if color[name] == WHITE:
            found = visit(name)
            if found:
                return found
    return None


class TaskGraphRunner:
    """
    Runs startup tasks phase by phase (ascending), in declaration order within a phase.
    Tasks whose dependencies did not complete, or whose action failed, are deferred when
    they allow it; otherwise boot stops.
    """

    def __init__(self, tasks: Iterable[StartupTask], already_completed: Iterable[str] = ()):
        self.tasks: List[StartupTask] = list(tasks)
        self.completed_tasks: Set[str] = set(already_completed)
        self.deferred_tasks: List[StartupTask] = []
        self._validate()

    def _validate(self) -> None:
        names: Set[str] = set()
        for t in self.tasks:
            if t.name in names:
                raise TaskGraphError(f"Duplicate startup task name: {t.name}")
            names.add(t.name)

        known = names | self.completed_tasks
        for t in self.tasks:
            missing = [d for d in t.depends_on if d not in known]
            if missing:
                raise TaskGraphError(
                    f"Startup task '{t.name}' depends on unknown task(s): {', '.join(missing)}"
                )

        cycle = _find_cycle({t.name: t.depends_on for t in self.tasks})
        if cycle:
            raise DependencyCycleError(cycle)

    def _unmet(self, task: StartupTask) -> List[str]:
        return [d for d in task.depends_on if d not in self.completed_tasks]

    async def run_all(self) -> None:
        ordered = sorted(self.tasks, key=lambda t: t.phase)  # stable: keeps declaration order
        for phase, group in groupby(ordered, key=lambda t: t.phase):
            for task in group:
                await self._run_one(task, phase)
        if self.deferred_tasks:
            log.warning("Startup finished with deferred tasks: %s",
                        ", ".join(t.name for t in self.deferred_tasks))

    async def _run_one(self, task: StartupTask, phase: int) -> None:
        if task.name in self.completed_tasks:
            return

        missing = self._unmet(task)
        if missing:
            if task.can_defer:
                log.warning("Deferring '%s': waiting on %s", task.name, ", ".join(missing))
                self.deferred_tasks.append(task)
                return
            log.error("Required startup task '%s' cannot run: unmet %s", task.name, ", ".join(missing))
            raise DependencyUnsatisfiedError(task.name, missing)

        log.debug("Running startup task '%s' (phase %d)", task.name, phase)
        try:
            await run_action(task.action)
        except Exception as e:
            if task.can_defer:
                log.warning("Startup task '%s' failed, deferring: %s", task.name, e)
                self.deferred_tasks.append(task)
                return
            log.error("Required startup task '%s' failed: %s", task.name, e)
            raise
        self.completed_tasks.add(task.name)
