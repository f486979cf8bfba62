import importlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional

from .models import ALWAYS, ONCE
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskResult:
    ok: bool
    message: Optional[str] = None
    reschedule_at: Optional[datetime] = None

    @classmethod
    def success(cls, reschedule_at: Optional[datetime] = None) -> "TaskResult":
        return cls(ok=True, reschedule_at=reschedule_at)

    @classmethod
    def failure(cls, message: str) -> "TaskResult":
        return cls(ok=False, message=message or "task reported failure")


def coerce_result(value: Any) -> TaskResult:
    if isinstance(value, TaskResult):
        return value
    if value is None or value is True:
        return TaskResult.success()
    if value is False:
        return TaskResult.failure("task returned False")
    raise TypeError(f"execute() must return a TaskResult, bool or None, got {type(value).__name__}")


class Task:
    """Base class for units of work.

    Subclasses set `task_type` and implement execute(). Recurring tasks
    return ALWAYS from occurrence() and implement period(), which gets a
    Scheduler seeded at the finished job's scheduled_at.
    """

    task_type: str = ""

    def identify(self) -> str:
        return self.task_type or type(self).__name__

    def occurrence(self) -> str:
        return ONCE

    def period(self, scheduler: Scheduler) -> datetime:
        raise NotImplementedError(f"{self.identify()} is recurring but defines no period()")

    def execute(self, payload: Any) -> TaskResult:
        raise NotImplementedError


class FunctionTask(Task):
    """Adapts a plain function into a Task."""

    def __init__(
        self,
        task_type: str,
        func: Callable[[Any], Any],
        every: Optional[Callable[[Scheduler], Scheduler]] = None,
    ):
        self.task_type = task_type
        self.func = func
        self.every = every

    def occurrence(self) -> str:
        return ALWAYS if self.every is not None else ONCE

    def period(self, scheduler: Scheduler) -> datetime:
        if self.every is None:
            return super().period(scheduler)
        return self.every(scheduler).resolve()

    def execute(self, payload: Any) -> TaskResult:
        return coerce_result(self.func(payload))


class Resolution(NamedTuple):
    found: bool
    task: Optional[Task] = None
    error: Optional[str] = None


class TaskRegistry:
    def __init__(self):
        self._factories: Dict[str, Callable[[], Task]] = {}

    def register(self, task_type, factory: Optional[Callable[[], Task]] = None):
        """Register a factory for `task_type`.

        Also usable as a class decorator: `@registry.register` on a Task
        subclass registers it under its `task_type`.
        """
        if isinstance(task_type, type) and issubclass(task_type, Task):
            cls = task_type
            self.register(cls.task_type or cls.__name__, cls)
            return cls
        if factory is None:
            def decorator(obj):
                self.register(task_type, obj)
                return obj
            return decorator
        self._check_new(task_type)
        self._factories[task_type] = factory
        return factory

    def task(self, name: str, every: Optional[Callable[[Scheduler], Scheduler]] = None):
        """Decorator registering a plain function as a task."""
        def decorator(func):
            self.register(name, lambda: FunctionTask(name, func, every=every))
            return func
        return decorator

    def _check_new(self, task_type: str):
        if not task_type or not str(task_type).strip():
            raise ValueError("task_type cannot be empty")
        if task_type in self._factories:
            raise ValueError(f"Task type '{task_type}' is already registered")

    def resolve(self, task_type: str) -> Resolution:
        factory = self._factories.get(task_type)
        if factory is None:
            return Resolution(False, error=f"No handler registered for task type '{task_type}'")
        try:
            return Resolution(True, task=factory())
        except Exception as e:
            logger.exception("Handler factory for %s raised", task_type)
            return Resolution(False, error=f"Handler for '{task_type}' could not be built: {e}")

    def names(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, task_type: str) -> bool:
        return task_type in self._factories

    def __len__(self):
        return len(self._factories)


registry = TaskRegistry()


def discover(modules: Iterable[str]) -> List[str]:
    """Import producer modules so their task and schedule registrations run."""
    loaded = []
    for name in modules:
        name = name.strip()
        if not name:
            continue
        importlib.import_module(name)
        loaded.append(name)
        logger.debug("Loaded task module %s", name)
    return loaded
