import contextvars
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

Callback = Callable[[], object]


@dataclass
class DrainReport:
    ran: int = 0
    errors: List[Tuple[Optional[str], str]] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)


class DeferredBuffer:
    def __init__(self):
        self._entries: List[Tuple[Optional[str], Callback]] = []

    def push(self, scope_or_callback, callback: Optional[Callback] = None) -> "DeferredBuffer":
        """push(callback) or push(scope, callback)."""
        if callback is None:
            scope, callback = None, scope_or_callback
        else:
            scope = scope_or_callback
            if not isinstance(scope, str) or not scope:
                raise ValueError("scope must be a non-empty string")
        if not callable(callback):
            raise TypeError("deferred callback must be callable")
        self._entries.append((scope, callback))
        return self

    def scopes(self) -> List[str]:
        seen = []
        for scope, _ in self._entries:
            if scope is not None and scope not in seen:
                seen.append(scope)
        return seen

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)

    def drain_all(self) -> DrainReport:
        """Run every callback in insertion order, then leave the buffer empty.

        Callbacks pushed while draining run in the same drain.
        """
        report = DrainReport()
        while self._entries:
            batch, self._entries = self._entries, []
            for scope, cb in batch:
                self._run(scope, cb, report)
        return report

    def drain(self, scope: str) -> DrainReport:
        """Run and remove only the callbacks registered under `scope`."""
        report = DrainReport()
        while True:
            batch = [e for e in self._entries if e[0] == scope]
            if not batch:
                return report
            self._entries = [e for e in self._entries if e[0] != scope]
            for s, cb in batch:
                self._run(s, cb, report)

    def _run(self, scope: Optional[str], cb: Callback, report: DrainReport):
        try:
            cb()
            report.ran += 1
        except Exception as e:
            name = getattr(cb, "__name__", repr(cb))
            logger.error("Deferred callback %s (scope=%s) failed: %s", name, scope, e, exc_info=True)
            report.errors.append((scope, f"{name}: {e}"))


_current: contextvars.ContextVar = contextvars.ContextVar("taskctl_deferred_buffer")


def current_buffer() -> DeferredBuffer:
    buf = _current.get(None)
    if buf is None:
        buf = DeferredBuffer()
        _current.set(buf)
    return buf


def enqueue_deferred(callback: Callback, scope: Optional[str] = None) -> DeferredBuffer:
    buf = current_buffer()
    if scope is None:
        return buf.push(callback)
    return buf.push(scope, callback)


@contextmanager
def request_scope() -> Iterator[DeferredBuffer]:
    """Give the enclosed request/command its own buffer and drain it on exit."""
    buf = DeferredBuffer()
    token = _current.set(buf)
    try:
        yield buf
    finally:
        try:
            buf.drain_all()
        finally:
            _current.reset(token)
