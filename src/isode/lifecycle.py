"""Sandbox lifecycle — per-key state and the queue of requests awaiting it.

A :class:`Sandbox` moves through::

    ABSENT -> PROVISIONING -> READY -> TERMINATED
                   |    \\
                   |     -> TERMINATED   (stopped while provisioning)
                   -> ABSENT             (provisioning failed)

Requests that arrive while the sandbox is provisioning are queued as
:class:`PendingRequest` entries and released in arrival order, exactly
once, either to the ready sandbox or to an error.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field

from isode.errors import LifecycleError, TerminationRaceError
from isode.models import Endpoint, SandboxState

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[SandboxState, frozenset[SandboxState]] = {
    SandboxState.ABSENT: frozenset({SandboxState.PROVISIONING}),
    SandboxState.PROVISIONING: frozenset(
        {SandboxState.READY, SandboxState.ABSENT, SandboxState.TERMINATED},
    ),
    SandboxState.READY: frozenset({SandboxState.TERMINATED}),
    SandboxState.TERMINATED: frozenset(),
}


@dataclass
class PendingRequest:
    """A request queued until its sandbox is ready."""

    code: str
    future: asyncio.Future[Sandbox] = field(repr=False)

    def release(self, sandbox: Sandbox) -> bool:
        """Hand the ready sandbox to the waiting caller."""
        if self.future.done():
            return False
        self.future.set_result(sandbox)
        return True

    def fail(self, error: BaseException) -> bool:
        if self.future.done():
            return False
        self.future.set_exception(error)
        return True


class Sandbox:
    """One isolated execution environment bound to an isolate key."""

    def __init__(self, key: str) -> None:
        self._key = key
        self._state = SandboxState.ABSENT
        self._pending: deque[PendingRequest] = deque()
        self._tasks: set[asyncio.Task[None]] = set()
        self.handle: str | None = None
        self.endpoint: Endpoint | None = None
        self.provisioner: asyncio.Task[None] | None = None
        self.stop_requested = False
        self.stop_sent = False

    def __repr__(self) -> str:
        return f"Sandbox(key={self._key!r}, state={self._state.value}, handle={self.handle!r})"

    @property
    def key(self) -> str:
        return self._key

    @property
    def state(self) -> SandboxState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _transition(self, target: SandboxState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise LifecycleError(self._key, self._state.value, target.value)
        logger.debug("Sandbox %r: %s -> %s", self._key, self._state.value, target.value)
        self._state = target

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def begin_provisioning(self) -> None:
        self._transition(SandboxState.PROVISIONING)

    def enqueue(self, code: str) -> asyncio.Future[Sandbox]:
        """Queue a request; the returned future resolves to this sandbox once ready."""
        if self._state is not SandboxState.PROVISIONING:
            raise LifecycleError(self._key, self._state.value, "queued")
        future: asyncio.Future[Sandbox] = asyncio.get_running_loop().create_future()
        self._pending.append(PendingRequest(code=code, future=future))
        return future

    def mark_ready(self, endpoint: Endpoint) -> None:
        self._transition(SandboxState.READY)
        self.endpoint = endpoint

    def release_pending(self) -> int:
        """Release every queued request, oldest first. Returns how many were handed over."""
        released = 0
        while self._pending:
            if self._pending.popleft().release(self):
                released += 1
        return released

    def abort(self, error: BaseException) -> None:
        """Provisioning failed: fail every queued request and revert to ABSENT."""
        self._transition(SandboxState.ABSENT)
        self._fail_pending(error)

    def mark_terminated(self) -> None:
        """The sandbox exited. Requests still queued fail with :class:`TerminationRaceError`."""
        self._transition(SandboxState.TERMINATED)
        if self._pending:
            self._fail_pending(TerminationRaceError(self._key))

    def _fail_pending(self, error: BaseException) -> None:
        while self._pending:
            self._pending.popleft().fail(error)

    # ------------------------------------------------------------------
    # Background tasks (termination watcher, console forwarder)
    # ------------------------------------------------------------------

    def add_task(self, task: asyncio.Task[None]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel_tasks(self) -> None:
        """Cancel background tasks, except the one calling this."""
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
