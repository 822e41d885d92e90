"""SandboxPool — one sandbox per isolate key, created on first use.

The pool decides, for every ``run()``, whether to create a sandbox, queue
the request behind a creation already in flight, or dispatch straight to
a ready sandbox.  All bookkeeping happens on the event loop thread and
never across an ``await``, which makes "absent -> provisioning" together
with the first enqueue a single atomic step: however many callers race on
an absent key, exactly one creation sequence starts.

Usage::

    async with SandboxPool() as pool:
        result = await pool.run("user-42", "return lambda cb: cb(None, 112)")
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import IO, TYPE_CHECKING, Any

from isode.docker_engine import DockerEngine
from isode.errors import (
    InvalidInputError,
    LifecycleError,
    PoolCloseError,
    ProvisioningError,
    TerminationRaceError,
)
from isode.lifecycle import Sandbox
from isode.models import SandboxConfig, SandboxState
from isode.telemetry import (
    ATTR_CONTAINER_ID,
    ATTR_ENDPOINT,
    ATTR_IMAGE,
    ATTR_ISOLATE_KEY,
    ATTR_QUEUED,
    configure_telemetry,
    get_tracer,
)
from isode.transport import ExecutionTransport

if TYPE_CHECKING:
    from isode.engine import Console, Engine

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)

_CONSOLE_CHUNK = 4096


class SandboxPool:
    """Maps isolate keys to sandboxes and routes code to them.

    Parameters
    ----------
    config:
        Sandbox creation settings; built from the environment when omitted.
    engine:
        Container engine; a :class:`~isode.docker_engine.DockerEngine` by default.
    transport:
        Execution transport; an :class:`~isode.transport.ExecutionTransport`
        honouring ``config.request_timeout`` by default.
    console:
        Binary stream receiving sandbox console output; the host's stdout
        when omitted.
    """

    def __init__(
        self,
        config: SandboxConfig | None = None,
        *,
        engine: Engine | None = None,
        transport: ExecutionTransport | None = None,
        console: IO[bytes] | None = None,
    ) -> None:
        self._config = config or SandboxConfig()
        self._engine: Engine = engine or DockerEngine(self._config)
        self._transport = transport or ExecutionTransport(timeout=self._config.request_timeout)
        self._console = console
        self._sandboxes: dict[str, Sandbox] = {}

    async def __aenter__(self) -> SandboxPool:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    @property
    def config(self) -> SandboxConfig:
        return self._config

    def __contains__(self, key: object) -> bool:
        return key in self._sandboxes

    def __len__(self) -> int:
        return len(self._sandboxes)

    def keys(self) -> list[str]:
        return list(self._sandboxes)

    def state(self, key: str) -> SandboxState:
        sandbox = self._sandboxes.get(key)
        return sandbox.state if sandbox is not None else SandboxState.ABSENT

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, key: str, code: str) -> Any:
        """Evaluate *code* in the sandbox for *key*, creating it if needed."""
        if not isinstance(key, str) or not key:
            msg = "Isolate key must be a non-empty string."
            raise InvalidInputError(msg)
        if not isinstance(code, str) or not code.strip():
            msg = "Code must be a non-empty string to be evaluated."
            raise InvalidInputError(msg)

        sandbox = self._sandboxes.get(key)
        if sandbox is None:
            sandbox = Sandbox(key)
            sandbox.begin_provisioning()
            self._sandboxes[key] = sandbox
            waiter = sandbox.enqueue(code)
            sandbox.provisioner = asyncio.create_task(
                self._provision(sandbox),
                name=f"isode-provision-{key}",
            )
        elif sandbox.state is SandboxState.PROVISIONING:
            waiter = sandbox.enqueue(code)
        else:
            return await self._dispatch(sandbox, code)

        return await self._dispatch(await waiter, code)

    async def stop(self, key: str) -> None:
        """Ask the engine to terminate the sandbox for *key*.

        No-op when the key is absent or its sandbox was already asked to
        stop.  Termination itself is observed asynchronously: the key
        leaves the pool once the engine reports the exit.
        """
        sandbox = self._sandboxes.get(key)
        if sandbox is None:
            return
        await self._request_stop(sandbox)

    async def close(self) -> None:
        """Terminate every sandbox concurrently and empty the pool.

        Raises :class:`PoolCloseError` after all terminations completed if
        any of them failed.
        """
        sandboxes = list(self._sandboxes.values())
        if sandboxes:
            logger.info("Closing pool: terminating %d sandbox(es)", len(sandboxes))

        results = await asyncio.gather(
            *(self._terminate(sandbox) for sandbox in sandboxes),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]

        for sandbox in sandboxes:
            self._forget(sandbox)

        await self._transport.aclose()

        if errors:
            raise PoolCloseError(errors)

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def _provision(self, sandbox: Sandbox) -> None:
        key = sandbox.key
        with _tracer.start_as_current_span("isode.provision") as span:
            span.set_attribute(ATTR_ISOLATE_KEY, key)
            span.set_attribute(ATTR_IMAGE, self._config.image)
            try:
                handle = sandbox.handle = await self._engine.create(self._config)
                span.set_attribute(ATTR_CONTAINER_ID, handle)
                self._raise_if_stopping(sandbox)

                await self._engine.start(handle)
                self._raise_if_stopping(sandbox)

                console = await self._engine.attach(handle)
                sandbox.add_task(
                    asyncio.create_task(self._forward_console(sandbox, console), name=f"isode-console-{key}"),
                )

                endpoint = await self._engine.inspect(handle)
                self._raise_if_stopping(sandbox)
            except Exception as exc:
                await self._abort(sandbox, exc)
                return

            sandbox.mark_ready(endpoint)
            span.set_attribute(ATTR_ENDPOINT, endpoint.url)
            sandbox.add_task(
                asyncio.create_task(self._watch(sandbox, handle), name=f"isode-wait-{key}"),
            )
            released = sandbox.release_pending()
            span.set_attribute(ATTR_QUEUED, released)

        logger.info(
            "Sandbox %s:%s ready at %s (%d queued request(s) released)",
            key,
            handle[:12],
            endpoint.url,
            released,
        )

    @staticmethod
    def _raise_if_stopping(sandbox: Sandbox) -> None:
        if sandbox.stop_requested or sandbox.state is not SandboxState.PROVISIONING:
            raise TerminationRaceError(sandbox.key)

    async def _abort(self, sandbox: Sandbox, exc: Exception) -> None:
        """Fail every queued request and drop the half-made sandbox.

        A stop that raced the creation fails the queue with
        :class:`TerminationRaceError`; any other failure is shared as a
        :class:`ProvisioningError` chained to the step that raised.
        """
        key = sandbox.key
        if self._sandboxes.get(key) is sandbox:
            del self._sandboxes[key]
        sandbox.cancel_tasks()

        if sandbox.state is not SandboxState.PROVISIONING:
            # terminated elsewhere, which already failed the queue
            logger.info("Sandbox %r was dropped while provisioning", key)
        elif sandbox.stop_requested:
            logger.info("Sandbox %r stopped while provisioning", key)
            sandbox.mark_terminated()
        else:
            logger.warning("Provisioning sandbox %r failed: %s", key, exc)
            if isinstance(exc, ProvisioningError):
                sandbox.abort(exc)
            else:
                error = ProvisioningError(str(exc) or type(exc).__name__, key=key)
                error.__cause__ = exc
                sandbox.abort(error)

        if sandbox.handle is not None and not sandbox.stop_sent:
            sandbox.stop_sent = True
            try:
                await self._engine.stop(sandbox.handle)
            except Exception as cleanup_exc:
                logger.warning(
                    "Could not stop half-created sandbox %s:%s: %s",
                    key,
                    sandbox.handle[:12],
                    cleanup_exc,
                )

    async def _forward_console(self, sandbox: Sandbox, console: Console) -> None:
        """Copy the sandbox console to the host output unmodified.

        The console is closed when its output ends and when this task is
        cancelled.
        """
        out = self._console if self._console is not None else sys.stdout.buffer
        try:
            while True:
                chunk = await console.read(_CONSOLE_CHUNK)
                if not chunk:
                    break
                out.write(chunk)
                out.flush()
        finally:
            await console.aclose()
        logger.debug("Console stream of sandbox %r closed", sandbox.key)

    # ------------------------------------------------------------------
    # Dispatch and termination
    # ------------------------------------------------------------------

    async def _dispatch(self, sandbox: Sandbox, code: str) -> Any:
        endpoint = sandbox.endpoint
        if endpoint is None:
            raise LifecycleError(sandbox.key, sandbox.state.value, "dispatch")
        logger.debug("Dispatching %d byte(s) of code to sandbox %r", len(code), sandbox.key)
        return await self._transport.execute(endpoint, code)

    async def _watch(self, sandbox: Sandbox, handle: str) -> None:
        """Wait for the engine to report the sandbox exited, then drop it."""
        status: int | None = None
        try:
            status = await self._engine.wait(handle)
        except Exception:
            logger.exception("Waiting on sandbox %r failed; treating it as terminated", sandbox.key)

        logger.info(
            "Sandbox %s:%s terminated (exit status %s)",
            sandbox.key,
            handle[:12],
            status,
        )
        self._forget(sandbox)

    async def _request_stop(self, sandbox: Sandbox) -> None:
        sandbox.stop_requested = True
        if sandbox.handle is None or sandbox.stop_sent:
            # Still being created: the provisioner stops it once it has a handle.
            return
        sandbox.stop_sent = True
        logger.info("Stopping sandbox %s:%s", sandbox.key, sandbox.handle[:12])
        try:
            await self._engine.stop(sandbox.handle)
        except Exception:
            # Not stopped; a later stop() or the provisioner's cleanup tries again
            sandbox.stop_sent = False
            raise

    async def _terminate(self, sandbox: Sandbox) -> None:
        try:
            await self._request_stop(sandbox)
        finally:
            provisioner = sandbox.provisioner
            if sandbox.state is SandboxState.PROVISIONING and provisioner is not None:
                await provisioner

    def _forget(self, sandbox: Sandbox) -> None:
        """Remove *sandbox* from the pool if it still owns its key."""
        if self._sandboxes.get(sandbox.key) is sandbox:
            del self._sandboxes[sandbox.key]
        sandbox.cancel_tasks()
        if sandbox.state in (SandboxState.PROVISIONING, SandboxState.READY):
            sandbox.mark_terminated()


_default_pool: SandboxPool | None = None


def create_pool(
    config: SandboxConfig | None = None,
    *,
    engine: Engine | None = None,
    transport: ExecutionTransport | None = None,
    console: IO[bytes] | None = None,
) -> SandboxPool:
    """Create an independent pool sharing no state with any other."""
    return SandboxPool(config, engine=engine, transport=transport, console=console)


def get_default_pool() -> SandboxPool:
    """Return the process-wide pool, creating it on first use.

    The default pool is configured from the environment, including span
    export (see :func:`~isode.telemetry.configure_telemetry`).  It lives
    for the whole process; tear it down with
    ``await get_default_pool().close()`` at shutdown.  After ``close()``
    it stays usable and provisions sandboxes again on demand.
    """
    global _default_pool
    if _default_pool is None:
        pool = SandboxPool()
        configure_telemetry(pool.config)
        _default_pool = pool
    return _default_pool
