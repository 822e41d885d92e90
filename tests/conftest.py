"""Shared fakes for pool tests: an in-memory engine and a recording transport."""

from __future__ import annotations

import asyncio
import io
from typing import Any

import pytest

from isode.models import Endpoint, SandboxConfig
from isode.pool import SandboxPool


class FakeConsole:
    """Console backed by an in-memory stream; records ``aclose()`` calls."""

    def __init__(self, data: bytes) -> None:
        self.stream = asyncio.StreamReader()
        self.stream.feed_data(data)
        self.closed = 0

    async def read(self, n: int = -1) -> bytes:
        return await self.stream.read(n)

    async def aclose(self) -> None:
        self.closed += 1


class FakeEngine:
    """In-memory engine.

    Each step can be held back with ``gates[step]`` (an ``asyncio.Event``)
    or made to raise with ``fail_on[step]``.  ``exit(handle)`` plays the
    part of the container exiting.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.created = 0
        self.gates: dict[str, asyncio.Event] = {}
        self.fail_on: dict[str, Exception] = {}
        self.stop_error: Exception | None = None
        self.endpoint: Endpoint | None = None
        self._exits: dict[str, asyncio.Future[int]] = {}
        self.consoles: dict[str, FakeConsole] = {}

    async def _step(self, name: str, handle: str) -> None:
        self.calls.append((name, handle))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        error = self.fail_on.get(name)
        if error is not None:
            raise error

    def steps(self, name: str) -> list[str]:
        return [handle for step, handle in self.calls if step == name]

    async def create(self, config: SandboxConfig) -> str:
        self.created += 1
        handle = f"container{self.created:04d}-{config.image}"
        self._exits[handle] = asyncio.get_running_loop().create_future()
        await self._step("create", handle)
        return handle

    async def attach(self, handle: str) -> FakeConsole:
        await self._step("attach", handle)
        console = FakeConsole(f"{handle} booted\n".encode())
        self.consoles[handle] = console
        return console

    async def start(self, handle: str) -> None:
        await self._step("start", handle)

    async def inspect(self, handle: str) -> Endpoint:
        await self._step("inspect", handle)
        return self.endpoint or Endpoint(host=f"10.0.0.{self.created}")

    async def stop(self, handle: str) -> None:
        self.calls.append(("stop", handle))
        if self.stop_error is not None:
            raise self.stop_error
        self.exit(handle, 0)

    async def wait(self, handle: str) -> int:
        self.calls.append(("wait", handle))
        return await self._exits[handle]

    def exit(self, handle: str, status: int = 0) -> None:
        future = self._exits.get(handle)
        if future is not None and not future.done():
            future.set_result(status)
        console = self.consoles.get(handle)
        if console is not None and not console.stream.at_eof():
            console.stream.feed_eof()


class FakeTransport:
    """Records dispatched code in order; ``errors[code]`` makes a call raise."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.errors: dict[str, Exception] = {}
        self.closed = 0

    async def execute(self, endpoint: Endpoint, code: str) -> Any:
        self.calls.append((endpoint.host, code))
        error = self.errors.get(code)
        if error is not None:
            raise error
        return {"host": endpoint.host, "code": code}

    async def aclose(self) -> None:
        self.closed += 1


async def settle(rounds: int = 10) -> None:
    """Let every runnable task advance until it blocks."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def console() -> io.BytesIO:
    return io.BytesIO()


@pytest.fixture
def pool(engine: FakeEngine, transport: FakeTransport, console: io.BytesIO) -> SandboxPool:
    config = SandboxConfig(image="test-image", request_timeout=5.0)
    return SandboxPool(config, engine=engine, transport=transport, console=console)  # type: ignore[arg-type]
