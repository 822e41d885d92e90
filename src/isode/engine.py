"""Engine protocol — the container capabilities the pool relies on."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from isode.models import Endpoint, SandboxConfig


@runtime_checkable
class Console(Protocol):
    """Console output of one sandbox, owned by whoever attached to it."""

    async def read(self, n: int = -1) -> bytes:
        """Return up to *n* bytes; ``b""`` once the output has ended."""
        ...

    async def aclose(self) -> None:
        """Stop following the output and release what backs the stream."""
        ...


@runtime_checkable
class Engine(Protocol):
    """Creates, starts, inspects, stops and waits on sandboxes.

    Handles are opaque strings chosen by the engine (a container id for
    :class:`~isode.docker_engine.DockerEngine`).
    """

    async def create(self, config: SandboxConfig) -> str:
        """Create a sandbox and return its handle."""
        ...

    async def attach(self, handle: str) -> Console:
        """Follow the sandbox's console output."""
        ...

    async def start(self, handle: str) -> None:
        """Start a created sandbox."""
        ...

    async def inspect(self, handle: str) -> Endpoint:
        """Return the network endpoint of a running sandbox."""
        ...

    async def stop(self, handle: str) -> None:
        """Request termination of a sandbox."""
        ...

    async def wait(self, handle: str) -> int:
        """Block until the sandbox exits and return its exit status."""
        ...
