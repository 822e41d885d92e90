"""DockerEngine — runs sandboxes as long-lived Docker containers.

Uses the ``docker`` CLI via subprocess (no docker-py dependency), talking
to the daemon listening on ``SandboxConfig.socket_path``.
"""

from __future__ import annotations

import asyncio
import json
import logging

from isode.errors import EngineError
from isode.models import Endpoint, SandboxConfig

logger = logging.getLogger(__name__)


class DockerEngine:
    """Docker CLI engine.

    Satisfies the :class:`~isode.engine.Engine` protocol.

    Every sandbox is a container created from ``config.image`` with the
    runtime directory bind-mounted read-only at ``config.mount_point`` and
    ``config.command`` as its entrypoint command. Containers are created
    with ``--rm`` so a stopped sandbox leaves nothing behind.
    """

    def __init__(self, config: SandboxConfig | None = None) -> None:
        self._config = config or SandboxConfig()

    async def create(self, config: SandboxConfig) -> str:
        """``docker create`` the container and return its id."""
        result = await self._run_docker(self._build_create_command(config))
        container_id = result.stdout.splitlines()[-1] if result.stdout else ""
        if not container_id:
            raise EngineError("docker create returned no container id")
        logger.debug("Created container %s from %s", container_id[:12], config.image)
        return container_id

    async def attach(self, handle: str) -> DockerConsole:
        """Follow the container console (stdout and stderr merged)."""
        cmd = self._docker("logs", "--follow", handle)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise EngineError(f"Failed to run docker: {exc}") from exc
        return DockerConsole(proc)

    async def start(self, handle: str) -> None:
        await self._run_docker(self._docker("start", handle))

    async def inspect(self, handle: str) -> Endpoint:
        """Read the container IP address from its network settings."""
        result = await self._run_docker(
            self._docker("inspect", "--format", "{{json .NetworkSettings}}", handle),
        )
        try:
            settings = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise EngineError(f"Unexpected docker inspect output: {result.stdout!r}") from exc

        host = self._ip_address(settings or {})
        if not host:
            raise EngineError(f"Container {handle[:12]} has no IP address")
        return Endpoint(host=host, port=self._config.port)

    async def stop(self, handle: str) -> None:
        await self._run_docker(self._docker("stop", handle))

    async def wait(self, handle: str) -> int:
        result = await self._run_docker(self._docker("wait", handle))
        return int(result.stdout.strip()) if result.stdout.strip() else 1

    def _build_create_command(self, config: SandboxConfig) -> list[str]:
        """Build the ``docker create`` command with the runtime volume."""
        return self._docker(
            "create",
            "--tty",
            "--rm",
            "--volume", f"{config.volume_path}:{config.mount_point}:ro",
            "--env", f"PORT={config.port}",
            config.image,
            *config.command,
        )

    def _docker(self, *args: str) -> list[str]:
        return [self._config.docker_binary, "--host", f"unix://{self._config.socket_path}", *args]

    @staticmethod
    def _ip_address(settings: dict[str, object]) -> str:
        address = settings.get("IPAddress")
        if isinstance(address, str) and address:
            return address
        # User-defined networks only report their address per network
        networks = settings.get("Networks")
        if isinstance(networks, dict):
            for network in networks.values():
                if isinstance(network, dict) and network.get("IPAddress"):
                    return str(network["IPAddress"])
        return ""

    @staticmethod
    async def _run_docker(cmd: list[str]) -> _DockerOutput:
        """Run a docker CLI command and return its output."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout_bytes, stderr_bytes = await proc.communicate()
        except OSError as exc:
            raise EngineError(f"Failed to run docker: {exc}") from exc

        stdout = stdout_bytes.decode(errors="replace").strip() if stdout_bytes else ""
        stderr = stderr_bytes.decode(errors="replace").strip() if stderr_bytes else ""

        if proc.returncode != 0:
            raise EngineError(f"docker command failed (rc={proc.returncode}): {stderr or stdout}")

        return _DockerOutput(stdout=stdout, stderr=stderr)


class DockerConsole:
    """Output of a ``docker logs --follow`` child process.

    ``aclose()`` terminates the child if it is still following and reaps it.
    """

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stdout is None:
            raise EngineError("docker logs was started without a stdout pipe")
        self._proc = proc
        self._stdout = proc.stdout

    async def read(self, n: int = -1) -> bytes:
        return await self._stdout.read(n)

    async def aclose(self) -> None:
        if self._proc.returncode is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                # exited between the returncode check and the signal
                pass
        await self._proc.wait()


class _DockerOutput:
    """Simple container for docker CLI output."""

    __slots__ = ("stdout", "stderr")

    def __init__(self, stdout: str = "", stderr: str = "") -> None:
        self.stdout = stdout
        self.stderr = stderr
