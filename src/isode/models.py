"""Data models for the sandbox pool."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

VOLUME_PATH = Path(__file__).parent / "volume"
DEFAULT_IMAGE = "python:3.12-slim"
DEFAULT_SOCKET_PATH = "/var/run/docker.sock"
DEFAULT_PORT = 8721
DEFAULT_REQUEST_TIMEOUT = 30.0


def _request_timeout_from_env() -> float | None:
    raw = os.environ.get("ISODE_REQUEST_TIMEOUT")
    if raw is None or raw == "":
        return DEFAULT_REQUEST_TIMEOUT
    if raw.lower() == "none":
        return None
    return float(raw)


class SandboxState(str, Enum):
    """Lifecycle state of the sandbox behind an isolate key."""

    ABSENT = "absent"
    PROVISIONING = "provisioning"
    READY = "ready"
    TERMINATED = "terminated"


class SandboxConfig(BaseModel):
    """Configuration for sandbox creation and code dispatch.

    Defaults are read from the process environment when the config is
    constructed, so a config built at startup reflects the ``ISODE_*``
    variables at that moment.
    """

    image: str = Field(
        default_factory=lambda: os.environ.get("ISODE_IMAGE") or DEFAULT_IMAGE,
        description="Container image running the execution runtime.",
    )
    socket_path: str = Field(
        default_factory=lambda: os.environ.get("ISODE_SOCKET_PATH") or DEFAULT_SOCKET_PATH,
        description="Unix socket the container engine listens on.",
    )
    port: int = Field(default=DEFAULT_PORT, description="Port the execution runtime listens on.")
    volume_path: Path = Field(default=VOLUME_PATH, description="Host directory holding the runtime program.")
    mount_point: str = Field(default="/isode", description="Read-only mount point inside the sandbox.")
    command: list[str] = Field(
        default_factory=lambda: ["python", "/isode/server.py"],
        description="Command run when the sandbox starts.",
    )
    request_timeout: float | None = Field(
        default_factory=_request_timeout_from_env,
        description="Timeout in seconds for a single code execution request (None disables it).",
    )
    docker_binary: str = Field(default="docker", description="Docker CLI executable.")
    otlp_endpoint: str | None = Field(
        default_factory=lambda: os.environ.get("ISODE_OTLP_ENDPOINT") or None,
        description="OTLP/gRPC collector receiving provisioning and execution spans.",
    )
    trace_console: bool = Field(
        default_factory=lambda: os.environ.get("ISODE_TRACE_CONSOLE", "").lower() in ("1", "true", "yes"),
        description="Print finished spans to stdout.",
    )


class Endpoint(BaseModel):
    """Network address of a ready sandbox."""

    host: str
    port: int = DEFAULT_PORT

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/"


class RuntimeErrorBody(BaseModel):
    """Structured error body returned by the execution runtime.

    Execution and serialization failures use ``details``; compilation
    failures use ``detail``.
    """

    code: int
    error: str
    details: str | None = None
    detail: str | None = None

    @property
    def message(self) -> str:
        return self.details or self.detail or ""
