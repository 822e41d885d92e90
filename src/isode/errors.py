"""Shared error types for the sandbox pool."""

from __future__ import annotations


class IsodeError(Exception):
    """Base error for all sandbox pool failures."""


class InvalidInputError(IsodeError):
    """The caller supplied an isolate key or code payload that cannot be run."""


class CompilationError(InvalidInputError):
    """The sandbox runtime could not compile the submitted code (HTTP 400)."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__("Unable to compile submitted code" + (f": {detail}" if detail else ""))


class ProvisioningError(IsodeError):
    """Creating, starting or inspecting a sandbox failed.

    Shared by every request queued for the key at the moment of failure.
    """

    def __init__(self, detail: str = "", *, key: str = "") -> None:
        self.key = key
        self.detail = detail
        prefix = f"Failed to provision sandbox {key!r}" if key else "Failed to provision sandbox"
        super().__init__(prefix + (f": {detail}" if detail else ""))


class EngineError(IsodeError):
    """A container engine command failed."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__("Engine error" + (f": {detail}" if detail else ""))


class TerminationRaceError(IsodeError):
    """The sandbox terminated while requests were still waiting for it."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Sandbox {key!r} terminated before it became ready")


class ExecutionError(IsodeError):
    """Base error for a single dispatched execution."""


class RemoteExecutionError(ExecutionError):
    """The sandbox reported a non-success status for the submitted code."""

    def __init__(self, error: str, details: str = "", status_code: int = 500) -> None:
        self.error = error
        self.details = details
        self.status_code = status_code
        super().__init__(error + (f" {details}" if details else ""))


class MalformedResponseError(ExecutionError):
    """The sandbox response could not be parsed."""

    def __init__(self, body: str) -> None:
        self.body = body
        super().__init__(f"Unable to parse response as JSON: {body}")


class TransportError(ExecutionError):
    """The request never completed (unreachable sandbox, network error, timeout)."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__("Transport error" + (f": {detail}" if detail else ""))


class LifecycleError(IsodeError):
    """A sandbox was asked to make a transition its state does not allow."""

    def __init__(self, key: str, current: str, target: str) -> None:
        self.key = key
        self.current = current
        self.target = target
        super().__init__(f"Sandbox {key!r} cannot move from {current} to {target}")


class PoolCloseError(IsodeError):
    """One or more sandboxes failed to stop during ``close()``."""

    def __init__(self, errors: list[BaseException]) -> None:
        self.errors = errors
        super().__init__(f"{len(errors)} sandbox(es) failed to stop: " + "; ".join(str(e) for e in errors))
