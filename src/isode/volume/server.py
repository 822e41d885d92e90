"""Execution runtime served from inside every sandbox.

This file is bind-mounted read-only into each container and started as
its command, so it may only use the standard library of the sandbox
image's interpreter.

The runtime accepts ``POST /`` with Python source as the body. The source
is the body of a zero-argument function and must return a callable that
accepts a single completion callback ``cb(error, data)``::

    POST / HTTP/1.1
    Content-Length: 31

    return lambda cb: cb(None, 112)

    HTTP/1.0 200 OK
    Content-Type: application/json

    112

Status codes: 200 on success (body is the JSON of ``data``, ``{}`` when it
is ``None``), 500 when the callback reports an error or the result cannot
be serialized, 400 when the source cannot be compiled or does not return
a callable. Every other method gets an empty 404.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import textwrap
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

logger = logging.getLogger("isode.runtime")

DEFAULT_PORT = 8721
FACTORY_NAME = "__isode_factory__"

EXECUTION_ERROR = "Error when executing code."
SERIALIZATION_ERROR = "Error when serializing the result."
COMPILE_ERROR = (
    "Unable to compile submitted code. The code must return a function "
    "which accepts a single callback parameter, e.g. `return lambda cb: cb(None, \"hello\")`."
)


class _Completion:
    """Captures the first call of the completion callback."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.error: Any = None
        self.data: Any = None

    @property
    def done(self) -> bool:
        return self._event.is_set()

    def __call__(self, error: Any = None, data: Any = None) -> None:
        if self._event.is_set():
            return
        self.error = error
        self.data = data
        self._event.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


def _describe(error: Any) -> str:
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return str(error)


def _dumps(payload: Any) -> bytes:
    return json.dumps(payload, indent=2).encode("utf-8")


def compile_factory(source: str) -> Any:
    """Wrap *source* as the body of a zero-argument function and return it."""
    wrapped = f"def {FACTORY_NAME}():\n" + textwrap.indent(source, "    ") + "\n"
    namespace: dict[str, Any] = {"__name__": "__isode__"}
    exec(compile(wrapped, "<submitted>", "exec"), namespace)
    return namespace[FACTORY_NAME]


def evaluate(source: str, timeout: float | None = None) -> tuple[int, bytes]:
    """Run submitted *source* and return the HTTP status and JSON body."""
    completion = _Completion()
    try:
        func = compile_factory(source)()
        if not callable(func):
            msg = "The code does not return a function."
            raise TypeError(msg)
        func(completion)
    except Exception as exc:
        if not completion.done:
            return 400, _dumps({"code": 400, "error": COMPILE_ERROR, "detail": _describe(exc)})
        logger.warning("Submitted code raised after completing: %s", _describe(exc))

    if not completion.wait(timeout):
        return 500, _dumps({
            "code": 500,
            "error": EXECUTION_ERROR,
            "details": f"TimeoutError: callback not called within {timeout}s",
        })

    if completion.error:
        return 500, _dumps({"code": 500, "error": EXECUTION_ERROR, "details": _describe(completion.error)})

    try:
        body = b"{}" if completion.data is None else json.dumps(completion.data).encode("utf-8")
    except (TypeError, ValueError) as exc:
        return 500, _dumps({"code": 500, "error": SERIALIZATION_ERROR, "details": _describe(exc)})
    return 200, body


class RuntimeHandler(BaseHTTPRequestHandler):
    server_version = "isode-runtime"
    callback_timeout: float | None = None

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        source = self.rfile.read(length).decode("utf-8", errors="replace")
        status, body = evaluate(source, self.callback_timeout)
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _not_found(self) -> None:
        self.send_response(404)
        self.send_header("Content-Length", "0")
        self.end_headers()

    do_GET = do_HEAD = do_PUT = do_PATCH = do_DELETE = do_OPTIONS = _not_found

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.info("%s - %s", self.address_string(), format % args)


def make_server(port: int = DEFAULT_PORT, host: str = "") -> ThreadingHTTPServer:
    server = ThreadingHTTPServer((host, port), RuntimeHandler)
    server.daemon_threads = True
    return server


def _terminate(signum: int, _frame: object) -> None:
    raise SystemExit(128 + signum)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    timeout = os.environ.get("ISODE_CALLBACK_TIMEOUT")
    RuntimeHandler.callback_timeout = float(timeout) if timeout else None

    # PID 1 in a container ignores SIGTERM unless it installs a handler
    signal.signal(signal.SIGTERM, _terminate)

    server = make_server(int(os.environ.get("PORT") or DEFAULT_PORT))
    logger.info("Listening on port %d", server.server_address[1])
    try:
        server.serve_forever()
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
