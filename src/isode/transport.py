"""ExecutionTransport — sends code to a ready sandbox and classifies the reply."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from isode.errors import (
    CompilationError,
    MalformedResponseError,
    RemoteExecutionError,
    TransportError,
)
from isode.models import DEFAULT_REQUEST_TIMEOUT, Endpoint, RuntimeErrorBody
from isode.telemetry import ATTR_ENDPOINT, ATTR_STATUS_CODE, get_tracer

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)


class ExecutionTransport:
    """HTTP client for the in-sandbox execution runtime.

    The runtime accepts ``POST /`` with the raw code as the body and
    answers with JSON. No retry is attempted here.

    Usage::

        transport = ExecutionTransport(timeout=10.0)
        result = await transport.execute(Endpoint(host="172.17.0.2"), code)
        await transport.aclose()
    """

    def __init__(self, timeout: float | None = DEFAULT_REQUEST_TIMEOUT) -> None:
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def timeout(self) -> float | None:
        return self._timeout

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, trust_env=False)
        return self._client

    async def aclose(self) -> None:
        """Release pooled connections; a new client is opened on next use."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def execute(self, endpoint: Endpoint, code: str) -> Any:
        """POST *code* to *endpoint* and return the decoded result."""
        with _tracer.start_as_current_span("isode.execute") as span:
            span.set_attribute(ATTR_ENDPOINT, endpoint.url)
            try:
                response = await self._http().post(endpoint.url, content=code.encode("utf-8"))
            except httpx.HTTPError as exc:
                raise TransportError(str(exc) or type(exc).__name__) from exc

            span.set_attribute(ATTR_STATUS_CODE, response.status_code)
            logger.debug("Sandbox %s answered %d", endpoint.url, response.status_code)
            return self._parse_response(response)

    @staticmethod
    def _parse_response(response: httpx.Response) -> Any:
        body = response.text

        if response.status_code == 200:
            try:
                return json.loads(body)
            except json.JSONDecodeError as exc:
                raise MalformedResponseError(body) from exc

        try:
            error = RuntimeErrorBody.model_validate_json(body)
        except ValidationError as exc:
            raise MalformedResponseError(body) from exc

        if response.status_code == 400:
            raise CompilationError(error.message)
        raise RemoteExecutionError(error.error, error.message, status_code=response.status_code)
