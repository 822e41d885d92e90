"""Tests for ExecutionTransport with mocked httpx."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from isode.errors import (
    CompilationError,
    InvalidInputError,
    MalformedResponseError,
    RemoteExecutionError,
    TransportError,
)
from isode.models import Endpoint
from isode.transport import ExecutionTransport

ENDPOINT = Endpoint(host="172.17.0.9", port=8721)


def _mock_httpx_client(response: httpx.Response | None = None, error: Exception | None = None) -> AsyncMock:
    client = AsyncMock()
    if error is not None:
        client.post = AsyncMock(side_effect=error)
    else:
        client.post = AsyncMock(return_value=response)
    client.aclose = AsyncMock()
    return client


class TestExecute:
    async def test_success_returns_parsed_json(self) -> None:
        mock = _mock_httpx_client(httpx.Response(200, text="112"))
        with patch("isode.transport.httpx.AsyncClient", return_value=mock):
            transport = ExecutionTransport()
            result = await transport.execute(ENDPOINT, "return lambda cb: cb(None, 112)")

        assert result == 112
        mock.post.assert_awaited_once_with(
            "http://172.17.0.9:8721/",
            content=b"return lambda cb: cb(None, 112)",
        )

    async def test_empty_object_result(self) -> None:
        mock = _mock_httpx_client(httpx.Response(200, text="{}"))
        with patch("isode.transport.httpx.AsyncClient", return_value=mock):
            assert await ExecutionTransport().execute(ENDPOINT, "x") == {}

    async def test_unparsable_success_body(self) -> None:
        mock = _mock_httpx_client(httpx.Response(200, text="<html>"))
        with patch("isode.transport.httpx.AsyncClient", return_value=mock):
            with pytest.raises(MalformedResponseError, match="<html>") as exc_info:
                await ExecutionTransport().execute(ENDPOINT, "x")

        assert exc_info.value.body == "<html>"

    async def test_remote_execution_error(self) -> None:
        body = {"code": 500, "error": "Error when executing code.", "details": "ValueError: nope"}
        mock = _mock_httpx_client(httpx.Response(500, text=json.dumps(body)))
        with patch("isode.transport.httpx.AsyncClient", return_value=mock):
            with pytest.raises(RemoteExecutionError) as exc_info:
                await ExecutionTransport().execute(ENDPOINT, "x")

        err = exc_info.value
        assert err.error == "Error when executing code."
        assert err.details == "ValueError: nope"
        assert err.status_code == 500
        assert "nope" in str(err)

    async def test_compilation_error(self) -> None:
        body = {"code": 400, "error": "Unable to compile submitted code.", "detail": "SyntaxError: bad"}
        mock = _mock_httpx_client(httpx.Response(400, text=json.dumps(body)))
        with patch("isode.transport.httpx.AsyncClient", return_value=mock):
            with pytest.raises(CompilationError) as exc_info:
                await ExecutionTransport().execute(ENDPOINT, "x")

        assert isinstance(exc_info.value, InvalidInputError)
        assert exc_info.value.detail == "SyntaxError: bad"

    async def test_unstructured_error_body(self) -> None:
        mock = _mock_httpx_client(httpx.Response(404, text=""))
        with patch("isode.transport.httpx.AsyncClient", return_value=mock):
            with pytest.raises(MalformedResponseError):
                await ExecutionTransport().execute(ENDPOINT, "x")

    async def test_other_status_with_structured_body(self) -> None:
        body = {"code": 503, "error": "Busy"}
        mock = _mock_httpx_client(httpx.Response(503, text=json.dumps(body)))
        with patch("isode.transport.httpx.AsyncClient", return_value=mock):
            with pytest.raises(RemoteExecutionError) as exc_info:
                await ExecutionTransport().execute(ENDPOINT, "x")

        assert exc_info.value.status_code == 503

    @pytest.mark.parametrize(
        "error",
        [
            httpx.ConnectError("connection refused"),
            httpx.ReadTimeout("timed out"),
            httpx.RemoteProtocolError("server disconnected"),
        ],
    )
    async def test_network_failures_become_transport_errors(self, error: Exception) -> None:
        mock = _mock_httpx_client(error=error)
        with patch("isode.transport.httpx.AsyncClient", return_value=mock):
            with pytest.raises(TransportError) as exc_info:
                await ExecutionTransport().execute(ENDPOINT, "x")

        assert exc_info.value.__cause__ is error


class TestClientLifecycle:
    async def test_timeout_passed_to_client(self) -> None:
        mock = _mock_httpx_client(httpx.Response(200, text="1"))
        with patch("isode.transport.httpx.AsyncClient", return_value=mock) as client_cls:
            transport = ExecutionTransport(timeout=2.5)
            await transport.execute(ENDPOINT, "x")

        client_cls.assert_called_once_with(timeout=2.5, trust_env=False)
        assert transport.timeout == 2.5

    async def test_client_reused_between_calls(self) -> None:
        mock = _mock_httpx_client(httpx.Response(200, text="1"))
        with patch("isode.transport.httpx.AsyncClient", return_value=mock) as client_cls:
            transport = ExecutionTransport()
            await transport.execute(ENDPOINT, "x")
            await transport.execute(ENDPOINT, "y")

        assert client_cls.call_count == 1
        assert mock.post.await_count == 2

    async def test_aclose_and_reopen(self) -> None:
        first = _mock_httpx_client(httpx.Response(200, text="1"))
        second = _mock_httpx_client(httpx.Response(200, text="2"))
        with patch("isode.transport.httpx.AsyncClient", side_effect=[first, second]):
            transport = ExecutionTransport()
            assert await transport.execute(ENDPOINT, "x") == 1
            await transport.aclose()
            assert await transport.execute(ENDPOINT, "x") == 2

        first.aclose.assert_awaited_once()

    async def test_aclose_without_client(self) -> None:
        await ExecutionTransport().aclose()
