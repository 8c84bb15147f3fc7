"""HTTP transport: health probes, mounts and JSON-RPC tool calls."""

from __future__ import annotations

import contextlib
import inspect
import json
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from mcp_mailbox import config as _config
from mcp_mailbox.app import build_mcp_server
from mcp_mailbox.http import build_http_app


def _rpc(method: str, params: dict[str, Any]) -> dict[str, Any]:
    """Create a JSON-RPC 2.0 request payload."""
    return {"jsonrpc": "2.0", "id": "1", "method": method, "params": params}


def _tool_payload(data: dict[str, Any]) -> dict[str, Any]:
    result = data["result"]
    structured = result.get("structuredContent")
    if structured is not None:
        return structured
    return json.loads(result["content"][0]["text"])


class TestServerConfiguration:
    @pytest.mark.asyncio
    async def test_mounts_configured_path_and_aliases(self, isolated_env, monkeypatch):
        monkeypatch.setenv("HTTP_PATH", "/custom-mcp/")
        with contextlib.suppress(Exception):
            _config.clear_settings_cache()
        settings = _config.get_settings()
        app = build_http_app(settings, build_mcp_server())

        mounted_paths = {getattr(route, "path", "") for route in app.routes}
        assert "/custom-mcp" in mounted_paths
        assert "/api" in mounted_paths
        assert "/mcp" in mounted_paths

    def test_low_level_server_supports_stateless_runs(self, isolated_env):
        # Each HTTP request runs the low-level server without an initialize handshake.
        server = build_mcp_server()
        assert "stateless" in inspect.signature(server._mcp_server.run).parameters


class TestHealthEndpoints:
    @pytest.mark.asyncio
    async def test_liveness(self, isolated_env):
        app = build_http_app(_config.get_settings(), build_mcp_server())
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health/liveness")
        assert response.status_code == 200
        assert response.json() == {"status": "alive"}

    @pytest.mark.asyncio
    async def test_readiness(self, isolated_env):
        app = build_http_app(_config.get_settings(), build_mcp_server())
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health/readiness")
        assert response.status_code == 200
        assert response.json() == {"status": "ready"}

    @pytest.mark.asyncio
    async def test_readiness_reports_broken_store(self, isolated_env, tmp_path, monkeypatch):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{blocker}/db.sqlite3")
        _config.clear_settings_cache()
        app = build_http_app(_config.get_settings(), build_mcp_server())
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health/readiness")
        assert response.status_code == 503


class TestToolCallsOverHTTP:
    @pytest.mark.asyncio
    async def test_tool_call_returns_jsonrpc_format(self, isolated_env):
        settings = _config.get_settings()
        app = build_http_app(settings, build_mcp_server())
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                settings.http.path,
                json=_rpc("tools/call", {"name": "health_check", "arguments": {}}),
            )
        assert response.status_code == 200
        data = response.json()
        assert data.get("jsonrpc") == "2.0"
        assert data.get("id") == "1"
        assert _tool_payload(data)["status"] == "ok"

    @pytest.mark.asyncio
    async def test_send_and_receive_over_http(self, isolated_env):
        settings = _config.get_settings()
        app = build_http_app(settings, build_mcp_server())
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            sent = await client.post(
                settings.http.path,
                json=_rpc(
                    "tools/call",
                    {
                        "name": "send_message",
                        "arguments": {"project_id": "a/b", "to_agent": "X", "from_agent": "Y", "content": "hi"},
                    },
                ),
            )
            assert sent.status_code == 200
            message_id = _tool_payload(sent.json())["message_id"]

            received = await client.post(
                settings.http.path,
                json=_rpc("tools/call", {"name": "receive_messages", "arguments": {"project_id": "a/b", "agent_id": "X"}}),
            )
            messages = _tool_payload(received.json())["messages"]
            assert [m["id"] for m in messages] == [message_id]
            assert messages[0]["content"] == "hi"

            again = await client.post(
                settings.http.path,
                json=_rpc("tools/call", {"name": "receive_messages", "arguments": {"project_id": "a/b", "agent_id": "X"}}),
            )
            assert _tool_payload(again.json())["messages"] == []

    @pytest.mark.asyncio
    async def test_not_found_is_a_tool_error(self, isolated_env):
        settings = _config.get_settings()
        app = build_http_app(settings, build_mcp_server())
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                settings.http.path,
                json=_rpc("tools/call", {"name": "context_get", "arguments": {"key": "missing"}}),
            )
        assert response.status_code == 200
        result = response.json()["result"]
        assert result["isError"] is True
        assert "not found" in result["content"][0]["text"].lower()

    @pytest.mark.asyncio
    async def test_no_slash_alias_passthrough(self, isolated_env):
        settings = _config.get_settings()
        app = build_http_app(settings, build_mcp_server())
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api",
                json=_rpc("tools/call", {"name": "context_list", "arguments": {}}),
            )
        assert response.status_code == 200
        assert _tool_payload(response.json()) == {"keys": []}

    @pytest.mark.asyncio
    async def test_tools_list(self, isolated_env):
        settings = _config.get_settings()
        app = build_http_app(settings, build_mcp_server())
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(settings.http.path, json=_rpc("tools/list", {}))
        assert response.status_code == 200
        names = {tool["name"] for tool in response.json()["result"]["tools"]}
        assert {"send_message", "receive_messages", "peek_messages", "delete_message"} <= names
