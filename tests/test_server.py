"""Tests for the FastMCP server and its tool registrations.

Tools are called through FastMCP's own tool objects so argument handling
and result encoding are exercised the way an MCP client sees them.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from project_memory_keeper.config import KeeperConfig
from project_memory_keeper.mcp.server import (
    SERVER_NAME,
    create_server,
    get_config,
    get_server,
    get_service,
    reset_server,
)

EXPECTED_TOOLS = {
    "save_update",
    "get_context",
    "update_server",
    "create_checkpoint",
    "get_checkpoint",
    "list_checkpoints",
    "restore_checkpoint",
    "health_check",
}


def _parse_tool_result(result) -> dict:
    """Extract a dict from a FastMCP ToolResult.

    The first TextContent's ``.text`` carries the JSON-encoded return value.
    """
    if isinstance(result, dict):
        return result
    if hasattr(result, "content") and result.content:
        return json.loads(result.content[0].text)
    raise TypeError(f"Cannot parse tool result of type {type(result)}")


def _call(server, name: str, arguments: dict | None = None) -> dict:
    tools = asyncio.run(server.get_tools())
    return _parse_tool_result(asyncio.run(tools[name].run(arguments or {})))


@pytest.fixture(autouse=True)
def _clean_server():
    reset_server()
    yield
    reset_server()


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    (tmp_path / ".git").mkdir()
    return tmp_path


@pytest.fixture()
def server(project_dir: Path):
    return create_server(project_root=str(project_dir))


class TestCreateServer:
    def test_returns_fastmcp_instance(self, server) -> None:
        from fastmcp import FastMCP

        assert isinstance(server, FastMCP)
        assert server.name == SERVER_NAME

    def test_seeds_storage(self, project_dir: Path, server) -> None:
        context_file = project_dir / "memory-data" / "context" / "project-context.json"
        assert context_file.is_file()
        data = json.loads(context_file.read_text(encoding="utf-8"))
        assert data["project"] == project_dir.resolve().name

    def test_accepts_explicit_config(self, tmp_path: Path) -> None:
        config = KeeperConfig(project_root=str(tmp_path), project_name="explicit")
        create_server(config=config)
        assert get_config() is config
        assert get_service().manager.document.project == "explicit"

    def test_all_tools_registered(self, server) -> None:
        tools = asyncio.run(server.get_tools())
        assert EXPECTED_TOOLS <= set(tools)

    def test_servers_do_not_share_state(self, tmp_path: Path) -> None:
        first = create_server(config=KeeperConfig(project_root=str(tmp_path / "a")))
        second = create_server(config=KeeperConfig(project_root=str(tmp_path / "b")))
        _call(first, "save_update", {"content": "only in a"})
        assert _call(second, "get_context", {"category": "updates"})["data"] == []
        assert _call(first, "get_context", {"category": "updates"})["data"][0]["content"] == "only in a"


class TestAccessors:
    def test_before_create_raises(self) -> None:
        with pytest.raises(RuntimeError, match="not been initialized"):
            get_service()
        with pytest.raises(RuntimeError, match="not been initialized"):
            get_config()

    def test_get_server_returns_created(self, server) -> None:
        assert get_server() is server

    def test_reset_clears(self, server) -> None:
        reset_server()
        with pytest.raises(RuntimeError):
            get_service()


class TestTools:
    def test_save_and_get(self, server) -> None:
        saved = _call(
            server,
            "save_update",
            {"content": "Deploy finished", "category": "deployment", "priority": "critical"},
        )
        assert saved["error"] is False
        assert saved["category"] == "deployment"
        context = _call(server, "get_context", {"category": "all"})
        assert context["data"]["updates"][0]["content"] == "Deploy finished"

    def test_save_without_content_is_error_result(self, server) -> None:
        result = _call(server, "save_update", {})
        assert result["error"] is True
        assert result["error_type"] == "ValidationError"

    def test_get_context_defaults_to_all(self, server) -> None:
        result = _call(server, "get_context")
        assert result["category"] == "all"
        assert "server" in result["data"]

    def test_update_server_merge(self, server) -> None:
        _call(server, "update_server", {"ip": "1.2.3.4", "environment": "staging"})
        result = _call(
            server,
            "update_server",
            {"ip": "1.2.3.4", "status": "maintenance", "environment": "staging"},
        )
        assert result["server"]["status"] == "maintenance"
        assert result["server"]["environment"] == "staging"

    def test_checkpoint_lifecycle(self, server) -> None:
        _call(server, "save_update", {"content": "v1"})
        created = _call(server, "create_checkpoint", {"description": "v1"})
        _call(server, "save_update", {"content": "v2"})

        fetched = _call(server, "get_checkpoint", {"checkpoint_id": created["id"]})
        assert [u["content"] for u in fetched["context"]["updates"]] == ["v1"]

        listing = _call(server, "list_checkpoints")
        assert listing["checkpoints"][0]["id"] == created["id"]

        restored = _call(server, "restore_checkpoint", {"checkpoint_id": created["id"]})
        assert restored["error"] is False

    def test_health_check(self, server) -> None:
        from project_memory_keeper import __version__

        result = _call(server, "health_check")
        assert result["server_version"] == __version__
        assert result["status"] == "healthy"
