"""
Tests for settings loading and capability server config parsing.
"""

import json

import pytest

from pysuperagent.config import loader
from pysuperagent.config.loader import MODEL_ENV, load_settings, parse_servers
from pysuperagent.config.models import DEFAULT_MAX_TOOL_ROUNDS
from pysuperagent.mcp.models import CapabilityServerConfig


@pytest.fixture
def project(temp_dir, monkeypatch):
    """A project directory with no global settings and no model override."""
    home = temp_dir / "home"
    work = temp_dir / "work"
    work.mkdir()
    monkeypatch.setattr(loader, "_global_paths", lambda: [home / "settings.json"])
    monkeypatch.delenv(MODEL_ENV, raising=False)
    return work


def write_json(path, obj):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(obj))


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_defaults(self, project):
        cfg = load_settings(cwd=project)
        assert cfg.model is None
        assert cfg.max_tool_rounds == DEFAULT_MAX_TOOL_ROUNDS
        assert cfg.capability_servers == {}
        assert cfg.plugins == []
        assert cfg.loaded_from == []

    def test_merge_order(self, project, temp_dir):
        write_json(temp_dir / "home" / "settings.json", {"model": "global-model", "tool_timeout": 30})
        write_json(project / ".pysuperagent" / "settings.json", {"model": "project-model"})
        explicit = temp_dir / "extra.json"
        write_json(explicit, {"max_tool_rounds": 12})

        cfg = load_settings(cwd=project, explicit_path=explicit)
        assert cfg.model == "project-model"
        assert cfg.tool_timeout == 30
        assert cfg.max_tool_rounds == 12
        assert len(cfg.loaded_from) == 3

    def test_invalid_values_fall_back(self, project):
        write_json(project / ".pysuperagent" / "settings.json", {
            "max_tool_rounds": 0,
            "tool_timeout": "soon",
            "max_parallel_tools": True,
            "stream": "yes",
        })
        cfg = load_settings(cwd=project)
        assert cfg.max_tool_rounds == DEFAULT_MAX_TOOL_ROUNDS
        assert cfg.tool_timeout == 120
        assert cfg.max_parallel_tools == 4
        assert cfg.stream is True

    def test_unreadable_file_is_skipped(self, project):
        path = project / ".pysuperagent" / "settings.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        cfg = load_settings(cwd=project)
        assert cfg.loaded_from == []

    def test_servers_and_mcp_json(self, project):
        write_json(project / ".pysuperagent" / "settings.json", {
            "mcpServers": {
                "git-tools": {"command": "git-mcp", "args": ["--repo", "."]},
                "search": {"url": "http://localhost:9000/sse"},
            },
            "plugins": ["my_plugins.notify", "", 3],
        })
        write_json(project / ".mcp.json", {
            "mcpServers": {"git-tools": {"command": ["uvx", "git-mcp-server"]}},
        })

        cfg = load_settings(cwd=project)
        git = cfg.capability_servers["git-tools"]
        assert git.command == "uvx"
        assert git.args == ["git-mcp-server"]
        assert cfg.capability_servers["search"].transport == "sse"
        assert cfg.plugins == ["my_plugins.notify"]
        assert project / ".mcp.json" in cfg.loaded_from

    def test_env_model_wins(self, project, monkeypatch):
        write_json(project / ".pysuperagent" / "settings.json", {"model": "project-model"})
        monkeypatch.setenv(MODEL_ENV, "env-model")
        assert load_settings(cwd=project).model == "env-model"


class TestServerConfig:
    """Tests for CapabilityServerConfig parsing."""

    def test_nested_transport(self):
        servers = parse_servers({
            "remote": {"transport": {"type": "sse", "url": "https://tools.example.com/sse"}},
            "local": {"transport": {"type": "stdio", "command": "node", "args": ["server.js"]}},
        })
        assert servers["remote"].url == "https://tools.example.com/sse"
        assert servers["local"].describe() == "node server.js"

    @pytest.mark.parametrize(
        "entry",
        [
            "git-mcp",
            {"transport": "carrier-pigeon", "command": "x"},
            {"command": 42},
            {"transport": "sse"},
            {},
        ],
    )
    def test_invalid_entries_are_skipped(self, entry):
        assert parse_servers({"bad": entry}) == {}

    def test_name_cannot_contain_separator(self):
        with pytest.raises(ValueError):
            CapabilityServerConfig(name="a:b", command="x")
        assert parse_servers({"a:b": {"command": "x"}}) == {}

    def test_to_obj(self):
        cfg = CapabilityServerConfig(name="git", command="git-mcp", args=["-v"], env={"TOKEN": "t"})
        assert cfg.to_obj() == {"transport": "stdio", "command": "git-mcp", "args": ["-v"], "env": {"TOKEN": "t"}}
