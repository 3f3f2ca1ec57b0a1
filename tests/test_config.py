"""Tests for configuration loading."""

import json

import pytest

from lspbridge.config import (
    CONFIG_PATH_ENV,
    DEFAULT_SERVERS,
    BridgeSettings,
    load_config,
    load_config_file,
    load_default_config,
    parse_server,
)
from lspbridge.constants import DEFAULT_LAUNCH_TIMEOUT
from lspbridge.lsp.registry import Found
from lspbridge.types.errors import ConfigurationError

PLUGIN_ENTRY = {
    "command": "gleam",
    "args": ["lsp"],
    "extensionToLanguage": {".gleam": "gleam"},
}


class TestParseServer:
    def test_minimal_entry(self):
        server, ext_map = parse_server("gleam", PLUGIN_ENTRY)
        assert server.argv == ["gleam", "lsp"]
        assert ext_map == {".gleam": "gleam"}
        assert server.project_markers == ("gleam.toml",)
        assert server.restart_on_crash is True

    def test_optional_fields(self):
        server, _ = parse_server("gleam", {
            **PLUGIN_ENTRY,
            "env": {"GLEAM_LOG": "debug", "N": 1},
            "initializationOptions": {"a": 1},
            "settings": {"gleam": {"inlayHints": True}},
            "projectMarkers": "manifest.toml",
            "startupTimeout": 1500,
            "shutdownTimeout": 250,
            "maxRestarts": 5,
            "restartOnCrash": False,
        })
        assert server.env == {"GLEAM_LOG": "debug", "N": "1"}
        assert server.initialization_options == {"a": 1}
        assert server.settings == {"gleam": {"inlayHints": True}}
        assert server.project_markers == ("manifest.toml",)
        assert server.startup_timeout == pytest.approx(1.5)
        assert server.shutdown_timeout == pytest.approx(0.25)
        assert server.max_restarts == 5
        assert server.restart_on_crash is False

    @pytest.mark.parametrize(
        "patch",
        [
            {"command": ""},
            {"command": 3},
            {"args": "lsp"},
            {"args": [1]},
            {"extensionToLanguage": [".gleam"]},
            {"extensionToLanguage": {".gleam": 1}},
            {"env": ["A=1"]},
            {"startupTimeout": -1},
            {"startupTimeout": "fast"},
            {"maxRestarts": 1.5},
            {"maxRestarts": True},
            {"projectMarkers": 3},
            {"projectMarkers": [1]},
            {"projectMarkers": [""]},
            {"restartOnCrash": "false"},
            {"restartOnCrash": 0},
        ],
    )
    def test_invalid_entries(self, patch):
        with pytest.raises(ConfigurationError):
            parse_server("gleam", {**PLUGIN_ENTRY, **patch})

    def test_missing_extension_map(self):
        with pytest.raises(ConfigurationError, match="extensionToLanguage"):
            parse_server("gleam", {"command": "gleam"})


class TestLoadConfig:
    def test_single_entry_layout(self):
        config = load_config(PLUGIN_ENTRY, environ={})
        assert [s.name for s, _ in config.servers] == ["gleam"]
        assert isinstance(config.registry().resolve(".gleam"), Found)

    def test_named_entries_layout(self):
        config = load_config(
            {"gleam": PLUGIN_ENTRY, "erlang": {"command": "erlang_ls", "extensionToLanguage": {".erl": "erlang"}}},
            environ={},
        )
        assert config.registry().languages() == ["erlang", "gleam"]

    def test_servers_key_layout_with_bridge_section(self):
        config = load_config(
            {"servers": {"gleam": PLUGIN_ENTRY}, "bridge": {"launchTimeout": 5, "maxRestarts": 1}},
            environ={},
        )
        assert config.settings.launch_timeout == 5
        assert config.settings.max_restarts == 1

    def test_conflicting_extensions_rejected_at_load(self):
        with pytest.raises(ConfigurationError):
            load_config(
                {"a": PLUGIN_ENTRY, "b": {**PLUGIN_ENTRY, "command": "other"}},
                environ={},
            )

    def test_unknown_bridge_setting_rejected(self):
        with pytest.raises(ConfigurationError, match="Unknown bridge settings"):
            load_config({**PLUGIN_ENTRY, "bridge": {"speed": "fast"}}, environ={})

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError):
            load_config(["gleam"], environ={})

    def test_project_markers_union(self):
        config = load_config(
            {
                "gleam": PLUGIN_ENTRY,
                "rust": {"command": "ra", "extensionToLanguage": {".rs": "rust"}, "projectMarkers": ["Cargo.toml"]},
            },
            environ={},
        )
        assert config.project_markers() == ("gleam.toml", "Cargo.toml")

    def test_default_servers(self):
        config = load_config(DEFAULT_SERVERS, environ={})
        assert config.servers[0][0].argv == ["gleam", "lsp"]


class TestSettings:
    def test_defaults(self):
        settings = BridgeSettings()
        assert settings.launch_timeout == DEFAULT_LAUNCH_TIMEOUT
        assert settings.request_timeout is None

    def test_env_overrides(self):
        settings = BridgeSettings().with_env_overrides({
            "LSPBRIDGE_LAUNCH_TIMEOUT": "2.5",
            "LSPBRIDGE_MAX_RESTARTS": "7",
            "LSPBRIDGE_REQUEST_TIMEOUT": "10",
            "UNRELATED": "x",
        })
        assert settings.launch_timeout == 2.5
        assert settings.max_restarts == 7
        assert settings.request_timeout == 10.0

    def test_env_none_clears_optional_timeout(self):
        settings = BridgeSettings(request_timeout=3).with_env_overrides({"LSPBRIDGE_REQUEST_TIMEOUT": "none"})
        assert settings.request_timeout is None

    def test_invalid_env_value(self):
        with pytest.raises(ConfigurationError, match="LSPBRIDGE_MAX_RESTARTS"):
            BridgeSettings().with_env_overrides({"LSPBRIDGE_MAX_RESTARTS": "many"})

    def test_no_overrides_returns_same_object(self):
        settings = BridgeSettings()
        assert settings.with_env_overrides({}) is settings

    def test_restart_policy(self):
        policy = BridgeSettings(max_restarts=2, restart_base_delay=0.1).restart_policy()
        assert policy.max_restarts == 2
        assert policy.base_delay == 0.1
        assert BridgeSettings().restart_policy(max_restarts=9).max_restarts == 9


class TestConfigFiles:
    def test_load_file(self, tmp_path):
        path = tmp_path / "lsp.json"
        path.write_text(json.dumps({"gleam": PLUGIN_ENTRY}))
        config = load_config_file(path, environ={})
        assert config.registry().extensions() == [".gleam"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config_file(tmp_path / "missing.json", environ={})

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            load_config_file(path, environ={})

    def test_default_config_from_env_path(self, tmp_path):
        path = tmp_path / "lsp.json"
        path.write_text(json.dumps({**PLUGIN_ENTRY, "command": "custom-gleam"}))
        config = load_default_config({CONFIG_PATH_ENV: str(path)})
        assert config.servers[0][0].command == "custom-gleam"

    def test_default_config_builtin(self):
        config = load_default_config({})
        assert config.registry().languages() == ["gleam"]
