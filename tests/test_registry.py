"""Tests for the capability registry and workspace root discovery."""

import pytest

from lspbridge.lsp.registry import (
    CapabilityRegistry,
    ExtensionMapping,
    Found,
    NotConfigured,
    ServerCommand,
    normalize_extension,
)
from lspbridge.lsp.workspace import WorkspaceProvider, file_extension
from lspbridge.types.errors import ConfigurationError

GLEAM = ServerCommand(name="gleam", command="gleam", args=("lsp",))
OTHER = ServerCommand(name="other", command="other-ls")


# ---------------------------------------------------------------------------
# CapabilityRegistry
# ---------------------------------------------------------------------------


class TestNormalizeExtension:
    @pytest.mark.parametrize("raw", ["gleam", ".gleam", ".GLEAM", " Gleam "])
    def test_forms(self, raw):
        assert normalize_extension(raw) == ".gleam"

    def test_empty(self):
        assert normalize_extension("") == ""


class TestCapabilityRegistry:
    def test_resolve_configured_extension(self):
        registry = CapabilityRegistry.from_servers([(GLEAM, {".gleam": "gleam"})])
        match registry.resolve(".gleam"):
            case Found(language_id=language_id, server=server):
                assert language_id == "gleam"
                assert server.argv == ["gleam", "lsp"]
            case other:
                pytest.fail(f"unexpected resolution {other!r}")

    def test_resolve_is_case_insensitive(self):
        registry = CapabilityRegistry.from_servers([(GLEAM, {".gleam": "gleam"})])
        assert isinstance(registry.resolve(".GLEAM"), Found)

    def test_unknown_extension_is_not_configured(self):
        registry = CapabilityRegistry.from_servers([(GLEAM, {".gleam": "gleam"})])
        assert registry.resolve(".rs") == NotConfigured(".rs")
        assert registry.resolve("") == NotConfigured("")

    def test_one_server_many_languages(self):
        registry = CapabilityRegistry.from_servers([(GLEAM, {".gleam": "gleam", ".mjs": "javascript"})])
        assert registry.languages() == ["gleam", "javascript"]
        assert registry.extensions() == [".gleam", ".mjs"]
        assert registry.server_for_language("javascript") is GLEAM
        assert registry.server_for_language("rust") is None
        assert len(registry) == 2

    def test_conflicting_claims_rejected(self):
        with pytest.raises(ConfigurationError, match="claimed by both"):
            CapabilityRegistry.from_servers([(GLEAM, {".gleam": "gleam"}), (OTHER, {"GLEAM": "gleam"})])

    def test_same_server_may_repeat_extension(self):
        registry = CapabilityRegistry([
            ExtensionMapping(".gleam", "gleam", GLEAM),
            ExtensionMapping("gleam", "gleam", GLEAM),
        ])
        assert len(registry) == 1

    def test_empty_extension_rejected(self):
        with pytest.raises(ConfigurationError):
            CapabilityRegistry([ExtensionMapping("  ", "x", GLEAM)])

    def test_table_is_read_only(self):
        registry = CapabilityRegistry.from_servers([(GLEAM, {".gleam": "gleam"})])
        with pytest.raises(TypeError):
            registry._table[".rs"] = None


# ---------------------------------------------------------------------------
# WorkspaceProvider
# ---------------------------------------------------------------------------


class TestWorkspaceProvider:
    def test_nearest_marker_wins(self, tmp_path):
        outer = tmp_path / "outer"
        inner = outer / "packages" / "inner"
        (inner / "src").mkdir(parents=True)
        (outer / "gleam.toml").write_text("")
        (inner / "gleam.toml").write_text("")
        source = inner / "src" / "mod.gleam"
        source.write_text("")

        provider = WorkspaceProvider()
        assert provider.find_project_root(source) == inner
        assert provider.find_project_root(outer / "packages" / "x.gleam") == outer

    def test_no_marker_means_no_root(self, tmp_path):
        (tmp_path / "loose.gleam").write_text("")
        assert WorkspaceProvider(["no-such-marker.toml"]).find_project_root(tmp_path / "loose.gleam") is None

    def test_relative_path_is_made_absolute(self, tmp_path, monkeypatch):
        (tmp_path / "gleam.toml").write_text("")
        (tmp_path / "src").mkdir()
        monkeypatch.chdir(tmp_path)
        assert WorkspaceProvider().find_project_root("src/app.gleam") == tmp_path

    def test_directory_named_like_marker_is_ignored(self, tmp_path):
        (tmp_path / "gleam.toml").mkdir()
        assert WorkspaceProvider(["gleam.toml"]).find_project_root(tmp_path / "a.gleam") != tmp_path

    def test_per_call_markers(self, tmp_path):
        (tmp_path / "Cargo.toml").write_text("")
        provider = WorkspaceProvider()
        assert provider.find_project_root(tmp_path / "main.rs", ["Cargo.toml"]) == tmp_path

    def test_has_marker(self, tmp_path):
        provider = WorkspaceProvider()
        assert not provider.has_marker(tmp_path)
        (tmp_path / "gleam.toml").write_text("")
        assert provider.has_marker(tmp_path)
        assert provider.markers == ("gleam.toml",)

    def test_file_extension(self):
        assert file_extension("/a/b/app.gleam") == ".gleam"
        assert file_extension("/a/Makefile") == ""
