"""
Tests for configuration layering and the bootstrap context.
"""
import json
import os
from pathlib import Path

import pytest

from config import (
    BINARY_NO_VALIDATION_ENV,
    BINARY_NO_VALIDATION_KEY,
    ConfigurationBuilder,
    ConfigurationSnapshot,
    ServerPaths,
    StartupOptions,
    parse_overrides,
)
from core.bootstrap import BootstrapOrchestrator
from core.context import build_context
from core.errors import ConfigError


class TestServerPaths:
    """Tests for path defaults."""

    def test_defaults_are_under_program_data(self, tmp_path):
        paths = StartupOptions(data_dir=tmp_path).to_paths()

        assert paths.program_data == tmp_path
        assert paths.log_dir == tmp_path / "logs"
        assert paths.config_dir == tmp_path / "config"
        assert paths.cache_dir == tmp_path / "cache"
        assert paths.web_dir == tmp_path / "web"
        assert paths.all()[0] == tmp_path

    def test_explicit_directories_win(self, tmp_path):
        options = StartupOptions(data_dir=tmp_path / "data", log_dir=tmp_path / "elsewhere")

        assert options.to_paths().log_dir == tmp_path / "elsewhere"

    def test_paths_are_immutable(self, tmp_path):
        paths = ServerPaths.from_root(tmp_path)

        with pytest.raises(AttributeError):
            paths.log_dir = tmp_path


class TestConfigurationLayering:
    """Tests for overlay precedence."""

    def test_environment_overrides_default_overlay(self, startup_options):
        context = build_context(startup_options, environ={"STAGEWISE_A": "2"}, defaults={"A": "1"})

        assert context.configuration["A"] == "2"

    def test_orchestrator_forwards_default_overlay(self, startup_options):
        context = BootstrapOrchestrator.build_context(
            startup_options, environ={"STAGEWISE_A": "2"}, defaults={"A": "1", "B": "3"}
        )

        assert context.configuration["A"] == "2"
        assert context.configuration["B"] == "3"

    def test_command_line_overrides_environment(self, data_dir):
        options = StartupOptions(data_dir=data_dir, settings={"network:port": "9000"})

        context = build_context(options, environ={"STAGEWISE_NETWORK__PORT": "7000"})

        assert context.configuration.get_int("network:port") == 9000

    def test_settings_file_is_lowest(self, data_dir):
        config_dir = data_dir / "config"
        config_dir.mkdir(parents=True)
        (config_dir / "settings.json").write_text(json.dumps({
            "network": {"port": 1234, "published-url": "http://media.local"},
            "web": {"host-client": False},
        }))

        context = build_context(StartupOptions(data_dir=data_dir), environ={})

        # DEFAULT_CONFIGURATION sits above the file
        assert context.configuration["network:port"] == "8096"
        assert context.configuration["network:published-url"] == "http://media.local"
        assert context.configuration["web:host-client"] == "true"

    def test_environment_prefix_is_case_insensitive(self, startup_options):
        context = build_context(startup_options, environ={"stagewise_Status__Heartbeat-Seconds": "5"})

        assert context.configuration.get_int("status:heartbeat-seconds") == 5

    def test_unprefixed_environment_is_ignored(self, startup_options):
        context = build_context(startup_options, environ={"NETWORK__PORT": "1"})

        assert context.configuration["network:port"] == "8096"

    def test_validation_bypass_variable(self, startup_options):
        context = build_context(startup_options, environ={BINARY_NO_VALIDATION_ENV: "true"})

        assert context.configuration.get_bool(BINARY_NO_VALIDATION_KEY)

    def test_startup_options_overlay(self, data_dir):
        options = StartupOptions(
            data_dir=data_dir,
            no_web_client=True,
            published_server_url="https://example.test",
            binary_path="/opt/bin/encoder",
        )

        configuration = build_context(options, environ={}).configuration

        assert configuration.get_bool("web:host-client", True) is False
        assert configuration["network:published-url"] == "https://example.test"
        assert configuration["binary:path"] == "/opt/bin/encoder"

    def test_context_does_not_create_directories(self, startup_options, data_dir):
        build_context(startup_options, environ={})

        assert not data_dir.exists()

    def test_context_is_frozen(self, bootstrap_context):
        with pytest.raises(AttributeError):
            bootstrap_context.options = StartupOptions()


class TestConfigurationSnapshot:
    """Tests for ConfigurationSnapshot helpers."""

    def test_keys_are_case_insensitive(self):
        snapshot = ConfigurationBuilder().add_mapping({"Network:Port": 1}).build()

        assert snapshot["network:port"] == "1"
        assert "NETWORK:PORT" in snapshot

    @pytest.mark.parametrize("value,expected", [
        ("true", True), ("1", True), ("YES", True), ("on", True),
        ("false", False), ("0", False), ("", False),
    ])
    def test_get_bool(self, value, expected):
        assert ConfigurationSnapshot({"flag": value}).get_bool("flag") is expected

    def test_get_int_rejects_garbage(self):
        with pytest.raises(ConfigError) as exc_info:
            ConfigurationSnapshot({"port": "eighty"}).get_int("port")

        assert exc_info.value.config_key == "port"

    def test_section(self):
        snapshot = ConfigurationSnapshot({"network:port": "1", "network:published-url": "u", "web:x": "y"})

        assert snapshot.section("network") == {"port": "1", "published-url": "u"}

    def test_booleans_are_stringified(self):
        snapshot = ConfigurationBuilder().add_mapping({"a": True, "b": False}).build()

        assert dict(snapshot) == {"a": "true", "b": "false"}


class TestConfigErrors:
    """Tests for malformed input."""

    @pytest.mark.parametrize("entry", ["novalue", "=value", "  =x"])
    def test_parse_overrides_rejects_malformed(self, entry):
        with pytest.raises(ConfigError):
            parse_overrides([entry])

    def test_parse_overrides(self):
        assert parse_overrides(["a=1", "b:c=x=y", "empty="]) == {"a": "1", "b:c": "x=y", "empty": ""}

    def test_malformed_settings_file(self, data_dir):
        config_dir = data_dir / "config"
        config_dir.mkdir(parents=True)
        (config_dir / "settings.json").write_text("{not json")

        with pytest.raises(ConfigError, match="malformed"):
            build_context(StartupOptions(data_dir=data_dir), environ={})

    def test_settings_file_must_be_object(self, data_dir):
        config_dir = data_dir / "config"
        config_dir.mkdir(parents=True)
        (config_dir / "settings.json").write_text("[1, 2]")

        with pytest.raises(ConfigError, match="JSON object"):
            build_context(StartupOptions(data_dir=data_dir), environ={})

    def test_empty_overlay_key(self, startup_options):
        with pytest.raises(ConfigError, match="empty key"):
            build_context(startup_options, environ={}, defaults={"": "x"})

    def test_non_scalar_overlay_value(self, data_dir):
        options = StartupOptions(data_dir=data_dir, settings={"a": ["not", "scalar"]})

        with pytest.raises(ConfigError, match="unsupported value type"):
            build_context(options, environ={})

    def test_path_under_a_file(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(ConfigError, match="not a directory"):
            build_context(StartupOptions(data_dir=blocker / "data"), environ={})

    @pytest.mark.skipif(
        not hasattr(os, "geteuid") or os.geteuid() == 0,
        reason="permission bits are not enforced for root",
    )
    def test_unwritable_directory(self, tmp_path):
        locked = tmp_path / "locked"
        locked.mkdir()
        locked.chmod(0o500)
        try:
            with pytest.raises(ConfigError, match="not writable"):
                build_context(StartupOptions(data_dir=locked / "data"), environ={})
        finally:
            locked.chmod(0o700)
