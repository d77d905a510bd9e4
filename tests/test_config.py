"""Tests for configuration loading.

Covers defaults, the OWDEBUG_* environment overrides, the owdebug.toml file
and the ~/.wskprops fallback for OpenWhisk credentials.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import make_settings
from pydantic import ValidationError

from owdebug.config import (
    OpenWhiskConfig,
    RelayConfig,
    Settings,
    get_settings,
    read_wskprops,
    reset_settings,
)
from owdebug.types import BuildConfig


class TestDefaults:
    def test_relay_defaults(self):
        relay = Settings().relay
        assert relay.give_up_backoff == 2.0
        assert relay.error_backoff == 1.0
        assert relay.max_give_ups == 5
        assert relay.report_attempts == 3
        assert relay.agent_path is None

    def test_no_build_by_default(self):
        assert make_settings().build_config is None

    def test_project_root_defaults_to_cwd(self):
        assert make_settings().project_root == Path.cwd().resolve()

    def test_singleton_is_cached_until_reset(self):
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first


class TestValidation:
    def test_unknown_keys_fail_loudly(self):
        with pytest.raises(ValidationError):
            make_settings(relay={"max_giveups": 3})

    def test_counts_are_at_least_one(self):
        relay = RelayConfig(max_give_ups=0, report_attempts=-2)
        assert relay.max_give_ups == 1
        assert relay.report_attempts == 1

    def test_build_timeout_must_be_positive(self):
        with pytest.raises(ValidationError, match="positive"):
            make_settings(build={"command": "make", "timeout": 0})

    def test_api_host_is_normalized(self):
        assert OpenWhiskConfig(api_host="whisk.example.com/").api_host == (
            "https://whisk.example.com"
        )
        assert OpenWhiskConfig(api_host="http://localhost:3233").api_host == (
            "http://localhost:3233"
        )

    def test_log_level_is_upper_cased(self):
        assert make_settings(logging={"level": "debug"}).logging.level == "DEBUG"


class TestSources:
    def test_env_overrides_nested_values(self, monkeypatch):
        monkeypatch.setenv("OWDEBUG_RELAY__MAX_GIVE_UPS", "9")
        monkeypatch.setenv("OWDEBUG_ACTION__NAME", "from-env")
        s = Settings()
        assert s.relay.max_give_ups == 9
        assert s.action.name == "from-env"

    def test_toml_file_is_read(self):
        Path("owdebug.toml").write_text(
            '[action]\nname = "hello"\nsource_path = "src/index.js"\n\n'
            "[container]\nport = 9400\n"
        )
        s = Settings()
        assert s.action.name == "hello"
        assert s.action.source_path == "src/index.js"
        assert s.container.port == 9400

    def test_init_values_merge_over_toml(self):
        Path("owdebug.toml").write_text('[action]\nname = "hello"\nkind = "nodejs:18"\n')
        s = Settings(action={"source_path": "index.js"})
        assert s.action.source_path == "index.js"
        assert s.action.kind == "nodejs:18"

    def test_wskprops_feed_openwhisk_section(self, tmp_path, monkeypatch):
        props = tmp_path / "wskprops"
        props.write_text("APIHOST=whisk.example.com\nAUTH=uuid:key\nNAMESPACE=team\n")
        monkeypatch.setenv("WSK_CONFIG_FILE", str(props))

        ow = Settings().openwhisk

        assert ow.api_host == "https://whisk.example.com"
        assert ow.auth.get_secret_value() == "uuid:key"
        assert ow.namespace == "team"

    def test_env_beats_wskprops(self, tmp_path, monkeypatch):
        props = tmp_path / "wskprops"
        props.write_text("APIHOST=whisk.example.com\n")
        monkeypatch.setenv("WSK_CONFIG_FILE", str(props))
        monkeypatch.setenv("OWDEBUG_OPENWHISK__API_HOST", "http://localhost:3233")

        assert Settings().openwhisk.api_host == "http://localhost:3233"


class TestReadWskprops:
    def test_parses_known_keys_only(self, tmp_path):
        props = tmp_path / "wskprops"
        props.write_text(
            "# written by wsk\nAPIHOST = whisk.example.com \nAPIGW_ACCESS_TOKEN=x\n\nbogus line\n"
        )
        assert read_wskprops(props) == {"api_host": "whisk.example.com"}

    def test_missing_file(self, tmp_path):
        assert read_wskprops(tmp_path / "nope") == {}


class TestComputed:
    def test_build_config_uses_artifact_path(self):
        s = make_settings(build={"command": "npm run build", "artifact_path": "dist/main.js"})
        assert s.build_config == BuildConfig("npm run build", "dist/main.js", 300.0)

    def test_build_artifact_falls_back_to_source(self):
        s = make_settings(action={"source_path": "dist/main.js"}, build={"command": "make"})
        assert s.build_config.artifact_path == "dist/main.js"

    def test_build_without_artifact_is_an_error(self):
        with pytest.raises(ValueError, match="artifact_path"):
            make_settings(build={"command": "make"}).build_config

    def test_project_root_is_resolved(self, tmp_path):
        s = make_settings(action={"project_root": str(tmp_path / "proj" / "..")})
        assert s.project_root == tmp_path.resolve()

    def test_host_ip_prefers_docker_host_ip(self, monkeypatch):
        s = make_settings(container={"host_ip": "10.0.0.5"})
        assert s.host_ip == "10.0.0.5"
        monkeypatch.setenv("DOCKER_HOST_IP", "192.168.99.100")
        assert s.host_ip == "192.168.99.100"
