"""Tests for configuration and content type models."""

import shutil
import tempfile
from pathlib import Path

import pytest

from cortexsync.core.errors import ConfigError, MissingCredential, ModuleDisabled
from cortexsync.models.config import (
    InstanceConfig,
    ModuleConfig,
    expand_env_vars,
    find_instances,
    init_instance,
    resolve_credentials,
)
from cortexsync.models.content_types import ContentTypeDescriptor, JsonCollection


def write_config(root: Path, text: str) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    (root / "config.toml").write_text(text)
    return root


class TestExpandEnvVars:
    """Tests for ${VAR} expansion."""

    def test_whole_value(self) -> None:
        assert expand_env_vars("${HOST}", {"HOST": "t.example.com"}) == "t.example.com"

    def test_embedded(self) -> None:
        assert expand_env_vars("api-${HOST}", {"HOST": "t"}) == "api-t"

    def test_unset_is_empty(self) -> None:
        assert expand_env_vars("${MISSING}", {}) == ""

    def test_literal(self) -> None:
        assert expand_env_vars("plain", {}) == "plain"


class TestResolveCredentials:
    """Tests for credential resolution."""

    def test_configured_values(self) -> None:
        config = ModuleConfig(fqdn="${F}", api_key="key", api_key_id="${ID}")

        creds = resolve_credentials("xsiam", config, {"F": "https://t.example.com/", "ID": "9"})

        assert creds.fqdn == "t.example.com"
        assert creds.api_key == "key"
        assert creds.api_key_id == "9"

    def test_fallback_variables(self) -> None:
        config = ModuleConfig(fqdn="${UNSET}", api_key="", api_key_id="")
        environ = {
            "DEMISTO_BASE_URL": "https://api-t.example.com/",
            "DEMISTO_API_KEY": "fallback-key",
            "XSIAM_AUTH_ID": "5",
        }

        creds = resolve_credentials("appsec", config, environ)

        assert creds.fqdn == "api-t.example.com"
        assert creds.api_key == "fallback-key"
        assert creds.api_key_id == "5"

    def test_missing_credential(self) -> None:
        config = ModuleConfig(fqdn="t.example.com", api_key="k", api_key_id="")

        with pytest.raises(MissingCredential) as exc_info:
            resolve_credentials("xsiam", config, {})

        assert exc_info.value.field_name == "api_key_id"
        assert exc_info.value.fallback_var == "XSIAM_AUTH_ID"
        assert exc_info.value.module == "xsiam"

    def test_disabled_module(self) -> None:
        with pytest.raises(ModuleDisabled):
            resolve_credentials("appsec", ModuleConfig(enabled=False), {})


class TestInstanceConfig:
    """Tests for InstanceConfig loading."""

    def test_load_modules(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = write_config(Path(tmpdir) / "prod", """
instance_name = "prod"

[modules.xsiam]
enabled = true
fqdn = "t.example.com"
api_key = "k"
api_key_id = "1"

[modules.appsec]
enabled = false

[settings]
timeout = 30
max_attempts = 5
""")

            config = InstanceConfig.load(root)

            assert config.name == "prod"
            assert config.is_enabled("xsiam")
            assert not config.is_enabled("appsec")
            assert config.settings.timeout == 30.0
            assert config.settings.max_attempts == 5
            assert config.settings.stale_lock_hours == 6.0
            assert config.credentials("xsiam", {}).api_key == "k"

    def test_legacy_xsiam_table(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = write_config(Path(tmpdir) / "old", """
[xsiam]
fqdn = "t.example.com"
api_key = "k"
api_key_id = "1"
""")

            config = InstanceConfig.load(root)

            assert config.name == "old"
            assert config.is_enabled("xsiam")
            assert config.credentials("xsiam", {}).fqdn == "t.example.com"

    def test_unconfigured_module(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = InstanceConfig.load(write_config(Path(tmpdir) / "i", "[modules]\n"))

            with pytest.raises(ConfigError, match="not configured"):
                config.credentials("appsec", {})

    def test_missing_instance(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(ConfigError, match="not found"):
                InstanceConfig.load(Path(tmpdir) / "nowhere")

    def test_invalid_toml(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = write_config(Path(tmpdir) / "bad", "[modules.xsiam\n")

            with pytest.raises(ConfigError, match="Failed to parse"):
                InstanceConfig.load(root)


class TestFindInstances:
    """Tests for instance discovery."""

    def test_directories_with_config_only(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            base = Path(tmpdir)
            write_config(base / "prod", "")
            write_config(base / "lab", "")
            (base / "scratch").mkdir()
            (base / "config.toml").write_text("")

            assert [p.name for p in find_instances(base)] == ["lab", "prod"]

    def test_missing_base(self) -> None:
        assert find_instances(Path("/nonexistent/cortexsync")) == []


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestInitInstance:
    """Tests for instance creation."""

    def test_creates_layout(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir) / "lab"

            init_instance(root, {"xsiam": ["scripts", "dashboards"], "appsec": ["rules"]})

            assert (root / "xsiam" / "scripts").is_dir()
            assert (root / "appsec" / "rules").is_dir()
            assert (root / ".git").is_dir()
            assert "*.toml" in (root / ".gitignore").read_text().splitlines()
            assert ".cortexsync.lock*" in (root / ".gitignore").read_text().splitlines()

            config = InstanceConfig.load(root)
            assert config.name == "lab"
            assert config.is_enabled("xsiam") and config.is_enabled("appsec")
            assert config.module("xsiam").fqdn == "${XSIAM_FQDN}"

    def test_refuses_existing_instance(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = write_config(Path(tmpdir) / "lab", "")

            with pytest.raises(ConfigError, match="already initialized"):
                init_instance(root, {"xsiam": []})


class TestContentTypeDescriptor:
    """Tests for ContentTypeDescriptor model."""

    def test_defaults(self) -> None:
        ct = ContentTypeDescriptor(name="policies", endpoint="appsec/v1/policies", id_field="id")

        assert isinstance(ct.pull_strategy, JsonCollection)
        assert ct.method == "GET"
        assert ct.strategy_name == "JsonCollection"
        assert ct.singular == "policy"

    def test_identifier_is_string(self) -> None:
        ct = ContentTypeDescriptor(name="widgets", endpoint="w", id_field="creation_time")

        assert ct.identifier_of({"creation_time": 1706616341000}) == "1706616341000"
        assert ct.identifier_of({"creation_time": ""}) is None
