# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for proxynode/config.py."""

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from proxynode.config import (
    ConfigError,
    EngineConfig,
    HostConfig,
    InstancesConfig,
    MeteringConfig,
    ServerConfig,
    _coerce_bool,
    _EnvVar,
    _make_loader,
    _resolve,
    _resolve_string_list,
    get_config_path,
)
from proxynode.logging import SecretFilter


@pytest.fixture(autouse=True)
def _no_dotenv() -> Iterator[None]:
    """Keep developer .env files out of config tests."""
    with patch("proxynode.config.load_dotenv_once"):
        yield


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "proxynode.yaml"
    path.write_text(text)
    return path


class TestCoerceBool:
    """Tests for _coerce_bool."""

    def test_bool_passthrough(self) -> None:
        assert _coerce_bool(True) is True
        assert _coerce_bool(False) is False

    def test_strings(self) -> None:
        assert _coerce_bool("Yes") is True
        assert _coerce_bool(" off ") is False

    def test_invalid_raises(self) -> None:
        with pytest.raises(ConfigError, match="bool"):
            _coerce_bool("maybe")


class TestResolve:
    """Tests for _resolve."""

    def test_literal(self) -> None:
        assert _resolve("x", str) == "x"
        assert _resolve(5, int) == 5

    def test_int_to_float(self) -> None:
        assert _resolve(60, float, default=1.0) == 60.0

    def test_envvar(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PN_TEST_PORT", "5400")
        assert _resolve(_EnvVar("PN_TEST_PORT"), int, default=1) == 5400

    def test_envvar_unset_uses_default(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("PN_TEST_UNSET", raising=False)
        assert _resolve(_EnvVar("PN_TEST_UNSET"), str, default="d") == "d"

    def test_required_envvar_missing(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("PN_TEST_UNSET", raising=False)
        with pytest.raises(ConfigError, match="PN_TEST_UNSET"):
            _resolve(_EnvVar("PN_TEST_UNSET"), str, required="collector.url")

    def test_path_expanduser(self) -> None:
        assert _resolve("~/x", Path) == Path("~/x").expanduser()

    def test_bad_int(self) -> None:
        with pytest.raises(ConfigError, match="Cannot convert"):
            _resolve("ten", int, default=1)

    def test_optional_absent(self) -> None:
        assert _resolve(None, str) is None


class TestResolveStringList:
    """Tests for _resolve_string_list."""

    def test_list(self) -> None:
        assert _resolve_string_list(
            ["a", "b"], name="x", default=[]
        ) == ["a", "b"]

    def test_plain_string_split(self) -> None:
        assert _resolve_string_list(
            "netfilter-persistent save", name="x", default=[]
        ) == ["netfilter-persistent", "save"]

    def test_none_uses_default(self) -> None:
        assert _resolve_string_list(None, name="x", default=["d"]) == ["d"]

    def test_empty_list_allowed(self) -> None:
        assert _resolve_string_list([], name="x", default=["d"]) == []

    def test_not_a_list(self) -> None:
        with pytest.raises(ConfigError, match="must be a list"):
            _resolve_string_list({"a": 1}, name="x", default=[])

    def test_env_items(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PN_CHAIN", "DOCKER-USER")
        monkeypatch.delenv("PN_UNSET", raising=False)
        value = [_EnvVar("PN_CHAIN"), _EnvVar("PN_UNSET"), "FORWARD"]
        assert _resolve_string_list(value, name="x", default=[]) == [
            "DOCKER-USER",
            "FORWARD",
        ]


class TestEnvLoader:
    """Tests for the !env YAML tag."""

    def test_env_tag_parsed(self) -> None:
        data = yaml.load("key: !env MY_VAR", Loader=_make_loader())
        assert isinstance(data["key"], _EnvVar)
        assert data["key"].var_name == "MY_VAR"


class TestSectionValidation:
    """Tests for per-section validation."""

    def test_defaults(self) -> None:
        assert EngineConfig().base_url == "unix:///var/run/docker.sock"
        assert HostConfig().accounting_parents == ("FORWARD",)
        assert MeteringConfig().traffic_source == "engine"

    def test_registry_path_default(self) -> None:
        config = InstancesConfig(data_dir=Path("/srv/pn"))
        assert config.registry_path == Path("/srv/pn/instances.json")

    def test_registry_path_override(self) -> None:
        config = InstancesConfig(registry_file=Path("/etc/pn.json"))
        assert config.registry_path == Path("/etc/pn.json")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"interval": 0},
            {"fetch_timeout": -1},
            {"max_workers": 0},
            {"traffic_source": "netflow"},
            {"traffic_source": "sidecar", "sidecar_command": ()},
        ],
    )
    def test_invalid_metering(self, kwargs: dict) -> None:
        with pytest.raises(ConfigError, match="metering"):
            MeteringConfig(**kwargs)

    def test_chain_name_too_long(self) -> None:
        with pytest.raises(ConfigError, match="too long"):
            HostConfig(accounting_chain="X" * 29)

    def test_metering_requires_collector(self) -> None:
        with pytest.raises(ConfigError, match="collector.url"):
            ServerConfig()

    def test_metering_disabled_needs_no_collector(self) -> None:
        config = ServerConfig(metering=MeteringConfig(enabled=False))
        assert config.collector.url is None


class TestFromYaml:
    """Tests for ServerConfig.from_yaml."""

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            ServerConfig.from_yaml(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "engine: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            ServerConfig.from_yaml(path)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            ServerConfig.from_yaml(path)

    def test_section_not_a_mapping(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "engine: fast\n")
        with pytest.raises(ConfigError, match="'engine'"):
            ServerConfig.from_yaml(path)

    def test_minimal(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "collector:\n  url: https://c.example\n")
        config = ServerConfig.from_yaml(path)

        assert config.collector.usage_url == "https://c.example/api/node/usage"
        assert config.host.persist_command == ("netfilter-persistent", "save")
        assert config.api.port == 5300
        assert config.restorer.delay == 10.0

    def test_full(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("PN_COLLECTOR_KEY", "secret-collector-key")
        path = _write(
            tmp_path,
            """\
engine:
  base_url: tcp://127.0.0.1:2375
  network_mode: proxynet
  exec_timeout: 5
host:
  use_sudo: "no"
  accounting_parents: [DOCKER-USER]
  persist_command: iptables-save-wrapper
instances:
  data_dir: /srv/proxynode
  container_prefix: tenant-
metering:
  interval: 30
  traffic_source: sidecar
  sidecar_command: [curl, -s, http://127.0.0.1:9100/traffic]
collector:
  url: https://billing.example.com/
  usage_path: /v2/usage
  api_key: !env PN_COLLECTOR_KEY
restorer:
  enabled: false
api:
  host: 0.0.0.0
  port: 8088
shutdown_timeout: 5
""",
        )

        config = ServerConfig.from_yaml(path)

        assert config.engine.base_url == "tcp://127.0.0.1:2375"
        assert config.engine.network_mode == "proxynet"
        assert config.engine.exec_timeout == 5.0
        assert config.host.use_sudo is False
        assert config.host.accounting_parents == ("DOCKER-USER",)
        assert config.host.persist_command == ("iptables-save-wrapper",)
        assert config.instances.data_dir == Path("/srv/proxynode")
        assert config.instances.registry_path == Path(
            "/srv/proxynode/instances.json"
        )
        assert config.instances.container_prefix == "tenant-"
        assert config.metering.interval == 30.0
        assert config.metering.sidecar_command == (
            "curl",
            "-s",
            "http://127.0.0.1:9100/traffic",
        )
        assert config.collector.usage_url == (
            "https://billing.example.com/v2/usage"
        )
        assert config.collector.api_key == "secret-collector-key"
        assert config.restorer.enabled is False
        assert (config.api.host, config.api.port) == ("0.0.0.0", 8088)
        assert config.shutdown_timeout == 5.0

    def test_api_key_registered_as_secret(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("PN_COLLECTOR_KEY", "secret-collector-key")
        path = _write(
            tmp_path,
            "collector:\n"
            "  url: https://c.example\n"
            "  api_key: !env PN_COLLECTOR_KEY\n",
        )
        ServerConfig.from_yaml(path)
        assert "secret-collector-key" in SecretFilter._secrets

    def test_api_key_not_in_repr(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            "collector:\n  url: https://c.example\n  api_key: hidden-key\n",
        )
        assert "hidden-key" not in repr(ServerConfig.from_yaml(path))

    def test_default_path(self) -> None:
        assert get_config_path().name == "proxynode.yaml"
        assert get_config_path().parent.name == "proxynode"
