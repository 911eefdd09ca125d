# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Configuration for the node agent.

Configuration is loaded from a YAML file.  The default location follows
the XDG Base Directory Specification:

    ``$XDG_CONFIG_HOME/proxynode/proxynode.yaml``
    (typically ``~/.config/proxynode/proxynode.yaml``)

``!env`` tags resolve values from environment variables, so the collector
API key can live in the environment (or a ``.env`` file) rather than in
the YAML file.

Example::

    instances:
      data_dir: /var/lib/proxynode
    metering:
      interval: 60
      traffic_source: engine
    collector:
      url: https://billing.example.com
      api_key: !env PROXYNODE_COLLECTOR_KEY
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar, overload

import yaml
from platformdirs import user_config_path

from proxynode.dotenv_loader import load_dotenv_once
from proxynode.errors import NodeAgentError
from proxynode.logging import SecretFilter


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "proxynode"

#: Supported strategies for reading per-container traffic counters.
TRAFFIC_SOURCES = frozenset({"engine", "procfs", "sidecar"})

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off"})


def get_config_path() -> Path:
    """Return the default config file path.

    Returns:
        Path to ``$XDG_CONFIG_HOME/proxynode/proxynode.yaml``.
    """
    return user_config_path(_APP_NAME) / "proxynode.yaml"


def get_dotenv_path() -> Path:
    """Return the default ``.env`` file path inside the XDG config directory.

    Returns:
        Path to the ``.env`` file.
    """
    return user_config_path(_APP_NAME) / ".env"


class ConfigError(NodeAgentError):
    """Configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# YAML tag placeholders
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)  # type: ignore[arg-type]
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


# ---------------------------------------------------------------------------
# Value resolution
# ---------------------------------------------------------------------------


def _coerce_bool(value: object) -> bool:
    """Coerce a value to bool, handling string representations."""
    if isinstance(value, bool):
        return value
    s = str(value).lower().strip()
    if s in _BOOL_TRUTHY:
        return True
    if s in _BOOL_FALSY:
        return False
    raise ConfigError(f"Cannot convert {value!r} to bool")


def _raw_resolve(value: object) -> str | None:
    """Resolve an ``_EnvVar`` to its string value, or stringify literals.

    Returns None if the value is None or the env var is not set.
    """
    if isinstance(value, _EnvVar):
        return os.environ.get(value.var_name)
    if value is None:
        return None
    return str(value)


_MISSING = object()

_T = TypeVar("_T")


@overload
def _resolve(value: object, coerce: type[_T], *, default: _T) -> _T: ...


@overload
def _resolve(
    value: object,
    coerce: type[_T],
    *,
    required: str,
) -> _T: ...


@overload
def _resolve(value: object, coerce: type[_T]) -> _T | None: ...


def _resolve(
    value: object,
    coerce: type[Any],
    *,
    default: object = _MISSING,
    required: str = "",
) -> Any:
    """Resolve a YAML value, handling ``!env`` tags and type coercion.

    Args:
        value: Raw value from YAML (may be ``_EnvVar``, None, or a
            literal already parsed by PyYAML).
        coerce: Target type (``str``, ``int``, ``float``, ``bool``,
            ``Path``).
        default: Default when value is absent.
        required: Human-readable field name.  When set, raises
            ``ConfigError`` if the value is absent.

    Returns:
        The resolved, coerced value, or None when optional and absent.
    """
    if not isinstance(value, _EnvVar) and value is not None:
        if coerce is bool:
            return _coerce_bool(value)
        if isinstance(value, coerce) and not isinstance(value, bool):
            return value

    resolved = _raw_resolve(value)

    if resolved is None:
        if required:
            if isinstance(value, _EnvVar):
                raise ConfigError(
                    f"Required config '{required}': environment variable "
                    f"'{value.var_name}' is not set"
                )
            raise ConfigError(f"Required config '{required}' is missing")
        if default is not _MISSING:
            return default
        return None

    if coerce is bool:
        return _coerce_bool(resolved)
    if coerce is Path:
        return Path(resolved).expanduser()
    try:
        return coerce(resolved)
    except ValueError as e:
        raise ConfigError(
            f"Cannot convert {resolved!r} to {coerce.__name__}"
        ) from e


def _resolve_string_list(
    value: object, *, name: str, default: list[str]
) -> list[str]:
    """Resolve a list of strings, handling ``!env`` for each element.

    A plain string is split on whitespace, so ``persist_command:
    netfilter-persistent save`` works as well as a YAML list.

    Raises:
        ConfigError: If value is neither a list nor a string.
    """
    if value is None:
        return list(default)
    if isinstance(value, (str, _EnvVar)):
        resolved = _raw_resolve(value)
        return resolved.split() if resolved else list(default)
    if not isinstance(value, list):
        raise ConfigError(
            f"Config '{name}' must be a list, got {type(value).__name__}"
        )
    result: list[str] = []
    for item in value:
        resolved = _raw_resolve(item)
        if resolved:
            result.append(resolved)
    return result


def _section(raw: dict, name: str) -> dict:
    """Return a mapping section of the raw config (empty if absent)."""
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a YAML mapping")
    return value


# ---------------------------------------------------------------------------
# Configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfig:
    """Container engine connection settings.

    Attributes:
        base_url: Engine control socket URL.
        timeout: Engine API request timeout in seconds.
        network_mode: Network the proxy containers join.
        exec_timeout: Upper bound for draining a log or exec stream.
    """

    base_url: str = "unix:///var/run/docker.sock"
    timeout: int = 15
    network_mode: str = "bridge"
    exec_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.timeout < 1:
            raise ConfigError(f"engine.timeout must be >= 1: {self.timeout}")
        if self.exec_timeout <= 0:
            raise ConfigError(
                f"engine.exec_timeout must be > 0: {self.exec_timeout}"
            )


@dataclass(frozen=True)
class HostConfig:
    """Host shell command settings.

    Attributes:
        use_sudo: Prefix privileged commands with ``sudo -n``.
        firewall_command: Firewall front-end binary.
        iptables_command: Packet filter binary.
        accounting_chain: Dedicated chain holding traffic-counting rules.
        accounting_parents: Chains that jump into the accounting chain.
        persist_command: Command that saves the rule set across reboots.
            Empty disables persisting.
        command_timeout: Per-command timeout in seconds.
    """

    use_sudo: bool = True
    firewall_command: str = "ufw"
    iptables_command: str = "iptables"
    accounting_chain: str = "PROXYNODE_TRAFFIC"
    accounting_parents: tuple[str, ...] = ("FORWARD",)
    persist_command: tuple[str, ...] = ("netfilter-persistent", "save")
    command_timeout: float = 30.0

    def __post_init__(self) -> None:
        if not self.accounting_chain:
            raise ConfigError("host.accounting_chain must not be empty")
        # iptables limits chain names to 28 characters.
        if len(self.accounting_chain) > 28:
            raise ConfigError(
                f"host.accounting_chain too long: {self.accounting_chain}"
            )
        if self.command_timeout <= 0:
            raise ConfigError(
                f"host.command_timeout must be > 0: {self.command_timeout}"
            )


@dataclass(frozen=True)
class InstancesConfig:
    """Where per-instance state lives and how containers are named.

    Attributes:
        data_dir: Root for per-instance host directories.
        registry_file: JSON registry path.
        container_prefix: Container name prefix; the instance id is
            appended.
    """

    data_dir: Path = Path("/var/lib/proxynode")
    registry_file: Path | None = None
    container_prefix: str = "proxynode-xray-"

    def __post_init__(self) -> None:
        if not self.container_prefix:
            raise ConfigError("instances.container_prefix must not be empty")

    @property
    def registry_path(self) -> Path:
        """Registry file, defaulting to ``<data_dir>/instances.json``."""
        return self.registry_file or self.data_dir / "instances.json"


@dataclass(frozen=True)
class MeteringConfig:
    """Usage metering job settings.

    Attributes:
        enabled: Run the periodic metering job.
        interval: Seconds between cycles.
        fetch_timeout: Bounded wait for all per-instance counter reads.
        max_workers: Concurrent counter reads.
        traffic_source: ``engine``, ``procfs`` or ``sidecar``.
        sidecar_command: Exec argv printing the ``{"in", "out"}`` payload.
    """

    enabled: bool = True
    interval: float = 60.0
    fetch_timeout: float = 15.0
    max_workers: int = 8
    traffic_source: str = "engine"
    sidecar_command: tuple[str, ...] = (
        "wget",
        "-qO-",
        "http://127.0.0.1:9100/traffic",
    )

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ConfigError(
                f"metering.interval must be > 0: {self.interval}"
            )
        if self.fetch_timeout <= 0:
            raise ConfigError(
                f"metering.fetch_timeout must be > 0: {self.fetch_timeout}"
            )
        if self.max_workers < 1:
            raise ConfigError(
                f"metering.max_workers must be >= 1: {self.max_workers}"
            )
        if self.traffic_source not in TRAFFIC_SOURCES:
            raise ConfigError(
                f"metering.traffic_source must be one of "
                f"{sorted(TRAFFIC_SOURCES)}: {self.traffic_source}"
            )
        if self.traffic_source == "sidecar" and not self.sidecar_command:
            raise ConfigError("metering.sidecar_command must not be empty")


@dataclass(frozen=True)
class CollectorConfig:
    """Remote usage collector endpoint.

    Attributes:
        url: Collector base URL.
        usage_path: Path the usage report is POSTed to.
        api_key: Value of the ``X-Api-Key`` header.
        timeout: Request timeout in seconds.
    """

    url: str | None = None
    usage_path: str = "/api/node/usage"
    api_key: str | None = field(default=None, repr=False)
    timeout: float = 10.0

    @property
    def usage_url(self) -> str:
        """Full URL of the usage endpoint."""
        if not self.url:
            raise ConfigError("collector.url is not configured")
        return f"{self.url.rstrip('/')}/{self.usage_path.lstrip('/')}"


@dataclass(frozen=True)
class RestorerConfig:
    """Startup firewall rule restorer settings.

    Attributes:
        enabled: Replay counting rules at startup.
        delay: Seconds to wait for the engine to settle first.
    """

    enabled: bool = True
    delay: float = 10.0


@dataclass(frozen=True)
class ApiConfig:
    """HTTP API listener settings."""

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 5300


@dataclass(frozen=True)
class ServerConfig:
    """Complete node agent configuration."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    host: HostConfig = field(default_factory=HostConfig)
    instances: InstancesConfig = field(default_factory=InstancesConfig)
    metering: MeteringConfig = field(default_factory=MeteringConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    restorer: RestorerConfig = field(default_factory=RestorerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    shutdown_timeout: float = 30.0

    def __post_init__(self) -> None:
        """Validate cross-section constraints.

        Raises:
            ConfigError: If validation fails.
        """
        if self.metering.enabled and not self.collector.url:
            raise ConfigError(
                "collector.url is required when metering is enabled"
            )
        if self.shutdown_timeout <= 0:
            raise ConfigError(
                f"shutdown_timeout must be > 0: {self.shutdown_timeout}"
            )

    @classmethod
    def from_yaml(cls, config_path: Path | None = None) -> "ServerConfig":
        """Load configuration from a YAML file.

        Values tagged with ``!env VAR_NAME`` are resolved from the
        environment at load time.  A ``.env`` file is loaded first if
        present.  The collector API key is registered for log redaction.

        Args:
            config_path: Path to YAML config file.  Defaults to
                ``~/.config/proxynode/proxynode.yaml`` (XDG).

        Returns:
            ServerConfig instance.

        Raises:
            ConfigError: If the file is missing or values are invalid.
        """
        load_dotenv_once()

        if config_path is None:
            config_path = get_config_path()

        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            try:
                raw = yaml.load(f, Loader=_make_loader())
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(
                f"Config file must be a YAML mapping: {config_path}"
            )

        config = cls.from_raw(raw)
        if config.collector.api_key:
            SecretFilter.register_secret(config.collector.api_key)
        logger.info(
            "Config loaded from %s (traffic_source=%s, interval=%ss)",
            config_path,
            config.metering.traffic_source,
            config.metering.interval,
        )
        return config

    @classmethod
    def from_raw(cls, raw: dict) -> "ServerConfig":
        """Build config from a parsed (but unresolved) YAML mapping."""
        engine = _section(raw, "engine")
        host = _section(raw, "host")
        instances = _section(raw, "instances")
        metering = _section(raw, "metering")
        collector = _section(raw, "collector")
        restorer = _section(raw, "restorer")
        api = _section(raw, "api")

        defaults = HostConfig()
        meter_defaults = MeteringConfig()

        return cls(
            engine=EngineConfig(
                base_url=_resolve(
                    engine.get("base_url"),
                    str,
                    default=EngineConfig.base_url,
                ),
                timeout=_resolve(engine.get("timeout"), int, default=15),
                network_mode=_resolve(
                    engine.get("network_mode"), str, default="bridge"
                ),
                exec_timeout=_resolve(
                    engine.get("exec_timeout"), float, default=30.0
                ),
            ),
            host=HostConfig(
                use_sudo=_resolve(host.get("use_sudo"), bool, default=True),
                firewall_command=_resolve(
                    host.get("firewall_command"), str, default="ufw"
                ),
                iptables_command=_resolve(
                    host.get("iptables_command"), str, default="iptables"
                ),
                accounting_chain=_resolve(
                    host.get("accounting_chain"),
                    str,
                    default=defaults.accounting_chain,
                ),
                accounting_parents=tuple(
                    _resolve_string_list(
                        host.get("accounting_parents"),
                        name="host.accounting_parents",
                        default=list(defaults.accounting_parents),
                    )
                ),
                persist_command=tuple(
                    _resolve_string_list(
                        host.get("persist_command"),
                        name="host.persist_command",
                        default=list(defaults.persist_command),
                    )
                ),
                command_timeout=_resolve(
                    host.get("command_timeout"), float, default=30.0
                ),
            ),
            instances=InstancesConfig(
                data_dir=_resolve(
                    instances.get("data_dir"),
                    Path,
                    default=InstancesConfig.data_dir,
                ),
                registry_file=_resolve(instances.get("registry_file"), Path),
                container_prefix=_resolve(
                    instances.get("container_prefix"),
                    str,
                    default=InstancesConfig.container_prefix,
                ),
            ),
            metering=MeteringConfig(
                enabled=_resolve(metering.get("enabled"), bool, default=True),
                interval=_resolve(
                    metering.get("interval"), float, default=60.0
                ),
                fetch_timeout=_resolve(
                    metering.get("fetch_timeout"), float, default=15.0
                ),
                max_workers=_resolve(
                    metering.get("max_workers"), int, default=8
                ),
                traffic_source=_resolve(
                    metering.get("traffic_source"), str, default="engine"
                ),
                sidecar_command=tuple(
                    _resolve_string_list(
                        metering.get("sidecar_command"),
                        name="metering.sidecar_command",
                        default=list(meter_defaults.sidecar_command),
                    )
                ),
            ),
            collector=CollectorConfig(
                url=_resolve(collector.get("url"), str),
                usage_path=_resolve(
                    collector.get("usage_path"),
                    str,
                    default=CollectorConfig.usage_path,
                ),
                api_key=_resolve(collector.get("api_key"), str) or None,
                timeout=_resolve(collector.get("timeout"), float, default=10.0),
            ),
            restorer=RestorerConfig(
                enabled=_resolve(restorer.get("enabled"), bool, default=True),
                delay=_resolve(restorer.get("delay"), float, default=10.0),
            ),
            api=ApiConfig(
                enabled=_resolve(api.get("enabled"), bool, default=True),
                host=_resolve(api.get("host"), str, default="127.0.0.1"),
                port=_resolve(api.get("port"), int, default=5300),
            ),
            shutdown_timeout=_resolve(
                raw.get("shutdown_timeout"), float, default=30.0
            ),
        )
