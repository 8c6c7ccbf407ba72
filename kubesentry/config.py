"""Operator configuration: capabilities, service settings and cluster data."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

DEFAULT_CLUSTER_CONFIG_PATH = "/etc/config/clusterData.json"

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}

_UNIT_NANOS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


class ConfigError(ValueError):
    """Raised when configuration cannot be read, decoded or validated."""


def parse_duration(value: Any) -> timedelta:
    """Convert a duration such as ``"1h30m"`` or a nanosecond count to a timedelta."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(microseconds=value / 1_000)
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration {value!r}")

    text = value
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ConfigError(f"invalid duration {value!r}")

    total_nanos = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ConfigError(f"invalid duration {value!r}")
        number, unit = match.groups()
        total_nanos += float(number) * _UNIT_NANOS[unit]
        pos = match.end()
    return timedelta(microseconds=sign * total_nanos / 1_000)


def _to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float, str)):
        return str(value)
    raise ConfigError(f"cannot decode {value!r} as a string")


def _to_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value == "":
            return False
        if value in _TRUE_WORDS:
            return True
        if value in _FALSE_WORDS:
            return False
    raise ConfigError(f"cannot decode {value!r} as a bool")


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        if value == "":
            return 0
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"cannot decode {value!r} as an int") from exc
    raise ConfigError(f"cannot decode {value!r} as an int")


def _to_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split(",") if value else []
    if isinstance(value, (list, tuple)):
        return [_to_str(item) for item in value]
    return [_to_str(value)]


def _to_duration(value: Any) -> timedelta:
    if value is None:
        return timedelta(0)
    return parse_duration(value)


def _flatten(data: dict, prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in data.items():
        full = f"{prefix}{str(key).lower()}"
        if isinstance(value, dict) and value:
            flat.update(_flatten(value, full + "."))
        else:
            flat[full] = value
    return flat


def _lookup_ci(data: dict, key: str) -> Any:
    wanted = key.lower()
    for name, value in data.items():
        if str(name).lower() == wanted:
            return value
    return None


class _Settings:
    """Layered key lookup: environment over file over defaults, case-insensitive."""

    def __init__(self, data: dict, defaults: dict | None = None) -> None:
        self._values = {**_flatten(defaults or {}), **_flatten(data)}

    def get(self, key: str) -> Any:
        key = key.lower()
        if key not in self._values:
            return None
        env_value = os.environ.get(key.upper())
        if env_value:
            return env_value
        return self._values[key]


def _read_json_config(directory: str | os.PathLike, name: str) -> dict:
    base = Path(directory)
    for candidate in (base / f"{name}.json", base / name):
        if candidate.is_file():
            try:
                data = json.loads(candidate.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise ConfigError(f"failed to read {candidate}: {exc}") from exc
            if not isinstance(data, dict):
                raise ConfigError(f"{candidate} does not hold a JSON object")
            return data
    raise ConfigError(f'Config File "{name}" Not Found in "{base}"')


@dataclass
class Component:
    enabled: bool = False


@dataclass
class Capabilities:
    configuration_scan: str = ""
    continuous_scan: str = ""
    network_generator: str = ""
    node_scan: str = ""
    otel: str = ""
    relevancy: str = ""
    runtime_observability: str = ""
    seccomp: str = ""
    vulnerability_scan: str = ""
    admission_controller: str = ""


_CAPABILITY_KEYS = {
    "configuration_scan": "configurationScan",
    "continuous_scan": "continuousScan",
    "network_generator": "networkGenerator",
    "node_scan": "nodeScan",
    "otel": "otel",
    "relevancy": "relevancy",
    "runtime_observability": "runtimeObservability",
    "seccomp": "seccomp",
    "vulnerability_scan": "vulnerabilityScan",
    "admission_controller": "admissionController",
}


@dataclass
class Components:
    gateway: Component = field(default_factory=Component)
    host_scanner: Component = field(default_factory=Component)
    kollector: Component = field(default_factory=Component)
    kubescape: Component = field(default_factory=Component)
    kubescape_scheduler: Component = field(default_factory=Component)
    kubevuln: Component = field(default_factory=Component)
    kubevuln_scheduler: Component = field(default_factory=Component)
    node_agent: Component = field(default_factory=Component)
    operator: Component = field(default_factory=Component)
    otel_collector: Component = field(default_factory=Component)
    persistence: Component = field(default_factory=Component)
    service_discovery: Component = field(default_factory=Component)
    storage: Component = field(default_factory=Component)


_COMPONENT_KEYS = {
    "gateway": "gateway",
    "host_scanner": "hostScanner",
    "kollector": "kollector",
    "kubescape": "kubescape",
    "kubescape_scheduler": "kubescapeScheduler",
    "kubevuln": "kubevuln",
    "kubevuln_scheduler": "kubevulnScheduler",
    "node_agent": "nodeAgent",
    "operator": "operator",
    "otel_collector": "otelCollector",
    "persistence": "persistence",
    "service_discovery": "serviceDiscovery",
    "storage": "storage",
}


@dataclass
class ServiceScanConfig:
    enabled: bool = False
    interval: timedelta = timedelta(0)


@dataclass
class Server:
    account: str = ""
    discovery_url: str = ""
    otel_url: str = ""


@dataclass
class Configurations:
    persistence: str = ""
    server: Server = field(default_factory=Server)


@dataclass
class CapabilitiesConfig:
    capabilities: Capabilities = field(default_factory=Capabilities)
    components: Components = field(default_factory=Components)
    configurations: Configurations = field(default_factory=Configurations)
    service_scan_config: ServiceScanConfig = field(default_factory=ServiceScanConfig)


@dataclass
class Config:
    namespace: str = ""
    rest_api_port: str = ""
    clean_up_routine_interval: timedelta = timedelta(0)
    concurrency_workers: int = 0
    trigger_security_framework: bool = False
    matching_rules_filename: str = ""
    # Duplicate events within this interval are dropped by continuous scanning.
    event_deduplication_interval: timedelta = timedelta(0)
    http_exporter_config: dict | None = None
    exclude_namespaces: list[str] = field(default_factory=list)
    include_namespaces: list[str] = field(default_factory=list)
    # Minimum age of a parentless pod before it is scanned.
    pod_scan_guard_time: timedelta = timedelta(0)


@dataclass
class ClusterConfig:
    cluster_name: str = ""
    gateway_websocket_url: str = ""
    gateway_rest_url: str = ""
    kubevuln_url: str = ""
    kubescape_url: str = ""


_CLUSTER_KEYS = {
    "cluster_name": "clusterName",
    "gateway_websocket_url": "gatewayWebsocketURL",
    "gateway_rest_url": "gatewayRestURL",
    "kubevuln_url": "kubevulnURL",
    "kubescape_url": "kubescapeURL",
}


@dataclass
class Credentials:
    account: str = ""
    access_key: str = ""


def load_capabilities_config(path: str | os.PathLike) -> CapabilitiesConfig:
    """Load ``capabilities.json`` from the directory *path*."""
    settings = _Settings(_read_json_config(path, "capabilities"))

    capabilities = Capabilities(
        **{
            attr: _to_str(settings.get(f"capabilities.{key}"))
            for attr, key in _CAPABILITY_KEYS.items()
        }
    )
    components = Components(
        **{
            attr: Component(enabled=_to_bool(settings.get(f"components.{key}.enabled")))
            for attr, key in _COMPONENT_KEYS.items()
        }
    )
    configurations = Configurations(
        persistence=_to_str(settings.get("configurations.persistence")),
        server=Server(
            account=_to_str(settings.get("configurations.server.account")),
            discovery_url=_to_str(settings.get("configurations.server.discoveryUrl")),
            otel_url=_to_str(settings.get("configurations.server.otelUrl")),
        ),
    )
    scan_config = ServiceScanConfig(
        enabled=_to_bool(settings.get("serviceScanConfig.enabled")),
        interval=_to_duration(settings.get("serviceScanConfig.interval")),
    )
    return CapabilitiesConfig(
        capabilities=capabilities,
        components=components,
        configurations=configurations,
        service_scan_config=scan_config,
    )


_CONFIG_DEFAULTS = {
    "namespace": "kubescape",
    "port": "4002",
    "cleanupDelay": timedelta(minutes=10),
    "workerConcurrency": 3,
    "triggerSecurityFramework": False,
    "matchingRulesFilename": "/etc/config/matchingRules.json",
    "eventDeduplicationInterval": timedelta(minutes=2),
    "podScanGuardTime": timedelta(hours=1),
}


def load_config(path: str | os.PathLike) -> Config:
    """Load ``config.json`` from the directory *path*, filling in defaults."""
    data = _read_json_config(path, "config")
    settings = _Settings(data, _CONFIG_DEFAULTS)

    exporter = _lookup_ci(data, "httpExporterConfig")
    if exporter is not None and not isinstance(exporter, dict):
        raise ConfigError("httpExporterConfig must be an object")

    return Config(
        namespace=_to_str(settings.get("namespace")),
        rest_api_port=_to_str(settings.get("port")),
        clean_up_routine_interval=_to_duration(settings.get("cleanupDelay")),
        concurrency_workers=_to_int(settings.get("workerConcurrency")),
        trigger_security_framework=_to_bool(settings.get("triggerSecurityFramework")),
        matching_rules_filename=_to_str(settings.get("matchingRulesFilename")),
        event_deduplication_interval=_to_duration(settings.get("eventDeduplicationInterval")),
        http_exporter_config=exporter,
        exclude_namespaces=_to_list(settings.get("excludeNamespaces")),
        include_namespaces=_to_list(settings.get("includeNamespaces")),
        pod_scan_guard_time=_to_duration(settings.get("podScanGuardTime")),
    )


def load_cluster_config() -> ClusterConfig:
    """Load cluster data from ``$CONFIG`` or the default cluster data path."""
    path = Path(os.environ.get("CONFIG", DEFAULT_CLUSTER_CONFIG_PATH))
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"failed to load cluster config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} does not hold a JSON object")
    return ClusterConfig(
        **{attr: _to_str(_lookup_ci(data, key)) for attr, key in _CLUSTER_KEYS.items()}
    )


class OperatorConfig:
    """Combined view over every configuration source the operator uses."""

    def __init__(
        self,
        components: CapabilitiesConfig,
        cluster_config: ClusterConfig,
        credentials: Credentials,
        event_receiver_rest_url: str,
        service_config: Config,
    ) -> None:
        self._components = components
        self._cluster_config = cluster_config
        self._service_config = service_config
        self._account_id = credentials.account
        self._access_key = credentials.access_key
        self._event_receiver_rest_url = event_receiver_rest_url

    def continuous_scan_enabled(self) -> bool:
        return self._components.capabilities.continuous_scan == "enable"

    def admission_controller_enabled(self) -> bool:
        return self._components.capabilities.admission_controller == "enable"

    @property
    def kubevuln_url(self) -> str:
        return self._cluster_config.kubevuln_url

    @property
    def kubescape_url(self) -> str:
        return self._cluster_config.kubescape_url

    @property
    def trigger_security_framework(self) -> bool:
        return self._service_config.trigger_security_framework

    @property
    def http_exporter_config(self) -> dict | None:
        return self._service_config.http_exporter_config

    @property
    def namespace(self) -> str:
        return self._service_config.namespace

    @property
    def clean_up_routine_interval(self) -> timedelta:
        return self._service_config.clean_up_routine_interval

    @property
    def matching_rules_filename(self) -> str:
        return self._service_config.matching_rules_filename

    @property
    def gateway_websocket_url(self) -> str:
        return self._cluster_config.gateway_websocket_url

    @property
    def concurrency_workers(self) -> int:
        return self._service_config.concurrency_workers

    @property
    def components(self) -> Components:
        return self._components.components

    @property
    def account_id(self) -> str:
        return self._account_id

    @property
    def access_key(self) -> str:
        return self._access_key

    @property
    def cluster_name(self) -> str:
        return self._cluster_config.cluster_name

    @property
    def event_receiver_url(self) -> str:
        return self._event_receiver_rest_url

    @property
    def guard_time(self) -> timedelta:
        return self._service_config.pod_scan_guard_time

    def skip_namespace(self, ns: str) -> bool:
        """Tell whether *ns* is filtered out by the include or exclude lists."""
        include = self._service_config.include_namespaces
        if include:
            return ns not in include
        exclude = self._service_config.exclude_namespaces
        if exclude:
            return ns in exclude
        return False


def validate_config(config: OperatorConfig) -> None:
    """Raise ConfigError when required settings are missing."""
    if config.account_id == "" and config.components.service_discovery.enabled:
        raise ConfigError("missing account id")
    if config.cluster_name == "":
        raise ConfigError("missing cluster name in config")