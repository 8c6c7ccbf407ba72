import json
from datetime import timedelta

import pytest

from kubesentry.config import (
    Capabilities,
    CapabilitiesConfig,
    ClusterConfig,
    Component,
    Components,
    Config,
    ConfigError,
    Configurations,
    Credentials,
    OperatorConfig,
    Server,
    ServiceScanConfig,
    load_capabilities_config,
    load_cluster_config,
    load_config,
    parse_duration,
    validate_config,
)

_ENV_KEYS = [
    "NAMESPACE",
    "PORT",
    "CLEANUPDELAY",
    "WORKERCONCURRENCY",
    "TRIGGERSECURITYFRAMEWORK",
    "MATCHINGRULESFILENAME",
    "EVENTDEDUPLICATIONINTERVAL",
    "EXCLUDENAMESPACES",
    "INCLUDENAMESPACES",
    "PODSCANGUARDTIME",
    "CONFIG",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config_dir(tmp_path):
    capabilities = {
        "capabilities": {
            "configurationScan": "enable",
            "continuousScan": "disable",
            "nodeScan": "enable",
            "relevancy": "enable",
            "vulnerabilityScan": "enable",
            "admissionController": "enable",
        },
        "components": {
            name: {"enabled": True}
            for name in [
                "gateway",
                "hostScanner",
                "kollector",
                "kubescape",
                "kubescapeScheduler",
                "kubevuln",
                "kubevulnScheduler",
                "nodeAgent",
                "operator",
                "otelCollector",
                "serviceDiscovery",
                "storage",
            ]
        },
        "configurations": {"persistence": "enable", "server": {"discoveryUrl": "foo.com"}},
        "serviceScanConfig": {"enabled": True, "interval": "60s"},
    }
    config = {
        "excludeNamespaces": ["kube-system", "kubescape"],
        "includeNamespaces": [],
    }
    (tmp_path / "capabilities.json").write_text(json.dumps(capabilities))
    (tmp_path / "config.json").write_text(json.dumps(config))
    return tmp_path


def test_load_capabilities(config_dir):
    got = load_capabilities_config(config_dir)
    enabled = Component(enabled=True)
    want = CapabilitiesConfig(
        capabilities=Capabilities(
            configuration_scan="enable",
            continuous_scan="disable",
            node_scan="enable",
            relevancy="enable",
            vulnerability_scan="enable",
            admission_controller="enable",
        ),
        components=Components(
            gateway=enabled,
            host_scanner=enabled,
            kollector=enabled,
            kubescape=enabled,
            kubescape_scheduler=enabled,
            kubevuln=enabled,
            kubevuln_scheduler=enabled,
            node_agent=enabled,
            operator=enabled,
            otel_collector=enabled,
            service_discovery=enabled,
            storage=enabled,
        ),
        configurations=Configurations(
            persistence="enable", server=Server(discovery_url="foo.com")
        ),
        service_scan_config=ServiceScanConfig(interval=timedelta(seconds=60), enabled=True),
    )
    assert got == want


def test_load_config(config_dir):
    got = load_config(config_dir)
    want = Config(
        namespace="kubescape",
        rest_api_port="4002",
        clean_up_routine_interval=timedelta(minutes=10),
        concurrency_workers=3,
        trigger_security_framework=False,
        matching_rules_filename="/etc/config/matchingRules.json",
        event_deduplication_interval=timedelta(minutes=2),
        exclude_namespaces=["kube-system", "kubescape"],
        include_namespaces=[],
        pod_scan_guard_time=timedelta(hours=1),
    )
    assert got == want


def test_load_config_env_overrides(config_dir, monkeypatch):
    monkeypatch.setenv("WORKERCONCURRENCY", "7")
    monkeypatch.setenv("EXCLUDENAMESPACES", "a,b")
    got = load_config(config_dir)
    assert got.concurrency_workers == 7
    assert got.exclude_namespaces == ["a", "b"]


def test_load_config_reads_file_values(tmp_path):
    (tmp_path / "config.json").write_text(
        json.dumps(
            {
                "port": 8080,
                "cleanupDelay": "30s",
                "httpExporterConfig": {"url": "http://localhost:9000"},
            }
        )
    )
    got = load_config(tmp_path)
    assert got.rest_api_port == "8080"
    assert got.clean_up_routine_interval == timedelta(seconds=30)
    assert got.http_exporter_config == {"url": "http://localhost:9000"}


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_load_capabilities_invalid_json(tmp_path):
    (tmp_path / "capabilities.json").write_text("{not json")
    with pytest.raises(ConfigError):
        load_capabilities_config(tmp_path)


def test_load_cluster_config(tmp_path, monkeypatch):
    path = tmp_path / "clusterData.json"
    path.write_text(json.dumps({"clusterName": "foo", "kubevulnURL": "kubevuln:8080"}))
    monkeypatch.setenv("CONFIG", str(path))
    got = load_cluster_config()
    assert got == ClusterConfig(cluster_name="foo", kubevuln_url="kubevuln:8080")


def test_load_cluster_config_missing(tmp_path, monkeypatch):
    monkeypatch.setenv("CONFIG", str(tmp_path / "absent.json"))
    with pytest.raises(ConfigError):
        load_cluster_config()


_VALIDATE_CASES = [
    ("no clusterName", ClusterConfig(), CapabilitiesConfig(), Credentials(), True),
    ("no discovery, no account", ClusterConfig(cluster_name="foo"), CapabilitiesConfig(), Credentials(), False),
    (
        "discovery, no account",
        ClusterConfig(cluster_name="foo"),
        CapabilitiesConfig(components=Components(service_discovery=Component(enabled=True))),
        Credentials(),
        True,
    ),
    (
        "no discovery, account",
        ClusterConfig(cluster_name="foo"),
        CapabilitiesConfig(),
        Credentials(account="123", access_key="placeholder"),
        False,
    ),
    (
        "discovery, account",
        ClusterConfig(cluster_name="foo"),
        CapabilitiesConfig(components=Components(service_discovery=Component(enabled=True))),
        Credentials(account="123", access_key="placeholder"),
        False,
    ),
]


@pytest.mark.parametrize("name,cluster,components,creds,want_err", _VALIDATE_CASES)
def test_validate_config(name, cluster, components, creds, want_err):
    operator_config = OperatorConfig(components, cluster, creds, "", Config())
    if want_err:
        with pytest.raises(ConfigError):
            validate_config(operator_config)
    else:
        assert validate_config(operator_config) is None


def test_validate_config_messages():
    cfg = OperatorConfig(CapabilitiesConfig(), ClusterConfig(), Credentials(), "", Config())
    with pytest.raises(ConfigError, match="missing cluster name in config"):
        validate_config(cfg)
    cfg = OperatorConfig(
        CapabilitiesConfig(components=Components(service_discovery=Component(enabled=True))),
        ClusterConfig(cluster_name="foo"),
        Credentials(),
        "",
        Config(),
    )
    with pytest.raises(ConfigError, match="missing account id"):
        validate_config(cfg)


@pytest.mark.parametrize(
    "include,exclude,ns,want",
    [
        ([], [], "default", False),
        (["default"], [], "default", False),
        (["default"], [], "other", True),
        ([], ["kube-system"], "kube-system", True),
        ([], ["kube-system"], "default", False),
        (["default"], ["default"], "default", False),
    ],
)
def test_skip_namespace(include, exclude, ns, want):
    cfg = OperatorConfig(
        CapabilitiesConfig(),
        ClusterConfig(),
        Credentials(),
        "",
        Config(include_namespaces=include, exclude_namespaces=exclude),
    )
    assert cfg.skip_namespace(ns) is want


def test_operator_config_accessors():
    caps = CapabilitiesConfig(
        capabilities=Capabilities(continuous_scan="enable", admission_controller="disable")
    )
    cfg = OperatorConfig(
        caps,
        ClusterConfig(cluster_name="c1", kubescape_url="ks:8080"),
        Credentials(account="acc", access_key="placeholder"),
        "http://receiver",
        Config(namespace="ns", pod_scan_guard_time=timedelta(hours=1)),
    )
    assert cfg.continuous_scan_enabled() is True
    assert cfg.admission_controller_enabled() is False
    assert cfg.cluster_name == "c1"
    assert cfg.kubescape_url == "ks:8080"
    assert cfg.account_id == "acc"
    assert cfg.event_receiver_url == "http://receiver"
    assert cfg.namespace == "ns"
    assert cfg.guard_time == timedelta(hours=1)


@pytest.mark.parametrize(
    "text,want",
    [
        ("60s", timedelta(seconds=60)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("1.5h", timedelta(minutes=90)),
        ("300ms", timedelta(milliseconds=300)),
        ("-2m", timedelta(minutes=-2)),
        ("0", timedelta(0)),
        (1_000_000_000, timedelta(seconds=1)),
    ],
)
def test_parse_duration(text, want):
    assert parse_duration(text) == want


@pytest.mark.parametrize("text", ["", "abc", "10", "5x", "1h 2m"])
def test_parse_duration_invalid(text):
    with pytest.raises(ConfigError):
        parse_duration(text)