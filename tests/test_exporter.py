import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from kubesentry.exporter import (
    ExporterConfigError,
    HTTPExporter,
    HTTPExporterConfig,
    init_http_exporter,
)
from kubesentry.rules import RuleAlert, RuleFailure, RuntimeAlertK8sDetails


class _Recorder(BaseHTTPRequestHandler):
    def _handle(self):
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length)
        self.server.received.append((self.command, self.path, self.headers, json.loads(body)))
        self.send_response(self.server.status)
        self.end_headers()
        self.wfile.write(b"ok")

    do_POST = _handle
    do_PUT = _handle

    def log_message(self, *args):
        pass


@pytest.fixture
def server():
    srv = HTTPServer(("127.0.0.1", 0), _Recorder)
    srv.received = []
    srv.status = 200
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    yield srv
    srv.shutdown()
    srv.server_close()


def url_of(srv):
    return f"http://127.0.0.1:{srv.server_address[1]}"


def make_failure(description="Exec to pod detected on pod test-pod"):
    return RuleFailure(
        rule_alert=RuleAlert(rule_description=description),
        runtime_alert_k8s_details=RuntimeAlertK8sDetails(pod_name="test-pod", cluster_name="other"),
        rule_id="R2000",
    )


def test_validate_fills_defaults():
    config = HTTPExporterConfig(url="http://localhost")
    config.validate()
    assert config.method == "POST"
    assert config.timeout_seconds == 5
    assert config.max_alerts_per_minute == 100
    assert config.headers == {}


def test_validate_rejects_method():
    with pytest.raises(ExporterConfigError, match="method must be POST or PUT"):
        HTTPExporterConfig(url="http://localhost", method="GET").validate()


def test_validate_requires_url():
    with pytest.raises(ExporterConfigError, match="URL is required"):
        HTTPExporterConfig().validate()


def test_from_dict():
    config = HTTPExporterConfig.from_dict(
        {"url": "http://localhost", "method": "PUT", "timeoutSeconds": 7, "maxAlertsPerMinute": 3}
    )
    assert config == HTTPExporterConfig(
        url="http://localhost", method="PUT", timeout_seconds=7, max_alerts_per_minute=3
    )


def test_init_does_not_modify_given_config():
    config = HTTPExporterConfig(url="http://localhost")
    exporter = init_http_exporter(config, "cluster")
    assert exporter.config.method == "POST"
    assert config.method == ""
    assert exporter.cluster_name == "cluster"


def test_init_rejects_missing_config():
    with pytest.raises(ExporterConfigError):
        init_http_exporter(None, "cluster")


def test_check_alert_limit_window():
    now = [0.0]
    config = HTTPExporterConfig(url="http://localhost", max_alerts_per_minute=2)
    exporter = HTTPExporter(config, "c", clock=lambda: now[0])
    assert [exporter.check_alert_limit() for _ in range(3)] == [False, False, True]
    now[0] = 61.0
    assert exporter.check_alert_limit() is False


def test_send_admission_alert(server):
    exporter = init_http_exporter(
        {"url": url_of(server), "headers": {"X-Test": "yes"}}, "my-cluster"
    )
    exporter.send_admission_alert(make_failure())
    assert len(server.received) == 1
    method, path, headers, body = server.received[0]
    assert method == "POST"
    assert path == "/v1/runtimealerts"
    assert headers.get("X-Test") == "yes"
    assert body["kind"] == "RuntimeAlerts"
    assert body["apiVersion"] == "kubescape.io/v1"
    alert = body["spec"]["alerts"][0]
    assert alert["message"] == "Exec to pod detected on pod test-pod"
    assert alert["ruleDescription"] == "Exec to pod detected on pod test-pod"
    assert alert["clusterName"] == "my-cluster"
    assert alert["podName"] == "test-pod"
    assert alert["ruleID"] == "R2000"


def test_alert_limit_notification(server):
    exporter = init_http_exporter(
        {"url": url_of(server), "maxAlertsPerMinute": 1, "method": "PUT"}, "my-cluster"
    )
    for _ in range(3):
        exporter.send_admission_alert(make_failure())
    alerts = [body["spec"]["alerts"][0] for _, _, _, body in server.received]
    assert [a["message"] for a in alerts] == [
        "Exec to pod detected on pod test-pod",
        "Alert limit reached",
        "Exec to pod detected on pod test-pod",
    ]
    assert alerts[1]["alertName"] == "AlertLimitReached"
    assert alerts[1]["severity"] == 1000
    assert alerts[1]["nodeName"] == "Operator"
    assert all(m == "PUT" for m, _, _, _ in server.received)


def test_non_2xx_is_not_raised(server):
    server.status = 500
    exporter = init_http_exporter({"url": url_of(server)}, "c")
    exporter.send_admission_alert(make_failure())
    assert len(server.received) == 1