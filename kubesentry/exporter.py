"""Sends admission alerts to an HTTP endpoint, with a per-minute limit."""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Callable

from .rules import BaseRuntimeAlert, RuleAlert, RuleFailure, RulePriority, RuntimeAlertK8sDetails

log = logging.getLogger(__name__)

_ALERT_WINDOW_SECONDS = 60.0


class _AlertType(IntEnum):
    RULE = 0
    MALWARE = 1
    ADMISSION = 2


class ExporterConfigError(ValueError):
    """Raised when the HTTP exporter configuration is invalid."""


def _get_ci(data: dict, key: str) -> Any:
    if key in data:
        return data[key]
    wanted = key.lower()
    for name, value in data.items():
        if str(name).lower() == wanted:
            return value
    return None


@dataclass
class HTTPExporterConfig:
    url: str = ""
    headers: dict[str, str] | None = None
    timeout_seconds: int = 0
    method: str = ""
    max_alerts_per_minute: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "HTTPExporterConfig":
        if not isinstance(data, dict):
            raise ExporterConfigError("exporter config must be an object")
        headers = _get_ci(data, "headers")
        if headers is not None and not isinstance(headers, dict):
            raise ExporterConfigError("headers must be an object")
        timeout = _get_ci(data, "timeoutSeconds") or 0
        limit = _get_ci(data, "maxAlertsPerMinute") or 0
        if not isinstance(timeout, int) or not isinstance(limit, int):
            raise ExporterConfigError("timeoutSeconds and maxAlertsPerMinute must be integers")
        return cls(
            url=str(_get_ci(data, "url") or ""),
            headers={str(k): str(v) for k, v in headers.items()} if headers is not None else None,
            timeout_seconds=timeout,
            method=str(_get_ci(data, "method") or ""),
            max_alerts_per_minute=limit,
        )

    def validate(self) -> None:
        """Fill in defaults and raise ExporterConfigError on bad settings."""
        if self.method == "":
            self.method = "POST"
        elif self.method not in ("POST", "PUT"):
            raise ExporterConfigError("method must be POST or PUT")
        if self.timeout_seconds == 0:
            self.timeout_seconds = 5
        if self.max_alerts_per_minute == 0:
            self.max_alerts_per_minute = 100
        if self.headers is None:
            self.headers = {}
        if self.url == "":
            raise ExporterConfigError("URL is required")


class HTTPExporter:
    """Posts runtime alert lists built from rule failures."""

    def __init__(
        self,
        config: HTTPExporterConfig,
        cluster_name: str,
        host: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.cluster_name = cluster_name
        self.host = host
        self._clock = clock
        self._lock = threading.Lock()
        self._alert_count = 0
        self._alert_count_start: float | None = None
        self._alert_limit_notified = False

    def check_alert_limit(self) -> bool:
        """Count one alert and tell whether the per-minute limit is exceeded."""
        with self._lock:
            now = self._clock()
            if self._alert_count_start is None:
                self._alert_count_start = now
            if now - self._alert_count_start > _ALERT_WINDOW_SECONDS:
                self._alert_count_start = now
                self._alert_count = 0
                self._alert_limit_notified = False
            self._alert_count += 1
            return self._alert_count > self.config.max_alerts_per_minute

    def send_admission_alert(self, rule_failure: RuleFailure) -> None:
        limit_reached = self.check_alert_limit()
        if limit_reached and not self._alert_limit_notified:
            self._send_alert_limit_reached()
            self._alert_limit_notified = True
            return

        description = rule_failure.rule_alert.rule_description
        details = dataclasses.replace(
            rule_failure.runtime_alert_k8s_details, cluster_name=self.cluster_name
        )
        alert = {
            "message": description,
            "hostName": self.host,
            "alertType": int(_AlertType.ADMISSION),
            **BaseRuntimeAlert(timestamp=datetime.now(timezone.utc)).to_dict(),
            "admissionAlert": rule_failure.admission_alert.to_dict(),
            **details.to_dict(),
            **RuleAlert(rule_description=description).to_dict(),
            "ruleID": rule_failure.rule_id,
        }
        self._send_in_alert_list(alert, {})

    def _send_alert_limit_reached(self) -> None:
        alert = {
            "message": "Alert limit reached",
            "hostName": self.host,
            "alertType": int(_AlertType.RULE),
            **BaseRuntimeAlert(
                alert_name="AlertLimitReached",
                severity=int(RulePriority.SYSTEM_ISSUE),
                fix_suggestions="Check logs for more information",
            ).to_dict(),
            **RuntimeAlertK8sDetails(cluster_name=self.cluster_name, node_name="Operator").to_dict(),
        }
        log.error("Alert limit reached (alerts=%d)", self._alert_count)
        self._send_in_alert_list(alert, {})

    def _send_in_alert_list(self, alert: dict[str, Any], process_tree: dict[str, Any]) -> None:
        payload = {
            "kind": "RuntimeAlerts",
            "apiVersion": "kubescape.io/v1",
            "spec": {"alerts": [alert], "processTree": process_tree},
        }
        try:
            body = json.dumps(payload).encode("utf-8")
        except (TypeError, ValueError) as exc:
            log.error("failed to marshal HTTPAlertsList: %s", exc)
            return

        request = urllib.request.Request(
            self.config.url + "/v1/runtimealerts",
            data=body,
            method=self.config.method,
            headers=dict(self.config.headers or {}),
        )
        try:
            with urllib.request.urlopen(request, timeout=self.config.timeout_seconds) as response:
                response.read()
        except urllib.error.HTTPError as exc:
            log.error("Received non-2xx status code %d", exc.code)
        except (urllib.error.URLError, OSError, ValueError) as exc:
            log.error("failed to send HTTP request: %s", exc)


def init_http_exporter(
    config: HTTPExporterConfig | dict | None, cluster_name: str
) -> HTTPExporter:
    """Validate a copy of *config* and build an exporter from it."""
    if config is None:
        raise ExporterConfigError("HTTP exporter config is missing")
    if isinstance(config, dict):
        config = HTTPExporterConfig.from_dict(config)
    else:
        config = dataclasses.replace(
            config, headers=dict(config.headers) if config.headers is not None else None
        )
    config.validate()
    return HTTPExporter(config, cluster_name)