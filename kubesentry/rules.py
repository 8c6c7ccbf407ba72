"""Admission rule building blocks: events, alerts, failures and descriptors."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Callable, ClassVar

from .matching import GroupVersionResource

if TYPE_CHECKING:
    from typing import Protocol

    class _ClientAccess(Protocol):
        def get_clientset(self) -> Any: ...


WLID_PREFIX = "wlid://"
_CLUSTER_PREFIX = "cluster-"
_NAMESPACE_PREFIX = "namespace-"
_ZERO_TIME = "0001-01-01T00:00:00Z"


class RulePriority(IntEnum):
    NONE = 0
    LOW = 1
    MED = 5
    HIGH = 8
    CRITICAL = 10
    SYSTEM_ISSUE = 1000


def _format_time(ts: datetime | None) -> str:
    if ts is None:
        return _ZERO_TIME
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _gvr_dict(gvr: GroupVersionResource) -> dict[str, str]:
    return {"group": gvr.group, "version": gvr.version, "resource": gvr.resource}


@dataclass
class UserInfo:
    name: str = ""
    uid: str = ""
    groups: list[str] = field(default_factory=list)
    extra: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "username": self.name,
            "uid": self.uid,
            "groups": list(self.groups),
            "extra": {key: list(values) for key, values in self.extra.items()},
        }


@dataclass
class AdmissionAttributes:
    """One admission request as seen by the rules."""

    object: dict | None = None
    old_object: dict | None = None
    kind: str = ""
    kind_group: str = ""
    kind_version: str = ""
    namespace: str = ""
    name: str = ""
    resource: GroupVersionResource = field(default_factory=GroupVersionResource)
    subresource: str = ""
    operation: str = ""
    options: dict | None = None
    dry_run: bool = False
    user_info: UserInfo = field(default_factory=UserInfo)

    @property
    def group_version_kind(self) -> dict[str, str]:
        return {"group": self.kind_group, "version": self.kind_version, "kind": self.kind}


@dataclass
class BaseRuntimeAlert:
    alert_name: str = ""
    severity: int = 0
    fix_suggestions: str = ""
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "alertName": self.alert_name,
            "severity": self.severity,
            "fixSuggestions": self.fix_suggestions,
            "timestamp": _format_time(self.timestamp),
        }


@dataclass
class RuleAlert:
    rule_description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"ruleDescription": self.rule_description}


@dataclass
class AdmissionAlert:
    kind: dict[str, str] = field(default_factory=dict)
    object_name: str = ""
    request_namespace: str = ""
    resource: GroupVersionResource = field(default_factory=GroupVersionResource)
    operation: str = ""
    object: dict | None = None
    subresource: str = ""
    user_info: UserInfo | None = None
    dry_run: bool = False
    options: dict | None = None
    old_object: dict | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": dict(self.kind),
            "objectName": self.object_name,
            "requestNamespace": self.request_namespace,
            "resource": _gvr_dict(self.resource),
            "operation": self.operation,
            "object": self.object,
            "subresource": self.subresource,
            "userInfo": self.user_info.to_dict() if self.user_info else None,
            "dryRun": self.dry_run,
            "options": self.options,
            "oldObject": self.old_object,
        }


@dataclass
class RuntimeAlertK8sDetails:
    cluster_name: str = ""
    container_name: str = ""
    namespace: str = ""
    pod_name: str = ""
    workload_name: str = ""
    workload_namespace: str = ""
    workload_kind: str = ""
    node_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "clusterName": self.cluster_name,
            "containerName": self.container_name,
            "namespace": self.namespace,
            "podName": self.pod_name,
            "workloadName": self.workload_name,
            "workloadNamespace": self.workload_namespace,
            "workloadKind": self.workload_kind,
            "nodeName": self.node_name,
        }


def get_k8s_wlid(cluster_name: str, namespace: str, kind: str, name: str) -> str:
    """Build the workload identifier of a Kubernetes object."""
    return (
        f"{WLID_PREFIX}{_CLUSTER_PREFIX}{cluster_name}/"
        f"{_NAMESPACE_PREFIX}{namespace}/{kind.lower()}-{name}"
    )


def parse_wlid(wlid: str) -> dict[str, str]:
    """Split a workload identifier into cluster, namespace, kind and name.

    Parts that are missing or malformed come back as empty strings.
    """
    result = {"cluster": "", "namespace": "", "kind": "", "name": ""}
    if not wlid.startswith(WLID_PREFIX):
        return result
    parts = wlid[len(WLID_PREFIX):].split("/")
    if parts and parts[0].startswith(_CLUSTER_PREFIX):
        result["cluster"] = parts[0][len(_CLUSTER_PREFIX):]
    if len(parts) > 1 and parts[1].startswith(_NAMESPACE_PREFIX):
        result["namespace"] = parts[1][len(_NAMESPACE_PREFIX):]
    if len(parts) > 2 and "-" in parts[2]:
        kind, _, name = parts[2].partition("-")
        result["kind"] = kind
        result["name"] = name
    return result


@dataclass
class RuleFailure:
    """What a rule reports when an admission event breaks it."""

    base_runtime_alert: BaseRuntimeAlert = field(default_factory=BaseRuntimeAlert)
    runtime_process_details: dict[str, Any] = field(default_factory=dict)
    rule_alert: RuleAlert = field(default_factory=RuleAlert)
    admission_alert: AdmissionAlert = field(default_factory=AdmissionAlert)
    runtime_alert_k8s_details: RuntimeAlertK8sDetails = field(
        default_factory=RuntimeAlertK8sDetails
    )
    rule_id: str = ""

    def set_workload_details(self, workload_details: str) -> None:
        """Fill the workload fields from a workload identifier; empty input is ignored."""
        if workload_details == "":
            return
        parts = parse_wlid(workload_details)
        details = self.runtime_alert_k8s_details
        details.cluster_name = parts["cluster"]
        details.workload_kind = parts["kind"]
        details.workload_namespace = parts["namespace"]
        details.workload_name = parts["name"]


@dataclass
class RuleDescriptor:
    id: str
    name: str
    description: str = ""
    priority: int = RulePriority.NONE
    tags: list[str] = field(default_factory=list)
    rule_creation_func: Callable[[], "BaseRule"] | None = None

    def has_tags(self, tags: list[str]) -> bool:
        """Tell whether any of *tags* is one of this rule's tags."""
        return any(tag in self.tags for tag in tags)


class BaseRule:
    """Common state of admission rules: a thread-safe parameter map."""

    id: ClassVar[str] = ""
    name: ClassVar[str] = ""

    def __init__(self) -> None:
        self._parameters: dict[str, Any] = {}
        self._lock = threading.Lock()

    def set_parameters(self, parameters: dict[str, Any]) -> None:
        with self._lock:
            self._parameters.update(parameters)

    def get_parameters(self) -> dict[str, Any]:
        """Return a copy of the rule parameters."""
        with self._lock:
            return dict(self._parameters)

    def process_event(
        self, event: AdmissionAttributes | None, access: "_ClientAccess"
    ) -> RuleFailure | None:
        """Check an admission event; a plain rule reports no failure."""
        return None