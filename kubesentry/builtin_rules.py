"""The built-in admission rules and the factory that creates them."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from .rules import (
    AdmissionAlert,
    AdmissionAttributes,
    BaseRule,
    BaseRuntimeAlert,
    RuleAlert,
    RuleDescriptor,
    RuleFailure,
    RulePriority,
    RuntimeAlertK8sDetails,
    UserInfo,
)
from .workloads import (
    WorkloadLookupError,
    get_container_name_from_exec_event,
    get_controller_details,
)

log = logging.getLogger(__name__)

R2000_ID = "R2000"
R2000_NAME = "Exec to pod"
R2001_ID = "R2001"
R2001_NAME = "Port forward"

_FIX_SUGGESTION = (
    "If this is a legitimate action, please consider removing this workload "
    "from the binding of this rule"
)


def _copy_user_info(info: UserInfo) -> UserInfo:
    return UserInfo(
        name=info.name,
        uid=info.uid,
        groups=list(info.groups),
        extra={key: list(values) for key, values in info.extra.items()},
    )


def _build_failure(
    rule: BaseRule,
    descriptor: RuleDescriptor,
    description: str,
    event: AdmissionAttributes,
    workload: tuple[str, str, str, str],
    container_name: str = "",
) -> RuleFailure:
    workload_kind, workload_name, workload_namespace, node_name = workload
    return RuleFailure(
        base_runtime_alert=BaseRuntimeAlert(
            alert_name=rule.name,
            fix_suggestions=_FIX_SUGGESTION,
            severity=int(descriptor.priority),
            timestamp=datetime.now(timezone.utc),
        ),
        admission_alert=AdmissionAlert(
            kind=event.group_version_kind,
            object_name=event.name,
            request_namespace=event.namespace,
            resource=event.resource,
            operation=event.operation,
            object=event.object,
            subresource=event.subresource,
            user_info=_copy_user_info(event.user_info),
            dry_run=event.dry_run,
            options=event.options,
            old_object=event.old_object,
        ),
        rule_alert=RuleAlert(rule_description=description),
        runtime_alert_k8s_details=RuntimeAlertK8sDetails(
            pod_name=event.name,
            namespace=event.namespace,
            workload_name=workload_name,
            workload_namespace=workload_namespace,
            workload_kind=workload_kind,
            node_name=node_name,
            container_name=container_name,
        ),
        rule_id=rule.id,
    )


def _lookup_workload(event: AdmissionAttributes, access: Any) -> tuple[str, str, str, str] | None:
    try:
        return get_controller_details(event, access.get_clientset())
    except WorkloadLookupError as exc:
        log.error("Failed to get parent workload details: %s", exc)
        return None


class R2000ExecToPod(BaseRule):
    """Reports exec sessions opened into a pod."""

    id = R2000_ID
    name = R2000_NAME

    def process_event(self, event: AdmissionAttributes | None, access: Any) -> RuleFailure | None:
        if event is None or event.kind != "PodExecOptions":
            return None

        workload = _lookup_workload(event, access)
        if workload is None:
            return None

        try:
            container_name = get_container_name_from_exec_event(event)
        except WorkloadLookupError as exc:
            log.error("Failed to get container name from exec to pod event: %s", exc)
            container_name = ""

        return _build_failure(
            self,
            R2000_EXEC_TO_POD_DESCRIPTOR,
            f"Exec to pod detected on pod {event.name}",
            event,
            workload,
            container_name,
        )


class R2001PortForward(BaseRule):
    """Reports port forwarding into a pod."""

    id = R2001_ID
    name = R2001_NAME

    def process_event(self, event: AdmissionAttributes | None, access: Any) -> RuleFailure | None:
        if event is None or event.kind != "PodPortForwardOptions":
            return None

        workload = _lookup_workload(event, access)
        if workload is None:
            return None

        return _build_failure(
            self,
            R2001_PORT_FORWARD_DESCRIPTOR,
            f"Port forward detected on pod {event.name}",
            event,
            workload,
        )


R2000_EXEC_TO_POD_DESCRIPTOR = RuleDescriptor(
    id=R2000_ID,
    name=R2000_NAME,
    description="Detecting exec to pod",
    tags=["exec"],
    priority=RulePriority.LOW,
    rule_creation_func=R2000ExecToPod,
)

R2001_PORT_FORWARD_DESCRIPTOR = RuleDescriptor(
    id=R2001_ID,
    name=R2001_NAME,
    description="Detecting port forward",
    tags=["portforward"],
    priority=RulePriority.LOW,
    rule_creation_func=R2001PortForward,
)


class RuleCreator:
    """Creates rule instances by tag, identifier or name."""

    def __init__(self, descriptors: list[RuleDescriptor] | None = None) -> None:
        if descriptors is None:
            descriptors = [R2000_EXEC_TO_POD_DESCRIPTOR, R2001_PORT_FORWARD_DESCRIPTOR]
        self._descriptors = list(descriptors)

    def create_rules_by_tags(self, tags: list[str]) -> list[BaseRule]:
        return [d.rule_creation_func() for d in self._descriptors if d.has_tags(tags)]

    def create_rule_by_id(self, rule_id: str) -> BaseRule | None:
        for descriptor in self._descriptors:
            if descriptor.id == rule_id:
                return descriptor.rule_creation_func()
        return None

    def create_rule_by_name(self, name: str) -> BaseRule | None:
        for descriptor in self._descriptors:
            if descriptor.name == name:
                return descriptor.rule_creation_func()
        return None

    def get_all_rule_descriptors(self) -> list[RuleDescriptor]:
        return list(self._descriptors)