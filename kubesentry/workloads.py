"""Lookups that find the workload controlling a pod named in an admission event."""

from __future__ import annotations

from typing import Any, Callable

from .rules import AdmissionAttributes


class WorkloadLookupError(LookupError):
    """Raised when pod or controller details cannot be worked out."""


def _metadata(obj: dict) -> dict:
    return obj.get("metadata") or {}


def _owner_references(obj: dict) -> list[dict]:
    return _metadata(obj).get("ownerReferences") or []


def get_pod_details(client: Any, pod_name: str, namespace: str) -> dict:
    """Fetch a pod through the client."""
    try:
        return client.get_pod(namespace, pod_name)
    except Exception as exc:
        raise WorkloadLookupError(f"failed to get pod: {exc}") from exc


def get_controller_details(
    event: AdmissionAttributes, client: Any
) -> tuple[str, str, str, str]:
    """Return kind, name, namespace of the pod's controller and the pod's node."""
    pod_name, namespace = event.name, event.namespace
    if pod_name == "" or namespace == "":
        raise WorkloadLookupError("invalid pod details from admission event")
    try:
        pod = get_pod_details(client, pod_name, namespace)
    except WorkloadLookupError as exc:
        raise WorkloadLookupError(f"failed to get pod details: {exc}") from exc

    kind, name, workload_namespace = extract_pod_owner(pod, client)
    node_name = (pod.get("spec") or {}).get("nodeName", "")
    return kind, name, workload_namespace, node_name


def _resolve_owner(
    fetch: Callable[[str, str], dict],
    owner_name: str,
    namespace: str,
    parent_kind: str,
    own_kind: str,
) -> tuple[str, str, str]:
    try:
        owned = fetch(namespace, owner_name)
    except Exception:
        owned = None
    if owned is not None:
        refs = _owner_references(owned)
        if refs and refs[0].get("kind") == parent_kind:
            return parent_kind, refs[0].get("name", ""), namespace
    return own_kind, owner_name, namespace


def extract_pod_owner(pod: dict, client: Any) -> tuple[str, str, str]:
    """Return kind, name and namespace of the controller that owns *pod*."""
    namespace = _metadata(pod).get("namespace", "")
    for ref in _owner_references(pod):
        kind = ref.get("kind", "")
        name = ref.get("name", "")
        if kind == "ReplicaSet":
            return _resolve_owner(client.get_replica_set, name, namespace, "Deployment", "ReplicaSet")
        if kind == "Job":
            return _resolve_owner(client.get_job, name, namespace, "CronJob", "Job")
        if kind in ("StatefulSet", "DaemonSet"):
            return kind, name, namespace
    return "", "", ""


def get_container_name_from_exec_event(event: AdmissionAttributes) -> str:
    """Return the container named in an exec request."""
    if event.subresource != "exec":
        raise WorkloadLookupError("not an exec subresource")
    obj = event.object
    if obj is None:
        raise WorkloadLookupError("event object is nil")
    if not isinstance(obj, dict):
        raise WorkloadLookupError("object is not an unstructured object")
    container = obj.get("container", "")
    if container is None:
        return ""
    if not isinstance(container, str):
        raise WorkloadLookupError("failed to decode PodExecOptions: container is not a string")
    return container