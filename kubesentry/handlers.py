"""Event handlers that turn resource changes into scan commands and clean-ups."""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .rules import get_k8s_wlid
from .watches import EventType, WatchEvent

log = logging.getLogger(__name__)

RUN_KUBESCAPE = "kubescapeScan"
KUBESCAPE_SCAN_V1 = "scanV1"
ORPHANABLE_WORKLOAD_KINDS = frozenset({"Pod", "ReplicaSet", "Job"})


@dataclass
class ScanCommand:
    command_name: str
    wlid: str
    args: dict[str, Any] = field(default_factory=dict)


Dispatch = Callable[[ScanCommand], Any]


class _StorageClient(Protocol):
    def delete_workload_configuration_scan(self, namespace: str, name: str) -> None: ...

    def delete_workload_configuration_scan_summary(self, namespace: str, name: str) -> None: ...


def _metadata(obj: dict) -> dict:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _scan_object(obj: dict) -> dict | None:
    kind = obj.get("kind")
    if not isinstance(kind, str) or not kind:
        return None
    metadata = _metadata(obj)
    return {
        "apiVersion": obj.get("apiVersion") or "",
        "kind": kind,
        "metadata": {
            "name": metadata.get("name") or "",
            "namespace": metadata.get("namespace") or "",
        },
    }


def make_scan_command(cluster_name: str, obj: dict, is_delete: bool) -> ScanCommand:
    """Build the command that asks for a configuration scan of *obj*."""
    metadata = _metadata(obj)
    wlid = get_k8s_wlid(
        cluster_name,
        metadata.get("namespace") or "",
        obj.get("kind") or "",
        metadata.get("name") or "",
    )
    request = {
        "scanObject": _scan_object(obj),
        "isDeletedScanObject": is_delete,
        "hostScanner": False,
    }
    return ScanCommand(command_name=RUN_KUBESCAPE, wlid=wlid, args={KUBESCAPE_SCAN_V1: request})


def is_orphan_workload(obj: dict) -> bool:
    """Tell whether *obj* is a Pod, ReplicaSet or Job that a parent workload owns."""
    return obj.get("kind") in ORPHANABLE_WORKLOAD_KINDS and bool(
        _metadata(obj).get("ownerReferences")
    )


def _event_object(event: WatchEvent) -> dict:
    if not isinstance(event.object, dict):
        raise TypeError("watch event object is not an unstructured object")
    return copy.deepcopy(event.object)


def _trigger_scan_for(
    dispatch: Dispatch, cluster_name: str, obj: dict, is_delete: bool
) -> ScanCommand:
    metadata = _metadata(obj)
    log.info(
        "triggering scan (kind=%s, name=%s, namespace=%s)",
        obj.get("kind"), metadata.get("name"), metadata.get("namespace"),
    )
    command = make_scan_command(cluster_name, obj, is_delete)
    dispatch(command)
    return command


def _resource_slug(obj: dict) -> str:
    kind = obj.get("kind") or ""
    name = _metadata(obj).get("name") or ""
    if not kind or not name:
        raise ValueError("object needs a kind and a name to build its slug")
    return f"{kind}-{name}".lower()


class EventHandler(ABC):
    @abstractmethod
    def handle(self, event: WatchEvent) -> Any:
        """React to one watch event."""


class TriggeringHandler(EventHandler):
    """Requests a scan for every added or modified object."""

    def __init__(self, dispatch: Dispatch, cluster_name: str) -> None:
        self._dispatch = dispatch
        self._cluster_name = cluster_name

    def handle(self, event: WatchEvent) -> ScanCommand | None:
        if event.type not in (EventType.ADDED, EventType.MODIFIED):
            return None
        obj = _event_object(event)
        if is_orphan_workload(obj):
            return None
        return _trigger_scan_for(self._dispatch, self._cluster_name, obj, False)


class DeletedCleanerHandler(EventHandler):
    """Removes stored scan results of deleted objects and reports the deletion."""

    def __init__(self, dispatch: Dispatch, cluster_name: str, storage_client: _StorageClient) -> None:
        self._dispatch = dispatch
        self._cluster_name = cluster_name
        self._storage = storage_client

    def _delete_scan_artifacts(self, obj: dict) -> None:
        namespace = _metadata(obj).get("namespace") or ""
        name = _resource_slug(obj)
        try:
            self._storage.delete_workload_configuration_scan(namespace, name)
        except Exception as exc:
            log.error("cant delete workload configuration: %s", exc)
            raise
        try:
            self._storage.delete_workload_configuration_scan_summary(namespace, name)
        except Exception as exc:
            log.error("cant delete workload configuration summary: %s", exc)
            raise

    def handle(self, event: WatchEvent) -> ScanCommand | None:
        if event.type != EventType.DELETED:
            return None
        obj = _event_object(event)
        if is_orphan_workload(obj):
            return None
        try:
            self._delete_scan_artifacts(obj)
        except Exception as exc:  # clean-up failures must not stop the scan request
            log.error("failed to delete CRDs: %s", exc)
        return _trigger_scan_for(self._dispatch, self._cluster_name, obj, True)