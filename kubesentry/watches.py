"""Self-healing watches over cluster resources, pooled per Group/Version/Resource.

Resource kinds the continuous scanner is interested in are mostly namespaced
(Pods, ReplicaSets, Deployments, DaemonSets, StatefulSets, Jobs, CronJobs,
ConfigMaps, Roles, RoleBindings, ServiceAccounts, Services, Ingresses,
NetworkPolicies). A few are cluster-wide: ClusterRoles, ClusterRoleBindings,
Namespaces, Nodes, webhook configurations, APIServices and PodSecurityPolicies.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Protocol

from .matching import GroupVersionResource

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
RETRY_DELAY = 1.0

_CLUSTER_SCOPED = frozenset(
    {
        "clusterrole",
        "clusterroles",
        "clusterrolebinding",
        "clusterrolebindings",
        "namespace",
        "namespaces",
        "node",
        "nodes",
        "mutatingwebhookconfiguration",
        "mutatingwebhookconfigurations",
        "validatingwebhookconfiguration",
        "validatingwebhookconfigurations",
        "apiservice",
        "apiservices",
        "podsecuritypolicy",
        "podsecuritypolicies",
    }
)


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


@dataclass(frozen=True)
class WatchEvent:
    type: EventType
    object: Any


class _Watch(Protocol):
    """A running watch: events arrive on ``result_chan``; ``None`` means closed."""

    result_chan: "queue.Queue[WatchEvent | None]"

    def stop(self) -> None: ...


class _DynamicClient(Protocol):
    def watch(self, gvr: GroupVersionResource, namespace: str | None) -> _Watch: ...


def is_namespace_scoped(gvr: GroupVersionResource) -> bool:
    """Tell whether the resource lives inside namespaces."""
    return gvr.resource.lower() not in _CLUSTER_SCOPED


def new_dynamic_watch(client: _DynamicClient, gvr: GroupVersionResource) -> _Watch:
    """Open a watch; namespaced resources are watched across all namespaces."""
    namespace = "" if is_namespace_scoped(gvr) else None
    return client.watch(gvr, namespace)


class SelfHealingWatch:
    """Keeps one watch alive, opening a new one whenever the current one closes."""

    def __init__(
        self,
        client: _DynamicClient,
        gvr: GroupVersionResource,
        make_watch: Callable[[Any, GroupVersionResource], _Watch] = new_dynamic_watch,
        retry_delay: float = RETRY_DELAY,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.client = client
        self.gvr = gvr
        self.current_watch: _Watch | None = None
        self._make_watch = make_watch
        self._retry_delay = retry_delay
        self._poll_interval = poll_interval

    def run_until_watch_closes(self, out: queue.Queue, stop_event: threading.Event) -> bool:
        """Forward events to *out*; True when the watch closed, False when stopped."""
        if self.current_watch is None:
            raise RuntimeError("no watch has been opened")
        events = self.current_watch.result_chan
        while not stop_event.is_set():
            try:
                event = events.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
            if event is None:
                return True
            out.put(event)
        return False

    def run(self, ready: threading.Event, out: queue.Queue, stop_event: threading.Event) -> None:
        """Watch until *stop_event* is set; *ready* is set once a watch is acquired."""
        while not stop_event.is_set():
            log.debug("creating watch for GVR %s", self.gvr)
            try:
                watch = self._make_watch(self.client, self.gvr)
            except Exception as exc:  # any failure to open a watch is retried
                log.warning("got error when creating a watch for gvr %s: %s", self.gvr, exc)
                stop_event.wait(self._retry_delay)
                continue
            log.debug("watch created")
            self.current_watch = watch
            ready.set()
            if not self.run_until_watch_closes(out, stop_event):
                watch.stop()


class WatchPool:
    """Runs a group of self-healing watches that feed one event queue."""

    def __init__(self, watches: Iterable[SelfHealingWatch]) -> None:
        self.watches = list(watches)
        self.threads: list[threading.Thread] = []

    def run(self, out: queue.Queue, stop_event: threading.Event) -> bool:
        """Start every watch and wait until each is ready; False if stopped first."""
        log.info("Watch pool: starting")
        readies = []
        for watch in self.watches:
            ready = threading.Event()
            thread = threading.Thread(
                target=watch.run,
                args=(ready, out, stop_event),
                name=f"watch-{watch.gvr}",
                daemon=True,
            )
            thread.start()
            self.threads.append(thread)
            readies.append(ready)

        for ready in readies:
            while not ready.wait(POLL_INTERVAL):
                if stop_event.is_set():
                    return False
        log.info("Watch pool: started ok")
        return True


def new_watch_pool(
    client: _DynamicClient, gvrs: Iterable[GroupVersionResource]
) -> WatchPool:
    """Build a pool with one self-healing watch per resource."""
    return WatchPool(SelfHealingWatch(client, gvr) for gvr in gvrs)