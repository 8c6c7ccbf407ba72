"""Admission validator that runs bound rules against admission requests."""

from __future__ import annotations

import logging
from typing import Any

from .matching import GroupVersionResource
from .rules import AdmissionAttributes
from .webhook import StatusError

log = logging.getLogger(__name__)

# Every admission operation the API server can send to a webhook.
_HANDLED_OPERATIONS = frozenset({"CREATE", "UPDATE", "DELETE", "CONNECT"})


def _group_resource(gvr: GroupVersionResource) -> str:
    return f"{gvr.resource}.{gvr.group}" if gvr.group else gvr.resource


def _object_name(attrs: AdmissionAttributes) -> str:
    if attrs.name:
        return attrs.name
    obj = attrs.object if isinstance(attrs.object, dict) else {}
    metadata = obj.get("metadata")
    if isinstance(metadata, dict):
        return metadata.get("name") or metadata.get("generateName") or "Unknown"
    return "Unknown"


def _forbidden(attrs: AdmissionAttributes, cause: Any) -> StatusError:
    detail = "<nil>" if cause is None else str(cause)
    if not attrs.resource.group and not attrs.resource.resource:
        message = f"forbidden: {detail}"
    else:
        message = f'{_group_resource(attrs.resource)} "{_object_name(attrs)}" is forbidden: {detail}'
    return StatusError(message, reason="Forbidden", code=403)


class AdmissionValidator:
    """Checks admission requests against the rules bound to the object they touch.

    A failing rule is exported as an alert and reported as a Forbidden
    StatusError; the webhook audits it without denying the request.
    """

    def __init__(
        self,
        kubernetes_client: Any,
        object_cache: Any,
        exporter: Any,
        rule_binding_cache: Any,
    ) -> None:
        self._kubernetes_client = kubernetes_client
        self._object_cache = object_cache
        self._exporter = exporter
        self._rule_binding_cache = rule_binding_cache

    def get_clientset(self) -> Any:
        return self._object_cache.get_kubernetes_cache().get_clientset()

    def validate(self, attrs: AdmissionAttributes) -> None:
        """Raise StatusError when a bound rule fails for the request."""
        if attrs.object is None:
            return

        if attrs.resource.resource == "pods" and attrs.kind != "Pod":
            try:
                obj = self._fetch_resource(attrs)
            except LookupError as exc:
                raise _forbidden(attrs, f"failed to fetch resource: {exc}") from exc
        else:
            obj = attrs.object

        for rule in self._rule_binding_cache.list_rules_for_object(obj):
            failure = rule.process_event(attrs, self)
            if failure is not None:
                log.info("Rule failed: %s", failure.rule_id)
                self._exporter.send_admission_alert(failure)
                raise _forbidden(attrs, None)

    def _fetch_resource(self, attrs: AdmissionAttributes) -> dict:
        try:
            return self._kubernetes_client.get_resource(
                attrs.resource, attrs.namespace, attrs.name
            )
        except Exception as exc:  # any client failure means the object is unavailable
            raise LookupError(f"failed to fetch resource: {exc}") from exc

    def handles(self, operation: str) -> bool:
        """Return True for every admission operation (CREATE, UPDATE, DELETE, CONNECT)."""
        return str(operation).upper() in _HANDLED_OPERATIONS