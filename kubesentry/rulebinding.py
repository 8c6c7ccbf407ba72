"""Cache of runtime alert rule bindings and the rules they bind to objects."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from .builtin_rules import RuleCreator
from .matching import GroupVersionResource
from .rules import BaseRule

log = logging.getLogger(__name__)

INCLUDE_CLUSTER_OBJECTS = "includeClusterObjects"
RULE_BINDING_KIND = "RuntimeRuleAlertBinding"
RULE_BINDING_GVR = GroupVersionResource("kubescape.io", "v1", "runtimerulealertbindings")

_OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")


class RuleBindingError(ValueError):
    """Raised when a rule binding object cannot be decoded."""


def _string_list(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise RuleBindingError(f"{what} must be a list of strings")
    return list(value)


@dataclass(frozen=True)
class _Requirement:
    key: str
    operator: str
    values: tuple[str, ...] = ()

    def matches(self, labels: dict[str, str]) -> bool:
        present = self.key in labels
        if self.operator == "In":
            return present and labels[self.key] in self.values
        if self.operator == "NotIn":
            return not present or labels[self.key] not in self.values
        if self.operator == "Exists":
            return present
        return not present

    def __str__(self) -> str:
        if self.operator == "Exists":
            return self.key
        if self.operator == "DoesNotExist":
            return f"!{self.key}"
        word = "in" if self.operator == "In" else "notin"
        return f"{self.key} {word} ({','.join(sorted(self.values))})"


@dataclass
class LabelSelector:
    """A label selector; an empty selector matches every object."""

    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[_Requirement] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "LabelSelector":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise RuleBindingError("label selector must be an object")
        labels = data.get("matchLabels") or {}
        if not isinstance(labels, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in labels.items()
        ):
            raise RuleBindingError("matchLabels must map strings to strings")
        expressions = data.get("matchExpressions") or []
        if not isinstance(expressions, list):
            raise RuleBindingError("matchExpressions must be a list")
        requirements = []
        for expr in expressions:
            if not isinstance(expr, dict):
                raise RuleBindingError("match expression must be an object")
            key = expr.get("key", "")
            operator = expr.get("operator", "")
            values = _string_list(expr.get("values"), "values")
            if not isinstance(key, str) or not isinstance(operator, str):
                raise RuleBindingError("match expression key and operator must be strings")
            if operator not in _OPERATORS:
                raise RuleBindingError(f"{operator!r} is not a valid label selector operator")
            if operator in ("In", "NotIn") and not values:
                raise RuleBindingError(f"values set can't be empty for operator {operator!r}")
            if operator in ("Exists", "DoesNotExist") and values:
                raise RuleBindingError(f"values set must be empty for operator {operator!r}")
            requirements.append(_Requirement(key, operator, tuple(values)))
        return cls(match_labels=dict(labels), match_expressions=requirements)

    def _requirements(self) -> list[_Requirement]:
        reqs = [_Requirement(k, "In", (v,)) for k, v in self.match_labels.items()]
        reqs.extend(self.match_expressions)
        return sorted(reqs, key=lambda r: r.key)

    def matches(self, labels: dict[str, str] | None) -> bool:
        labels = labels or {}
        return all(req.matches(labels) for req in self._requirements())

    def __str__(self) -> str:
        parts = []
        for key, value in sorted(self.match_labels.items()):
            parts.append((key, f"{key}={value}"))
        parts.extend((req.key, str(req)) for req in self.match_expressions)
        parts.sort(key=lambda item: item[0])
        return ",".join(text for _, text in parts)


@dataclass
class RuleBindingRule:
    rule_id: str = ""
    rule_name: str = ""
    rule_tags: list[str] = field(default_factory=list)
    parameters: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "RuleBindingRule":
        if not isinstance(data, dict):
            raise RuleBindingError("rule must be an object")
        rule_id = data.get("ruleID") or ""
        rule_name = data.get("ruleName") or ""
        if not isinstance(rule_id, str) or not isinstance(rule_name, str):
            raise RuleBindingError("ruleID and ruleName must be strings")
        parameters = data.get("parameters")
        if parameters is not None and not isinstance(parameters, dict):
            raise RuleBindingError("parameters must be an object")
        return cls(
            rule_id=rule_id,
            rule_name=rule_name,
            rule_tags=_string_list(data.get("ruleTags"), "ruleTags"),
            parameters=dict(parameters) if parameters is not None else None,
        )


@dataclass
class RuleBinding:
    name: str = ""
    namespace: str = ""
    pod_selector: LabelSelector = field(default_factory=LabelSelector)
    namespace_selector: LabelSelector = field(default_factory=LabelSelector)
    rules: list[RuleBindingRule] = field(default_factory=list)


@dataclass(frozen=True)
class _WatchResource:
    gvr: GroupVersionResource
    list_options: dict = field(default_factory=dict)


def _name_and_namespace(obj: Any) -> tuple[str, str]:
    if isinstance(obj, dict):
        metadata = obj.get("metadata") or {}
        return metadata.get("namespace") or "", metadata.get("name") or ""
    return getattr(obj, "namespace", "") or "", getattr(obj, "name", "") or ""


def unique_name(obj: Any) -> str:
    """Return ``namespace/name`` of an object or rule binding."""
    namespace, name = _name_and_namespace(obj)
    return f"{namespace}/{name}"


def rule_binding_from_object(obj: Any) -> RuleBinding:
    """Decode a rule binding from its unstructured form."""
    if not isinstance(obj, dict):
        raise RuleBindingError("rule binding must be an object")
    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise RuleBindingError("metadata must be an object")
    name = metadata.get("name") or ""
    namespace = metadata.get("namespace") or ""
    if not isinstance(name, str) or not isinstance(namespace, str):
        raise RuleBindingError("name and namespace must be strings")
    spec = obj.get("spec")
    if spec is None:
        spec = {}
    if not isinstance(spec, dict):
        raise RuleBindingError("spec must be an object")
    rules = spec.get("rules") or []
    if not isinstance(rules, list):
        raise RuleBindingError("rules must be a list")
    return RuleBinding(
        name=name,
        namespace=namespace,
        pod_selector=LabelSelector.from_dict(spec.get("podSelector")),
        namespace_selector=LabelSelector.from_dict(spec.get("namespaceSelector")),
        rules=[RuleBindingRule.from_dict(rule) for rule in rules],
    )


def resources_to_watch() -> list[_WatchResource]:
    """Resources the cache must be fed with: the rule bindings themselves."""
    return [_WatchResource(RULE_BINDING_GVR, {})]


def _diff(a: list[dict], b: list[dict]) -> list[dict]:
    remaining = {unique_name(item["pod"]): item for item in a}
    result = []
    for item in b:
        key = unique_name(item["pod"])
        if key in remaining:
            del remaining[key]
        else:
            result.append(item)
    result.extend(remaining.values())
    return result


class RuleBindingCache:
    """Keeps rule bindings and the rules created for them, keyed by binding."""

    def __init__(self, client: Any, rule_creator: Any = None) -> None:
        self._client = client
        self._rule_creator = rule_creator if rule_creator is not None else RuleCreator()
        self._lock = threading.RLock()
        self._bindings: dict[str, RuleBinding] = {}
        self._rules: dict[str, list[BaseRule]] = {}
        self._notifiers: list[Any] = []
        self.watch_resources = resources_to_watch()

    def list_rules_for_object(self, obj: dict) -> list[BaseRule]:
        """Return the rules of every binding that applies to *obj*."""
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace") or ""
        labels = metadata.get("labels") or {}

        with self._lock:
            bindings = list(self._bindings.values())

        names = []
        for binding in bindings:
            name = unique_name(binding)
            if namespace == "":
                if labels.get(INCLUDE_CLUSTER_OBJECTS, "true") == "false":
                    continue
                names.append(name)
                continue

            if not binding.pod_selector.matches(labels):
                continue

            selector = str(binding.namespace_selector)
            if selector:
                try:
                    listed = self._client.list_namespaces(selector)
                except Exception as exc:
                    log.error(
                        "failed to list namespaces (ruleBinding=%s, nsSelector=%s): %s",
                        name, selector, exc,
                    )
                    continue
                listed_names = [
                    (item.get("metadata") or {}).get("name", "") if isinstance(item, dict) else str(item)
                    for item in listed
                ]
                if not any(namespace in listed_name for listed_name in listed_names):
                    continue

            names.append(name)

        result: list[BaseRule] = []
        with self._lock:
            for name in names:
                result.extend(self._rules.get(name, []))
        return result

    def add_notifier(self, notifier: Any) -> None:
        """Register a queue-like object that receives binding notifications."""
        self._notifiers.append(notifier)

    def add_handler(self, obj: dict) -> None:
        if obj.get("kind") != RULE_BINDING_KIND:
            return
        try:
            binding = rule_binding_from_object(obj)
        except RuleBindingError as exc:
            log.error("failed to convert unstructured to rule binding: %s", exc)
            return
        self._notify(self._add_rule_binding(binding))

    def modify_handler(self, obj: dict) -> None:
        if obj.get("kind") != RULE_BINDING_KIND:
            return
        try:
            binding = rule_binding_from_object(obj)
        except RuleBindingError as exc:
            log.error("failed to convert unstructured to rule binding: %s", exc)
            return
        deleted = self._delete_rule_binding(unique_name(binding))
        added = self._add_rule_binding(binding)
        self._notify(_diff(deleted, added))

    def delete_handler(self, obj: dict) -> None:
        if obj.get("kind") != RULE_BINDING_KIND:
            return
        self._notify(self._delete_rule_binding(unique_name(obj)))

    def _notify(self, notifications: list[dict]) -> None:
        for notifier in self._notifiers:
            for item in notifications:
                notifier.put(item)

    def _add_rule_binding(self, binding: RuleBinding) -> list[dict]:
        name = unique_name(binding)
        log.info("RuleBinding added/modified: %s", name)
        rules = [rule for spec in binding.rules for rule in self._create_rule(spec)]
        with self._lock:
            self._bindings[name] = binding
            self._rules[name] = rules
        return []

    def _delete_rule_binding(self, name: str) -> list[dict]:
        log.info("RuleBinding deleted: %s", name)
        with self._lock:
            self._bindings.pop(name, None)
            self._rules.pop(name, None)
        return []

    def _create_rule(self, spec: RuleBindingRule) -> list[BaseRule]:
        def configured(rule: BaseRule) -> BaseRule:
            if spec.parameters is not None:
                rule.set_parameters(spec.parameters)
            return rule

        if spec.rule_id:
            rule = self._rule_creator.create_rule_by_id(spec.rule_id)
            if rule is not None:
                return [configured(rule)]
        if spec.rule_name:
            rule = self._rule_creator.create_rule_by_name(spec.rule_name)
            if rule is not None:
                return [configured(rule)]
        if spec.rule_tags:
            rules = self._rule_creator.create_rules_by_tags(spec.rule_tags)
            if rules:
                return [configured(rule) for rule in rules]
        return []