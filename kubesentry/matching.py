"""Resource matching rules and the Group/Version/Resource targets they produce."""

from __future__ import annotations

import itertools
import json
import re
from dataclasses import dataclass, field
from typing import IO, Any, Protocol


class UnexpectedGVRStringError(ValueError):
    """Raised when a Group Version Resource string has the wrong shape."""

    def __init__(self, text: str = "") -> None:
        message = "unexpected Group Version Resource string"
        super().__init__(f"{message}: {text!r}" if text else message)


_GVR_PATTERN = re.compile(r"^([^/,]*)/([^/,]*), Resource=(.*)$")


@dataclass(frozen=True)
class GroupVersionResource:
    group: str = ""
    version: str = ""
    resource: str = ""

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Resource={self.resource}"

    @classmethod
    def parse(cls, text: str) -> "GroupVersionResource":
        """Parse the ``group/version, Resource=resource`` form."""
        match = _GVR_PATTERN.match(text)
        if match is None:
            raise UnexpectedGVRStringError(text)
        return cls(*match.groups())


def _string_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{key} must be a list of strings")
    return list(value)


def _get_ci(data: dict, key: str) -> Any:
    if key in data:
        return data[key]
    wanted = key.lower()
    for name, value in data.items():
        if name.lower() == wanted:
            return value
    return None


@dataclass
class APIResourceMatch:
    """A rule that matches any combination of its groups, versions and resources."""

    groups: list[str] = field(default_factory=list)
    versions: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "APIResourceMatch":
        if not isinstance(data, dict):
            raise ValueError("API resource match must be an object")
        return cls(
            groups=_string_list(_get_ci(data, "apiGroups"), "apiGroups"),
            versions=_string_list(_get_ci(data, "apiVersions"), "apiVersions"),
            resources=_string_list(_get_ci(data, "resources"), "resources"),
        )


@dataclass
class MatchingRules:
    api_resources: list[APIResourceMatch] = field(default_factory=list)
    namespaces: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "MatchingRules":
        if not isinstance(data, dict):
            raise ValueError("matching rules must be a JSON object")
        matches = _get_ci(data, "match")
        if matches is not None and not isinstance(matches, list):
            raise ValueError("match must be a list")
        return cls(
            api_resources=[APIResourceMatch.from_dict(m) for m in matches or []],
            namespaces=_string_list(_get_ci(data, "namespaces"), "namespaces"),
        )


class MatchingRuleFetcher(Protocol):
    def fetch(self) -> MatchingRules | None: ...


def match_rule_to_gvrs(rule: APIResourceMatch) -> list[GroupVersionResource]:
    """Expand a rule into every group, version and resource combination."""
    return [
        GroupVersionResource(group, version, resource)
        for group, version, resource in itertools.product(
            rule.groups, rule.versions, rule.resources
        )
    ]


def parse_matching_rules(stream: IO) -> MatchingRules | None:
    """Read the whole stream and decode it as matching rules; ``null`` gives None."""
    data = stream.read()
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    decoded = json.loads(data)
    if decoded is None:
        return None
    return MatchingRules.from_dict(decoded)


class FileFetcher:
    """Fetches matching rules from a readable stream."""

    def __init__(self, stream: IO) -> None:
        self._stream = stream

    def fetch(self) -> MatchingRules | None:
        return parse_matching_rules(self._stream)


class TargetLoader:
    """Turns fetched matching rules into the list of resources to watch."""

    def __init__(self, fetcher: MatchingRuleFetcher) -> None:
        self._fetcher = fetcher

    def load_gvrs(self) -> list[GroupVersionResource]:
        rules = self._fetcher.fetch()
        if rules is None:
            return []
        return [gvr for match in rules.api_resources for gvr in match_rule_to_gvrs(match)]