from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Tuple

from keelson.core.errors import NoMatchingRule, NotFound, ServiceUnavailable
from keelson.core.models import Endpoint, IngressRuleSpec, Resource, ResourceKind
from keelson.networking.service_registry import ServiceRegistry


@dataclass(frozen=True)
class CompiledRule:
    """An ingress rule normalized for matching."""

    name: str
    host: str
    path_prefix: str
    target_service: str
    order: int

    def matches_path(self, path: str) -> bool:
        if self.path_prefix == "/":
            return True
        return path == self.path_prefix or path.startswith(self.path_prefix + "/")


def normalize_host(host: str) -> str:
    """Lower-case a request host and drop any port suffix."""
    value = host.strip().lower()
    if value.startswith("["):
        closing = value.find("]")
        return value[: closing + 1] if closing != -1 else value
    if value.count(":") == 1:
        value = value.split(":", 1)[0]
    return value.rstrip(".")


def normalize_path(path: str) -> str:
    """Drop query/fragment and make the path absolute."""
    value = path.split("?", 1)[0].split("#", 1)[0]
    if not value.startswith("/"):
        value = "/" + value
    return value


def _normalize_prefix(prefix: str) -> str:
    stripped = prefix.rstrip("/")
    return stripped or "/"


class IngressRouter:
    """
    Maps external (host, path) requests to service names.

    Rules are grouped in tiers: exact host, then `*.domain` wildcards (one
    label deep), then the `*` catch-all. Within the first tier that has a
    path match, the longest path prefix wins and ties go to the rule declared
    first. Prefixes match on path segment boundaries, so `/api` matches
    `/api` and `/api/x` but not `/apix`.
    """

    def __init__(self, registry: Optional[ServiceRegistry] = None) -> None:
        self.registry = registry
        self._lock = threading.Lock()
        self._rules: Tuple[CompiledRule, ...] = ()

    def set_rules(self, rules: Iterable[Resource]) -> None:
        """Replace the rule table. Iteration order is the declaration order."""
        compiled: List[CompiledRule] = []
        for order, resource in enumerate(rule for rule in rules if rule.kind == ResourceKind.INGRESS_RULE):
            spec = IngressRuleSpec.model_validate(resource.spec)
            compiled.append(CompiledRule(
                name=resource.name,
                host=spec.host,
                path_prefix=_normalize_prefix(spec.path_prefix),
                target_service=spec.target_service,
                order=order,
            ))
        with self._lock:
            self._rules = tuple(compiled)

    def rules(self) -> List[CompiledRule]:
        return list(self._rules)

    def match(self, host: str, path: str) -> CompiledRule:
        """Return the winning rule for a request, or raise NoMatchingRule."""
        request_host = normalize_host(host)
        request_path = normalize_path(path)
        rules = self._rules

        for tier in self._host_tiers(request_host, rules):
            candidates = [rule for rule in tier if rule.matches_path(request_path)]
            if candidates:
                return min(candidates, key=lambda rule: (-len(rule.path_prefix), rule.order))

        raise NoMatchingRule(host, path)

    def route(self, host: str, path: str) -> str:
        """Return the target service name for a request."""
        return self.match(host, path).target_service

    def resolve(self, host: str, path: str) -> Tuple[str, FrozenSet[Endpoint]]:
        """Route a request and return the live endpoints of its target service."""
        service_name = self.route(host, path)
        if self.registry is None:
            raise ServiceUnavailable(service_name)

        try:
            endpoints = self.registry.lookup(service_name)
        except NotFound:
            raise ServiceUnavailable(service_name) from None

        if not endpoints:
            raise ServiceUnavailable(service_name)
        return service_name, endpoints

    @staticmethod
    def _host_tiers(host: str, rules: Tuple[CompiledRule, ...]) -> List[List[CompiledRule]]:
        parent = host.split(".", 1)[1] if "." in host else None

        exact = [rule for rule in rules if rule.host == host]
        wildcard = [
            rule
            for rule in rules
            if rule.host.startswith("*.") and parent is not None and rule.host[2:] == parent
        ]
        catch_all = [rule for rule in rules if rule.host == "*"]
        return [exact, wildcard, catch_all]
