import pytest

from keelson.core.errors import NoMatchingRule, ServiceUnavailable
from keelson.core.models import Endpoint, Instance, InstanceHealth, Resource, ResourceKind
from keelson.networking.ingress import IngressRouter, normalize_host, normalize_path
from keelson.networking.service_registry import ServiceRegistry


def _rule(name: str, host: str, path_prefix: str, target: str) -> Resource:
    return Resource(
        kind=ResourceKind.INGRESS_RULE,
        name=name,
        spec={"host": host, "path_prefix": path_prefix, "target_service": target},
    )


def _router(*rules: Resource, registry=None) -> IngressRouter:
    router = IngressRouter(registry)
    router.set_rules(rules)
    return router


def test_longest_prefix_wins_regardless_of_declaration_order():
    router = _router(_rule("root", "h", "/", "frontend"), _rule("api", "h", "/api", "backend"))

    assert router.route("h", "/api/x") == "backend"
    assert router.route("h", "/api") == "backend"
    assert router.route("h", "/about") == "frontend"


def test_prefix_matches_on_segment_boundaries():
    router = _router(_rule("root", "h", "/", "frontend"), _rule("api", "h", "/api/", "backend"))

    assert router.route("h", "/apix") == "frontend"
    assert router.route("h", "/api/v1?debug=1") == "backend"


def test_ties_go_to_first_declared_rule():
    router = _router(_rule("first", "h", "/api", "one"), _rule("second", "h", "/api", "two"))

    assert router.match("h", "/api/x").name == "first"


def test_exact_host_beats_wildcard_and_catch_all():
    router = _router(
        _rule("any", "*", "/", "fallback"),
        _rule("wild", "*.shop.test", "/", "tenant"),
        _rule("exact", "www.shop.test", "/", "www"),
    )

    assert router.route("WWW.Shop.Test:8443", "/") == "www"
    assert router.route("eu.shop.test", "/") == "tenant"
    assert router.route("a.b.shop.test", "/") == "fallback"
    assert router.route("other.test", "/") == "fallback"


def test_host_without_matching_path_falls_through_to_next_tier():
    router = _router(_rule("exact", "h.test", "/admin", "admin"), _rule("any", "*", "/", "fallback"))

    assert router.route("h.test", "/admin/users") == "admin"
    assert router.route("h.test", "/shop") == "fallback"


def test_rule_host_trailing_dot_is_ignored():
    router = _router(_rule("fqdn", "Shop.Example.COM.", "/", "web"), _rule("wild", "*.shop.test.", "/", "tenant"))

    assert router.route("shop.example.com", "/") == "web"
    assert router.route("shop.example.com.", "/cart") == "web"
    assert router.route("eu.shop.test", "/") == "tenant"


def test_no_rule_raises_no_matching_rule():
    router = _router(_rule("api", "h", "/api", "backend"))

    with pytest.raises(NoMatchingRule):
        router.route("other", "/api")
    with pytest.raises(NoMatchingRule):
        router.route("h", "/")


def test_resolve_distinguishes_service_unavailable():
    registry = ServiceRegistry()
    registry.set_services([
        Resource(kind=ResourceKind.SERVICE, name="backend", spec={"selector": {"match_labels": {"app": "api"}}}),
    ])
    router = _router(_rule("api", "h", "/api", "backend"), _rule("docs", "h", "/docs", "docs"), registry=registry)

    with pytest.raises(ServiceUnavailable):
        router.resolve("h", "/api")
    with pytest.raises(ServiceUnavailable):
        router.resolve("h", "/docs")

    registry.register_instance(Instance(
        id="api-1", workload_name="api", workload_generation=1, address="10.0.0.9", port=80, labels={"app": "api"},
    ))
    registry.publish("api-1", InstanceHealth.READY)

    assert router.resolve("h", "/api/users") == ("backend", frozenset({Endpoint(address="10.0.0.9", port=80)}))


def test_normalizers():
    assert normalize_host("Example.COM.") == "example.com"
    assert normalize_host("[::1]:8080") == "[::1]"
    assert normalize_path("api/x#frag") == "/api/x"


def test_wildcard_host_must_be_leading_label():
    with pytest.raises(ValueError):
        _rule("bad", "api.*.test", "/", "backend")
