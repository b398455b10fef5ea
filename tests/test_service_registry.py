import threading

import pytest

from keelson.core.errors import NotFound
from keelson.core.models import Endpoint, Instance, InstanceHealth, Resource, ResourceKind
from keelson.networking.service_registry import ServiceRegistry


def _service(name: str, selector: dict, target_port=None) -> Resource:
    spec = {"selector": selector}
    if target_port is not None:
        spec["target_port"] = target_port
    return Resource(kind=ResourceKind.SERVICE, name=name, spec=spec)


def _instance(instance_id: str, address: str, labels: dict, port: int = 8080) -> Instance:
    return Instance(
        id=instance_id,
        workload_name=labels.get("app", "web"),
        workload_generation=1,
        address=address,
        port=port,
        labels=labels,
    )


def _registry() -> ServiceRegistry:
    registry = ServiceRegistry()
    registry.set_services([_service("web", {"match_labels": {"app": "web"}})])
    return registry


def test_lookup_only_returns_ready_instances():
    registry = _registry()
    registry.register_instance(_instance("a", "10.0.0.1", {"app": "web"}))
    registry.register_instance(_instance("b", "10.0.0.2", {"app": "web"}))

    assert registry.lookup("web") == frozenset()

    registry.publish("a", InstanceHealth.READY)
    registry.publish("b", InstanceHealth.READY)
    registry.publish("b", InstanceHealth.TERMINATING)

    assert registry.lookup("web") == frozenset({Endpoint(address="10.0.0.1", port=8080)})

    registry.publish("a", InstanceHealth.FAILED)
    assert registry.lookup("web") == frozenset()


def test_selector_and_target_port_shape_endpoints():
    registry = ServiceRegistry()
    registry.set_services([
        _service("api", {"match_labels": {"app": "api"}}, target_port=9000),
        _service("canary", {"match_expressions": [{"key": "track", "operator": "In", "values": ["canary"]}]}),
        _service("nothing", {}),
    ])
    registry.register_instance(_instance("a", "10.0.0.1", {"app": "api", "track": "stable"}))
    registry.register_instance(_instance("b", "10.0.0.2", {"app": "api", "track": "canary"}, port=7000))
    registry.publish("a", InstanceHealth.READY)
    registry.publish("b", InstanceHealth.READY)

    assert registry.lookup("api") == frozenset({
        Endpoint(address="10.0.0.1", port=9000),
        Endpoint(address="10.0.0.2", port=9000),
    })
    assert registry.lookup("canary") == frozenset({Endpoint(address="10.0.0.2", port=7000)})
    assert registry.lookup("nothing") == frozenset()


def test_unknown_service_and_instance_raise_not_found():
    registry = _registry()

    with pytest.raises(NotFound):
        registry.lookup("ghost")
    with pytest.raises(NotFound):
        registry.publish("ghost", InstanceHealth.READY)


def test_snapshot_taken_before_transition_is_unchanged():
    registry = _registry()
    registry.register_instance(_instance("a", "10.0.0.1", {"app": "web"}))
    registry.publish("a", InstanceHealth.READY)

    before = registry.snapshot()
    registry.publish("a", InstanceHealth.TERMINATING)
    after = registry.snapshot()

    assert len(before.lookup("web")) == 1
    assert after.lookup("web") == frozenset()
    assert after.version == before.version + 1


def test_forget_removes_ready_endpoint():
    registry = _registry()
    registry.register_instance(_instance("a", "10.0.0.1", {"app": "web"}))
    registry.publish("a", InstanceHealth.READY)

    registry.forget("a")

    assert registry.lookup("web") == frozenset()
    assert registry.instances() == []


def test_concurrent_lookups_never_see_a_partial_swap():
    registry = _registry()
    for index in range(1, 4):
        registry.register_instance(_instance(f"i{index}", f"10.0.0.{index}", {"app": "web"}))
        registry.publish(f"i{index}", InstanceHealth.READY)

    sizes = set()
    stop = threading.Event()

    def reader():
        while not stop.is_set():
            sizes.add(len(registry.lookup("web")))

    thread = threading.Thread(target=reader)
    thread.start()
    for _ in range(200):
        registry.publish("i3", InstanceHealth.PENDING)
        registry.publish("i3", InstanceHealth.READY)
    stop.set()
    thread.join(timeout=5)

    assert sizes <= {2, 3}
