from pathlib import Path

import pytest

from keelson.core.errors import NoMatchingRule
from keelson.core.models import ResourceKind, WorkloadPhase
from keelson.query import describe_workload, forward_target, list_instances, list_resources
from keelson.runtime.container import SimulatedRuntime
from keelson.runtime.controller import ApplyStatus, ClusterController

STACK = """
kind: Secret
name: mongo-creds
string_data:
  username: admin
  password: hunter2
---
kind: Workload
name: mongo
spec:
  image: mongo:7
  port: 27017
  env:
    - name: MONGO_INITDB_ROOT_USERNAME
      secret_ref: {name: mongo-creds, key: username}
    - name: MONGO_INITDB_ROOT_PASSWORD
      secret_ref: {name: mongo-creds, key: password}
---
kind: Service
name: mongo
spec:
  selector:
    match_labels: {app: mongo}
---
kind: Workload
name: web
spec:
  image: shop/web:1
  replicas: 2
  port: 3000
  env:
    - name: DB_PASSWORD
      secret_ref: {name: mongo-creds, key: password}
---
kind: Service
name: web
spec:
  selector:
    match_labels: {app: web}
---
kind: IngressRule
name: web
spec:
  host: shop.test
  path_prefix: /
  target_service: web
"""


def _write_project(root_dir: Path, config: str = "") -> None:
    (root_dir / "stack.yaml").write_text(STACK)
    if config:
        (root_dir / "keelson.yaml").write_text(config)


@pytest.fixture
def controller(root_dir: Path):
    _write_project(root_dir, "reconciler:\n  grace_period_ms: 200\n")
    built = ClusterController(root_dir, runtime=SimulatedRuntime())
    yield built
    built.stop()


def test_controller_reads_config_sections(controller: ClusterController):
    assert controller.context.reconciler.grace_period_ms == 200
    assert controller.context.settings.env == "development"


def test_load_manifests_and_converge(controller: ClusterController):
    events = []
    controller.on_apply_success = events.append

    result = controller.load_manifests()

    assert result.status == ApplyStatus.SUCCESS
    assert result.summary.applied == 6
    assert len(events) == 1

    assert controller.converge(max_ticks=10) is True
    assert {report.name: report.phase for report in controller.reconciler.statuses()} == {
        "mongo": WorkloadPhase.STEADY,
        "web": WorkloadPhase.STEADY,
    }

    service_name, endpoints = controller.router.resolve("shop.test", "/cart")
    assert service_name == "web"
    assert len(endpoints) == 2
    assert forward_target(controller, "mongo").port == 27017


def test_invalid_manifest_reports_failure_but_applies_valid_documents(controller: ClusterController, root_dir: Path):
    (root_dir / "broken.yaml").write_text("kind: Workload\nname: broken\nspec: {replicas: 1}\n")
    failures = []
    controller.on_apply_failure = failures.append

    result = controller.load_manifests(prune=True)

    assert result.status == ApplyStatus.FAILURE
    assert [diag.error_code for diag in result.diagnostics] == ["ERR_INVALID_SPEC", "ERR_PRUNE_SKIPPED"]
    assert result.summary.applied == 6
    assert len(failures) == 1
    records, total = controller.context.get_runtime_errors()
    assert total == 2
    assert records[0].error_class == "ERR_INVALID_SPEC"


def test_blocked_workload_is_tracked_as_runtime_error(root_dir: Path):
    controller = ClusterController(root_dir, runtime=SimulatedRuntime())
    try:
        controller.apply_text(
            "kind: Workload\nname: web\nspec:\n  image: shop/web:1\n  env:\n"
            "    - name: TOKEN\n      secret_ref: {name: api-token, key: token}\n"
        )
        controller.tick()

        records, _ = controller.context.get_runtime_errors()
        assert [(r.object_name, r.error_class) for r in records] == [("web", "ERR_UNRESOLVED_REFERENCE")]

        description = describe_workload(controller, "web")
        assert description.status.phase == WorkloadPhase.PENDING
        assert description.missing_references == ["Secret/api-token:token"]

        controller.apply_text("kind: Secret\nname: api-token\nstring_data: {token: abc}\n")
        controller.converge(max_ticks=5)

        active, _ = controller.context.get_runtime_errors()
        history, _ = controller.context.get_runtime_errors(include_resolved=True)
        assert active == []
        assert [record.status for record in history] == ["resolved"]
    finally:
        controller.stop()


def test_ingress_rules_follow_store_changes(controller: ClusterController):
    controller.load_manifests()

    assert controller.router.route("shop.test", "/") == "web"

    controller.delete(ResourceKind.INGRESS_RULE, "web")

    with pytest.raises(NoMatchingRule):
        controller.router.route("shop.test", "/")


def test_queries_list_resources_and_instances(controller: ClusterController):
    controller.load_manifests()
    controller.converge(max_ticks=10)

    rows = list_resources(controller, ResourceKind.WORKLOAD)
    assert [row.name for row in rows] == ["mongo", "web"]
    assert [instance.workload_name for instance in list_instances(controller)] == ["mongo", "web", "web"]
    assert len(list_instances(controller, workload_name="web")) == 2


def test_state_file_persists_store_between_controllers(root_dir: Path):
    _write_project(root_dir, "store:\n  state_file: .keelson/state.json\n")
    first = ClusterController(root_dir, runtime=SimulatedRuntime())
    first.load_manifests()
    first.tick()
    first.stop()

    assert (root_dir / ".keelson" / "state.json").exists()

    second = ClusterController(root_dir, runtime=SimulatedRuntime())
    try:
        assert second.store.get(ResourceKind.WORKLOAD, "web").generation == 1
        assert second.store.pin_count(ResourceKind.WORKLOAD, "web", 1) == 0
        assert second.router.route("shop.test", "/") == "web"
    finally:
        second.stop()


def test_watcher_applies_manifest_changes(root_dir: Path):
    _write_project(root_dir, "watch:\n  enabled: true\n  debounce_ms: 100\n")
    controller = ClusterController(root_dir, runtime=SimulatedRuntime())
    try:
        controller.load_manifests()
        controller.start(background=False)

        (root_dir / "extra.yaml").write_text("kind: ConfigMap\nname: flags\ndata: {beta: 'on'}\n")

        assert controller.poll_once(now=1.0) is None
        result = controller.poll_once(now=1.2)

        assert result is not None
        assert result.summary.resources == {"ConfigMap/flags": 1}
        assert result.changes is not None
        assert result.changes.paths == ["extra.yaml"]
        assert result.changes.kinds == {ResourceKind.CONFIG_MAP}
        assert controller.store.exists(ResourceKind.CONFIG_MAP, "flags")
    finally:
        controller.stop()


def test_recovered_start_failure_is_resolved_in_runtime_errors(root_dir: Path):
    (root_dir / "keelson.yaml").write_text("reconciler:\n  backoff_base_ms: 0\n")
    runtime = SimulatedRuntime()
    controller = ClusterController(root_dir, runtime=runtime)
    try:
        runtime.fail_image("shop/web:1")
        controller.apply_text("kind: Workload\nname: web\nspec: {image: shop/web:1, replicas: 1}\n")
        controller.tick()

        records, _ = controller.context.get_runtime_errors()
        assert [record.error_class for record in records] == ["ERR_INSTANCE_START"]

        runtime.heal_image("shop/web:1")
        assert controller.converge(max_ticks=5) is True

        controller.apply_text("kind: Workload\nname: web\nspec: {image: shop/web:1, replicas: 2}\n")
        assert controller.converge(max_ticks=5) is True

        active, _ = controller.context.get_runtime_errors()
        history, _ = controller.context.get_runtime_errors(include_resolved=True)
        assert active == []
        assert [record.status for record in history] == ["resolved"]
    finally:
        controller.stop()
