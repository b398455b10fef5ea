from keelson.core.context import ClusterContext
from keelson.utils.diagnostics import KeelsonDiagnostic, has_blocking_diagnostics


def _diag(path: str, code: str, severity: str = "error", message: str = "broken") -> KeelsonDiagnostic:
    return KeelsonDiagnostic(file_path=path, error_code=code, message=message, severity=severity)


def test_context_initialization_defaults(monkeypatch):
    """Context loads with empty state and default settings."""
    monkeypatch.delenv("KEELSON_ENV", raising=False)

    ctx = ClusterContext()

    assert ctx.app == {}
    assert ctx.settings.env == "development"
    assert ctx.store.state_file is None
    assert ctx.watch.enabled is False


def test_context_settings_from_env(monkeypatch):
    monkeypatch.setenv("KEELSON_ENV", "production")
    monkeypatch.setenv("KEELSON_CLUSTER_NAME", "shop")

    ctx = ClusterContext()

    assert ctx.settings.env == "production"
    assert ctx.settings.cluster_name == "shop"


def test_runtime_error_set_tracks_active_and_resolved():
    ctx = ClusterContext()

    ctx.sync_runtime_error_set([_diag("Workload/web", "ERR_UNRESOLVED_REFERENCE")], source="reconciler")
    ctx.sync_runtime_error_set(
        [_diag("Workload/web", "ERR_UNRESOLVED_REFERENCE", message="still broken")],
        source="reconciler",
    )

    records, total = ctx.get_runtime_errors()
    assert total == 1
    assert records[0].object_name == "web"
    assert records[0].message == "still broken"
    assert records[0].first_seen_index == 1
    assert records[0].last_seen_index == 2

    ctx.sync_runtime_error_set([], source="reconciler")

    active, _ = ctx.get_runtime_errors()
    everything, _ = ctx.get_runtime_errors(include_resolved=True)
    assert active == []
    assert [(r.status, r.resolved_at_index) for r in everything] == [("resolved", 3)]


def test_runtime_error_sources_do_not_clear_each_other():
    ctx = ClusterContext()
    ctx.sync_runtime_error_set([_diag("stack.yaml", "ERR_INVALID_SPEC")], source="manifests")

    ctx.sync_runtime_error_set([], source="reconciler")

    records, _ = ctx.get_runtime_errors()
    assert [record.source for record in records] == ["manifests"]


def test_runtime_errors_sorted_by_severity_and_paginated():
    ctx = ClusterContext()
    ctx.sync_runtime_error_set(
        [
            _diag("Workload/a", "ERR_INSTANCE_START", severity="warning"),
            _diag("Workload/b", "ERR_INSTANCE_START", severity="critical"),
            _diag("Workload/c", "ERR_UNRESOLVED_REFERENCE", severity="error"),
        ],
        source="reconciler",
    )

    first_page, total = ctx.get_runtime_errors(limit=2)
    second_page, _ = ctx.get_runtime_errors(limit=2, offset=2)

    assert total == 3
    assert [r.object_name for r in first_page] == ["b", "c"]
    assert [r.object_name for r in second_page] == ["a"]


def test_has_blocking_diagnostics():
    assert has_blocking_diagnostics([_diag("x", "E", severity="error")]) is True
    assert has_blocking_diagnostics([_diag("x", "E", severity="critical")]) is True
    assert has_blocking_diagnostics([_diag("x", "E", severity="warning")]) is False
    assert has_blocking_diagnostics([]) is False
