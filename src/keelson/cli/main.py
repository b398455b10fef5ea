import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.logging import RichHandler

from keelson.cli.formatter import OutputFormatter, error_console
from keelson.core.errors import KeelsonError, NoMatchingRule, ServiceUnavailable
from keelson.core.models import ResourceKind
from keelson.query import describe_workload, forward_target, list_instances, list_resources
from keelson.runtime.container import SimulatedRuntime
from keelson.runtime.controller import ApplyReport, ApplyStatus, ClusterController
from keelson.store.manifests import ManifestScanner, parse_kind
from keelson.utils.diagnostics import KeelsonDiagnostic

app = typer.Typer(name="keelson", help="Keelson declarative deployment orchestrator", rich_markup_mode=None)

logger = logging.getLogger(__name__)

RootOption = typer.Option(Path("."), "--root", "-r", help="Manifest directory or single manifest file.")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=error_console, show_path=False)],
        force=True,
    )


def _build_controller(root_dir: Path, ready_after: int = 1) -> ClusterController:
    if not root_dir.exists():
        OutputFormatter.log(f"Root path '{root_dir}' does not exist.", severity="error")
        raise typer.Exit(code=1)

    try:
        controller = ClusterController(root_dir, runtime=SimulatedRuntime(ready_after=ready_after))
    except (ValueError, KeelsonError) as exc:
        OutputFormatter.log(f"Unable to initialize cluster: {exc}", severity="critical")
        raise typer.Exit(code=1)

    _configure_logging(controller.context.settings.log_level)
    return controller


def _apply_or_exit(controller: ClusterController, prune: bool = False) -> ApplyReport:
    result = controller.load_manifests(prune=prune)
    OutputFormatter.print_diagnostics(result.diagnostics)
    if result.status == ApplyStatus.FAILURE:
        OutputFormatter.log("Apply finished with blocking diagnostics; valid documents were applied.", severity="error")
    return result


def _bring_up(controller: ClusterController, ticks: int) -> bool:
    _apply_or_exit(controller)
    converged = controller.converge(max_ticks=ticks)
    if converged:
        OutputFormatter.log(f"Cluster converged ({len(controller.reconciler.statuses())} workloads).", severity="success")
    else:
        OutputFormatter.log(f"Cluster did not converge within {ticks} ticks.", severity="warning")
    return converged


def _render_validation_text_report(payload: dict) -> str:
    summary = payload["summary"]
    lines: List[str] = [
        "Keelson Validation Report",
        (
            "Summary: "
            f"documents={summary['documents']}, errors={summary['errors']}, "
            f"warnings={summary['warnings']}, total={summary['total']}"
        ),
    ]

    issues = payload["issues"]
    if not issues:
        lines.append("No diagnostics found.")
        return "\n".join(lines)

    lines.append("Issues:")
    for issue in issues:
        lines.append(
            f"- [{issue['severity'].upper()}] {issue['code']} at {issue['source_location']}: {issue['message']}"
        )
    return "\n".join(lines)


def _diagnostic_to_validation_issue(diagnostic: KeelsonDiagnostic) -> dict:
    location = diagnostic.file_path
    if diagnostic.line_number is not None:
        location = f"{location}:{diagnostic.line_number}"

    return {
        "source_location": location,
        "severity": diagnostic.severity,
        "code": diagnostic.error_code,
        "message": diagnostic.message,
        "remediation_hint": diagnostic.suggestion,
    }


@app.command()
def validate(
    root_dir: Path = RootOption,
    output_format: str = typer.Option("text", "--format", help="Report format: text or json."),
    fail_on: str = typer.Option("error", "--fail-on", help="Lowest severity that fails: warning or error."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Also write the report to this file."),
):
    """Validate manifests without applying them."""
    output_format = output_format.lower()
    if output_format not in {"text", "json"}:
        raise typer.BadParameter("Option --format must be one of: text, json")

    fail_on = fail_on.lower()
    if fail_on not in {"warning", "error"}:
        raise typer.BadParameter("Option --fail-on must be one of: warning, error")

    if not root_dir.exists():
        OutputFormatter.log(f"Root path '{root_dir}' does not exist.", severity="error")
        raise typer.Exit(code=1)

    scan_result = ManifestScanner(root_dir).scan()
    diagnostics = scan_result.diagnostics

    payload = {
        "root": str(root_dir),
        "fail_on": fail_on,
        "summary": {
            "documents": len(scan_result.documents),
            "errors": sum(1 for diag in diagnostics if diag.severity in {"error", "critical"}),
            "warnings": sum(1 for diag in diagnostics if diag.severity == "warning"),
            "total": len(diagnostics),
        },
        "issues": [_diagnostic_to_validation_issue(diag) for diag in diagnostics],
    }

    rendered = json.dumps(payload, indent=2) if output_format == "json" else _render_validation_text_report(payload)

    if output is not None:
        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(rendered)
        except OSError as exc:
            OutputFormatter.log(f"Unable to write validation report: {exc}", severity="error")
            raise typer.Exit(code=1)

    typer.echo(rendered)

    failing = {"warning", "error", "critical"} if fail_on == "warning" else {"error", "critical"}
    if any(diag.severity in failing for diag in diagnostics):
        raise typer.Exit(code=1)


@app.command()
def apply(
    root_dir: Path = RootOption,
    prune: bool = typer.Option(False, "--prune", help="Delete stored resources no longer declared."),
):
    """Apply manifests to the resource store and print the apply summary."""
    controller = _build_controller(root_dir)
    try:
        result = _apply_or_exit(controller, prune=prune)
        path = controller.save_state()
    finally:
        controller.stop()

    if path is not None:
        OutputFormatter.log(f"State written to {path}", severity="info")

    OutputFormatter.print_data(result.summary)
    if result.status == ApplyStatus.FAILURE:
        raise typer.Exit(code=1)


@app.command()
def get(
    kind: Optional[str] = typer.Argument(None, help="Resource kind, or 'instances'."),
    name: Optional[str] = typer.Argument(None, help="Workload name to describe."),
    root_dir: Path = RootOption,
    ticks: int = typer.Option(20, "--ticks", help="Reconcile ticks before reading instances."),
):
    """List resources, instances, or describe one workload."""
    controller = _build_controller(root_dir)
    try:
        _get(controller, kind, name, ticks)
    finally:
        controller.stop()


def _get(controller: ClusterController, kind: Optional[str], name: Optional[str], ticks: int) -> None:
    if kind is not None and kind.lower() in {"instance", "instances"}:
        _bring_up(controller, ticks)
        OutputFormatter.print_instances(list_instances(controller, workload_name=name))
        return

    if controller.store.revision == 0:
        _apply_or_exit(controller)

    resource_kind: Optional[ResourceKind] = None
    if kind is not None:
        try:
            resource_kind = parse_kind(kind[:-1] if kind.lower().endswith("s") else kind)
        except ValueError as exc:
            raise typer.BadParameter(str(exc))

    if name is not None:
        if resource_kind != ResourceKind.WORKLOAD:
            raise typer.BadParameter("Only workloads can be described by name.")
        controller.converge(max_ticks=ticks)
        try:
            OutputFormatter.print_data(describe_workload(controller, name))
        except KeelsonError as exc:
            OutputFormatter.log(str(exc), severity="error")
            raise typer.Exit(code=1)
        return

    OutputFormatter.print_data(list_resources(controller, resource_kind))


@app.command()
def up(
    root_dir: Path = RootOption,
    ticks: int = typer.Option(20, "--ticks", help="Maximum reconcile ticks."),
    ready_after: int = typer.Option(1, "--ready-after", help="Health polls before a simulated instance is Ready."),
):
    """Apply manifests and reconcile them against the simulated runtime."""
    controller = _build_controller(root_dir, ready_after=ready_after)
    try:
        converged = _bring_up(controller, ticks)

        OutputFormatter.print_workloads(controller.reconciler.statuses())
        OutputFormatter.print_instances(list_instances(controller))
        OutputFormatter.print_endpoints(dict(controller.registry.snapshot().endpoints))

        records, total = controller.context.get_runtime_errors()
        OutputFormatter.print_runtime_errors(records, total=total, limit=50, offset=0, include_history=False)
    finally:
        controller.stop()

    if not converged:
        raise typer.Exit(code=1)


@app.command()
def route(
    host: str = typer.Argument(..., help="Request host."),
    path: str = typer.Argument("/", help="Request path."),
    root_dir: Path = RootOption,
    ticks: int = typer.Option(20, "--ticks", help="Maximum reconcile ticks."),
):
    """Resolve a request to its target service and endpoints."""
    controller = _build_controller(root_dir)
    try:
        _bring_up(controller, ticks)
        service_name, endpoints = controller.router.resolve(host, path)
    except (NoMatchingRule, ServiceUnavailable) as exc:
        OutputFormatter.log(str(exc), severity="error")
        raise typer.Exit(code=1)
    finally:
        controller.stop()

    OutputFormatter.print_data({
        "service": service_name,
        "endpoints": sorted(str(endpoint) for endpoint in endpoints),
    })


@app.command()
def forward(
    service: str = typer.Argument(..., help="Service to forward to."),
    root_dir: Path = RootOption,
    ticks: int = typer.Option(20, "--ticks", help="Maximum reconcile ticks."),
):
    """Print the endpoint a port-forward to SERVICE would tunnel to."""
    controller = _build_controller(root_dir)
    try:
        _bring_up(controller, ticks)
        endpoint = forward_target(controller, service)
    except KeelsonError as exc:
        OutputFormatter.log(str(exc), severity="error")
        raise typer.Exit(code=1)
    finally:
        controller.stop()

    typer.echo(str(endpoint))


@app.command()
def errors(
    root_dir: Path = RootOption,
    ticks: int = typer.Option(20, "--ticks", help="Maximum reconcile ticks."),
    history: bool = typer.Option(False, "--history", help="Include resolved errors."),
    limit: int = typer.Option(50, "--limit"),
    offset: int = typer.Option(0, "--offset"),
):
    """Reconcile, then show the tracked runtime error set."""
    controller = _build_controller(root_dir)
    try:
        _bring_up(controller, ticks)
    finally:
        controller.stop()

    records, total = controller.context.get_runtime_errors(include_resolved=history, limit=limit, offset=offset)
    if not records:
        OutputFormatter.log("No runtime errors.", severity="success")
        return
    OutputFormatter.print_runtime_errors(records, total=total, limit=limit, offset=offset, include_history=history)
    raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
