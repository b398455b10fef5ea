import json
import typer
from typing import Any, Iterable, List
from pydantic import BaseModel
from rich.console import Console
from rich.table import Table
from keelson.core.context import RuntimeErrorRecord
from keelson.core.models import Endpoint, Instance, InstanceHealth, WorkloadPhase
from keelson.reconciler.reconciler import WorkloadReport
from keelson.utils.diagnostics import KeelsonDiagnostic

# Create a stderr console for logging
error_console = Console(stderr=True)

# Tables are data, so they go to stdout
data_console = Console()

_SEVERITY_COLORS = {
    "warning": "yellow",
    "critical": "bold red",
}

_PHASE_COLORS = {
    WorkloadPhase.STEADY: "green",
    WorkloadPhase.SCALING: "cyan",
    WorkloadPhase.MATERIALIZING: "cyan",
    WorkloadPhase.PENDING: "yellow",
    WorkloadPhase.DEGRADED: "bold red",
    WorkloadPhase.TERMINATING: "magenta",
    WorkloadPhase.GONE: "dim",
}

_HEALTH_COLORS = {
    InstanceHealth.READY: "green",
    InstanceHealth.PENDING: "yellow",
    InstanceHealth.FAILED: "bold red",
    InstanceHealth.TERMINATING: "magenta",
}


class OutputFormatter:
    """
    Handles output formatting for the CLI.
    Keeps system messages (stderr) apart from data (stdout).
    """

    @staticmethod
    def log(message: str, severity: str = "info") -> None:
        """
        Print system messages to stderr with color coding.
        """
        style = "white"
        prefix = "[KEELSON]"

        if severity == "warning":
            style = "yellow"
        elif severity == "error":
            style = "red"
        elif severity == "critical":
            style = "bold red"
        elif severity == "success":
            style = "green"

        error_console.print(f"[{style}]{prefix} {message}[/{style}]")

    @staticmethod
    def print_diagnostics(diagnostics: List[KeelsonDiagnostic]) -> None:
        """
        Prints a table of manifest diagnostics.
        """
        if not diagnostics:
            return

        table = Table(title="Manifest Diagnostics", border_style="red", header_style="bold red")
        table.add_column("Severity", style="bold")
        table.add_column("Code")
        table.add_column("Message")
        table.add_column("Location")

        for diag in diagnostics:
            color = _SEVERITY_COLORS.get(diag.severity, "red")

            loc = diag.file_path
            if diag.line_number:
                loc += f":{diag.line_number}"

            table.add_row(
                f"[{color}]{diag.severity.upper()}[/{color}]",
                diag.error_code,
                diag.message,
                loc,
            )

        error_console.print(table)
        error_console.print()

    @staticmethod
    def print_runtime_errors(
        records: List[RuntimeErrorRecord],
        total: int,
        limit: int,
        offset: int,
        include_history: bool,
    ) -> None:
        """Print tracked runtime errors for `keelson errors` output."""
        if not records:
            return

        title = "Runtime Errors"
        if include_history:
            title = "Runtime Errors (Including History)"

        table = Table(title=title, border_style="red", header_style="bold red")
        table.add_column("Severity", style="bold")
        table.add_column("Error Class")
        table.add_column("Message")
        table.add_column("Object")
        table.add_column("Source")
        table.add_column("Status")

        for record in records:
            color = _SEVERITY_COLORS.get(record.severity, "red")
            table.add_row(
                f"[{color}]{record.severity.upper()}[/{color}]",
                record.error_class,
                record.message,
                record.object_name,
                record.source,
                record.status,
            )

        error_console.print(table)
        error_console.print(f"Showing {len(records)} of {total} runtime errors (offset={offset}, limit={limit}).")
        error_console.print()

    @staticmethod
    def print_workloads(reports: Iterable[WorkloadReport]) -> None:
        table = Table(title="Workloads")
        table.add_column("Name", style="bold")
        table.add_column("Phase")
        table.add_column("Gen", justify="right")
        table.add_column("Ready", justify="right")
        table.add_column("Attempts", justify="right")
        table.add_column("Last Error")

        for report in reports:
            color = _PHASE_COLORS.get(report.phase, "white")
            table.add_row(
                report.name,
                f"[{color}]{report.phase.value}[/{color}]",
                str(report.generation),
                f"{report.ready}/{report.replicas}",
                str(report.attempts),
                report.last_error or "",
            )

        data_console.print(table)

    @staticmethod
    def print_instances(instances: Iterable[Instance]) -> None:
        table = Table(title="Instances")
        table.add_column("ID", style="bold")
        table.add_column("Workload")
        table.add_column("Gen", justify="right")
        table.add_column("Health")
        table.add_column("Address")

        for instance in instances:
            color = _HEALTH_COLORS.get(instance.health, "white")
            address = instance.address or ""
            if instance.address and instance.port is not None:
                address = f"{instance.address}:{instance.port}"
            table.add_row(
                instance.id,
                instance.workload_name,
                str(instance.workload_generation),
                f"[{color}]{instance.health.value}[/{color}]",
                address,
            )

        data_console.print(table)

    @staticmethod
    def print_endpoints(endpoints_by_service: dict) -> None:
        table = Table(title="Service Endpoints")
        table.add_column("Service", style="bold")
        table.add_column("Endpoints")

        for service_name in sorted(endpoints_by_service):
            endpoints: Iterable[Endpoint] = endpoints_by_service[service_name]
            rendered = ", ".join(str(endpoint) for endpoint in sorted(endpoints, key=str)) or "-"
            table.add_row(service_name, rendered)

        data_console.print(table)

    @staticmethod
    def print_data(data: Any) -> None:
        """
        Print a result to stdout as JSON.
        Handles Pydantic models and enums.
        """
        if isinstance(data, str):
            typer.echo(data)
            return

        def json_serializer(obj):
            if isinstance(obj, BaseModel):
                return obj.model_dump(mode="json")
            if hasattr(obj, "value"):
                return obj.value
            return str(obj)

        try:
            output = json.dumps(data, indent=2, default=json_serializer)
            typer.echo(output)
        except TypeError as e:
            OutputFormatter.log(f"JSON Serialization failed: {e}", severity="error")
            typer.echo(str(data))
