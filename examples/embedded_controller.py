from pathlib import Path

from keelson.core.models import WorkloadPhase
from keelson.query import forward_target
from keelson.runtime.container import SimulatedRuntime
from keelson.runtime.controller import ClusterController

SHOP_DIR = Path(__file__).parent / "shop"


def bring_up_shop(root_dir: Path = SHOP_DIR, max_ticks: int = 20) -> ClusterController:
    """Apply the shop manifests and reconcile until every workload is Steady."""
    controller = ClusterController(root_dir, runtime=SimulatedRuntime(ready_after=2))

    result = controller.load_manifests()
    for diagnostic in result.diagnostics:
        print(f"{diagnostic.severity}: {diagnostic.error_code} {diagnostic.message}")

    if not controller.converge(max_ticks=max_ticks):
        stuck = [report.name for report in controller.reconciler.statuses() if report.phase != WorkloadPhase.STEADY]
        controller.stop()
        raise RuntimeError(f"Workloads did not converge: {', '.join(stuck)}")

    return controller


def main() -> None:
    controller = bring_up_shop()
    try:
        for report in controller.reconciler.statuses():
            print(f"{report.name}: {report.phase.value} {report.ready}/{report.replicas}")

        service_name, endpoints = controller.router.resolve("shop.example.com", "/api/orders")
        print(f"shop.example.com/api/orders -> {service_name} {sorted(str(endpoint) for endpoint in endpoints)}")
        print(f"port-forward mongo -> {forward_target(controller, 'mongo')}")
    finally:
        controller.stop()


if __name__ == "__main__":
    main()
