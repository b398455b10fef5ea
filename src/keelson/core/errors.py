"""Exception taxonomy for the orchestrator core.

Everything raised by keelson derives from :class:`KeelsonError`. Only
:class:`StoreCorruption` is fatal; every other error is scoped to a single
resource, instance or request.
"""

from typing import Optional


class KeelsonError(Exception):
    """Base class for orchestrator errors."""

    error_code = "ERR_KEELSON"


class NotFound(KeelsonError):
    """A resource, service or instance does not exist."""

    error_code = "ERR_NOT_FOUND"

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} '{name}' not found.")


class UnresolvedReference(KeelsonError):
    """A workload references a Secret/ConfigMap (or key) that does not exist."""

    error_code = "ERR_UNRESOLVED_REFERENCE"

    def __init__(self, kind: str, name: str, key: Optional[str] = None, reason: Optional[str] = None):
        self.kind = kind
        self.name = name
        self.key = key
        target = f"{kind} '{name}'"
        if key is not None:
            target += f" key '{key}'"
        message = f"Unresolved reference to {target}"
        if reason:
            message += f": {reason}"
        super().__init__(message + ".")


class VersionPinned(KeelsonError):
    """A pinned generation of a resource has been garbage-collected."""

    error_code = "ERR_VERSION_PINNED"

    def __init__(self, kind: str, name: str, generation: int):
        self.kind = kind
        self.name = name
        self.generation = generation
        super().__init__(
            f"{kind} '{name}' generation {generation} is no longer retained; re-apply to pick a fresh generation."
        )


class InstanceStartFailure(KeelsonError):
    """The container runtime could not start an instance."""

    error_code = "ERR_INSTANCE_START"

    def __init__(self, target: str, message: str):
        self.target = target
        super().__init__(f"Instance of '{target}' failed to start: {message}")


class NoMatchingRule(KeelsonError):
    """No ingress rule matches a (host, path) request."""

    error_code = "ERR_NO_MATCHING_RULE"

    def __init__(self, host: str, path: str):
        self.host = host
        self.path = path
        super().__init__(f"No ingress rule matches host '{host}' path '{path}'.")


class ServiceUnavailable(KeelsonError):
    """A routed service has zero Ready endpoints."""

    error_code = "ERR_SERVICE_UNAVAILABLE"

    def __init__(self, service_name: str):
        self.service_name = service_name
        super().__init__(f"Service '{service_name}' has no ready endpoints.")


class ResourceConflict(KeelsonError):
    """An optimistic put lost against a concurrent writer."""

    error_code = "ERR_RESOURCE_CONFLICT"

    def __init__(self, kind: str, name: str, expected: int, actual: int):
        self.kind = kind
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{kind} '{name}' is at generation {actual}, expected {expected}."
        )


class CursorExpired(KeelsonError):
    """A watch cursor predates the retained event history."""

    error_code = "ERR_CURSOR_EXPIRED"

    def __init__(self, cursor: int, oldest: int):
        self.cursor = cursor
        self.oldest = oldest
        super().__init__(
            f"Watch cursor {cursor} is older than retained history (oldest revision {oldest}); relist required."
        )


class StoreCorruption(KeelsonError):
    """The resource store violated one of its invariants. Reconciliation must halt."""

    error_code = "ERR_STORE_CORRUPTION"
