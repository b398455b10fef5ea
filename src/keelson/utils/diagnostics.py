from typing import Optional
from pydantic import BaseModel

class KeelsonDiagnostic(BaseModel):
    """
    Standardized error reporting object for manifest and reconciliation issues.
    """
    file_path: str
    error_code: str
    message: str
    severity: str = "error" # 'error', 'warning', 'critical'
    suggestion: Optional[str] = None
    line_number: Optional[int] = None

    def __str__(self) -> str:
        loc = f"{self.file_path}"
        if self.line_number:
            loc += f":{self.line_number}"
        return f"[{self.error_code}] {self.message} (at {loc})"


def has_blocking_diagnostics(diagnostics: list[KeelsonDiagnostic]) -> bool:
    """Returns True when diagnostics include severities that must block an apply."""

    return any(d.severity in {"error", "critical"} for d in diagnostics)
