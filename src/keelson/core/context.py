from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, Field, ConfigDict, PrivateAttr
from keelson.core.models import KeelsonSettings, ReconcilerSettings, StoreSettings, WatchSettings
from keelson.utils.diagnostics import KeelsonDiagnostic


class RuntimeErrorRecord(BaseModel):
    """Represents one tracked diagnostic entry for `keelson errors` output."""

    key: str
    object_name: str
    error_class: str
    severity: str
    message: str
    file_path: str
    line_number: Optional[int] = None
    source: str
    status: str = "active"
    first_seen_index: int
    last_seen_index: int
    resolved_at_index: Optional[int] = None


class ClusterContext(BaseModel):
    """
    Settings and operator-facing state shared by every component of a cluster.
    """
    model_config = ConfigDict(extra="allow", arbitrary_types_allowed=True)

    # Framework Settings (Maps to 'keelson' section)
    settings: KeelsonSettings = Field(default_factory=KeelsonSettings)

    # Resource Store Settings (Maps to 'store' section)
    store: StoreSettings = Field(default_factory=StoreSettings)

    # Control Loop Settings (Maps to 'reconciler' section)
    reconciler: ReconcilerSettings = Field(default_factory=ReconcilerSettings)

    # Manifest Auto-Apply Settings (Maps to top-level 'watch' section)
    watch: WatchSettings = Field(default_factory=WatchSettings)

    # Free-form operator state (Maps to 'state' section)
    app: Dict[str, Any] = Field(default_factory=dict)

    # Runtime Error Set: Active unresolved diagnostics
    runtime_errors_active: Dict[str, RuntimeErrorRecord] = Field(default_factory=dict)

    # Runtime Error History: Recently resolved diagnostics kept for bounded history queries
    runtime_errors_history: List[RuntimeErrorRecord] = Field(default_factory=list)

    runtime_error_history_limit: int = Field(default=200)

    _runtime_error_sequence: int = PrivateAttr(default=0)

    def __init__(self, config_dict: Optional[Dict[str, Any]] = None, **data: Any):
        """
        Initialize the context, optionally with a configuration dictionary.
        """
        if config_dict:
            if 'settings' not in data:
                data['settings'] = KeelsonSettings(**(config_dict.get('keelson') or {}))
            if 'store' not in data:
                data['store'] = StoreSettings(**(config_dict.get('store') or {}))
            if 'reconciler' not in data:
                data['reconciler'] = ReconcilerSettings(**(config_dict.get('reconciler') or {}))
            if 'watch' not in data:
                data['watch'] = WatchSettings(**(config_dict.get('watch') or {}))
            if 'app' not in data:
                data['app'] = config_dict.get('state') or {}

        super().__init__(**data)

    def sync_runtime_error_set(self, diagnostics: List[KeelsonDiagnostic], source: str) -> None:
        """Synchronize the tracked error set from `source` against its latest diagnostics."""
        self._runtime_error_sequence += 1
        sequence = self._runtime_error_sequence
        next_active: Dict[str, RuntimeErrorRecord] = {
            key: record for key, record in self.runtime_errors_active.items() if record.source != source
        }

        for diag in diagnostics:
            key = self._runtime_error_key(diag)
            if key in next_active:
                continue

            existing = self.runtime_errors_active.get(key)
            if existing is None:
                next_active[key] = RuntimeErrorRecord(
                    key=key,
                    object_name=self._diagnostic_object_name(diag),
                    error_class=diag.error_code,
                    severity=diag.severity,
                    message=diag.message,
                    file_path=diag.file_path,
                    line_number=diag.line_number,
                    source=source,
                    first_seen_index=sequence,
                    last_seen_index=sequence,
                )
                continue

            next_active[key] = existing.model_copy(
                update={
                    "severity": diag.severity,
                    "message": diag.message,
                    "source": source,
                    "status": "active",
                    "last_seen_index": sequence,
                    "resolved_at_index": None,
                }
            )

        for key, existing in self.runtime_errors_active.items():
            if key in next_active:
                continue
            self.runtime_errors_history.append(
                existing.model_copy(update={"status": "resolved", "resolved_at_index": sequence})
            )

        if len(self.runtime_errors_history) > self.runtime_error_history_limit:
            self.runtime_errors_history = self.runtime_errors_history[-self.runtime_error_history_limit :]

        self.runtime_errors_active = next_active

    def get_runtime_errors(
        self,
        include_resolved: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[RuntimeErrorRecord], int]:
        """Return sorted, paginated runtime errors, most severe and most recent first."""
        safe_limit = max(1, limit)
        safe_offset = max(0, offset)

        records: List[RuntimeErrorRecord] = list(self.runtime_errors_active.values())
        if include_resolved:
            records.extend(self.runtime_errors_history)

        ordered_records = sorted(
            records,
            key=lambda record: (
                self._severity_rank(record.severity),
                record.last_seen_index,
            ),
            reverse=True,
        )

        total = len(ordered_records)
        page = ordered_records[safe_offset : safe_offset + safe_limit]
        return page, total

    def _runtime_error_key(self, diagnostic: KeelsonDiagnostic) -> str:
        # Messages carry changing details (attempt counts), so they are not part of the identity.
        return "|".join([diagnostic.file_path, diagnostic.error_code])

    def _diagnostic_object_name(self, diagnostic: KeelsonDiagnostic) -> str:
        return diagnostic.file_path.rsplit("/", 1)[-1] or "unknown"

    def _severity_rank(self, severity: str) -> int:
        ranks = {
            "critical": 3,
            "error": 2,
            "warning": 1,
            "info": 0,
        }
        return ranks.get(severity.lower(), 0)
