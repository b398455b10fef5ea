import re
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


NAME_PATTERN = r"^[a-z0-9]([-a-z0-9.]{0,61}[a-z0-9])?$"
_ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ResourceKind(str, Enum):
    """Kinds of declarative resources held by the store."""

    SECRET = "Secret"
    CONFIG_MAP = "ConfigMap"
    WORKLOAD = "Workload"
    SERVICE = "Service"
    INGRESS_RULE = "IngressRule"


# Apply order for a batch of documents: dependencies before their consumers.
APPLY_ORDER: List[ResourceKind] = [
    ResourceKind.SECRET,
    ResourceKind.CONFIG_MAP,
    ResourceKind.SERVICE,
    ResourceKind.INGRESS_RULE,
    ResourceKind.WORKLOAD,
]


class InstanceHealth(str, Enum):
    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"
    TERMINATING = "Terminating"


class WorkloadPhase(str, Enum):
    PENDING = "Pending"
    MATERIALIZING = "Materializing"
    SCALING = "Scaling"
    STEADY = "Steady"
    DEGRADED = "Degraded"
    TERMINATING = "Terminating"
    GONE = "Gone"


class ChangeType(str, Enum):
    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"


class KeelsonSettings(BaseSettings):
    """
    Framework-level settings (the 'keelson' section in keelson.yaml).
    """
    model_config = SettingsConfigDict(env_prefix='KEELSON_', extra='ignore')

    env: str = "development"
    cluster_name: str = "keelson"
    log_level: str = "INFO"


class StoreSettings(BaseModel):
    """
    Resource store settings (the 'store' section in keelson.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    state_file: Optional[str] = None
    event_history_limit: int = Field(default=10000, ge=1)


class ReconcilerSettings(BaseModel):
    """
    Control loop settings (the 'reconciler' section in keelson.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    max_parallel_starts: int = Field(default=2, ge=1)
    max_start_attempts: int = Field(default=3, ge=1)
    backoff_base_ms: int = Field(default=500, ge=0)
    backoff_max_ms: int = Field(default=30000, ge=0)
    grace_period_ms: int = Field(default=5000, ge=0)
    resync_interval_ms: int = Field(default=1000, ge=50)
    workers: int = Field(default=4, ge=1)


class WatchSettings(BaseModel):
    """
    Manifest auto-apply settings (the top-level 'watch' section in keelson.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    enabled: bool = False
    interval_ms: int = Field(default=1000, ge=100)
    debounce_ms: int = Field(default=300, ge=0)
    include_patterns: List[str] = Field(default_factory=lambda: ["*.yaml", "*.yml"])
    exclude_patterns: List[str] = Field(default_factory=list)


class SecretSpec(BaseModel):
    """Secret payload. `data` values are base64 encoded, `string_data` values are plain."""
    model_config = ConfigDict(extra='forbid')

    data: Dict[str, str] = Field(default_factory=dict)
    string_data: Dict[str, str] = Field(default_factory=dict)


class ConfigMapSpec(BaseModel):
    model_config = ConfigDict(extra='forbid')

    data: Dict[str, str] = Field(default_factory=dict)


class KeyRef(BaseModel):
    """Reference to one key of a named Secret or ConfigMap."""
    model_config = ConfigDict(extra='forbid', frozen=True)

    name: str = Field(..., pattern=NAME_PATTERN)
    key: str = Field(..., min_length=1)


class EnvBinding(BaseModel):
    """
    Binds an environment variable to a Secret or ConfigMap key.
    Exactly one of `secret_ref` / `config_map_ref` must be set.
    """
    model_config = ConfigDict(extra='forbid')

    name: str
    secret_ref: Optional[KeyRef] = None
    config_map_ref: Optional[KeyRef] = None

    @field_validator("name")
    @classmethod
    def validate_env_name(cls, value: str) -> str:
        if not _ENV_NAME_PATTERN.fullmatch(value):
            raise ValueError(f"'{value}' is not a valid environment variable name")
        return value

    @model_validator(mode='after')
    def validate_single_source(self) -> 'EnvBinding':
        if (self.secret_ref is None) == (self.config_map_ref is None):
            raise ValueError(
                f"Env binding '{self.name}' must set exactly one of 'secret_ref' or 'config_map_ref'"
            )
        return self

    @property
    def source_kind(self) -> ResourceKind:
        return ResourceKind.SECRET if self.secret_ref is not None else ResourceKind.CONFIG_MAP

    @property
    def ref(self) -> KeyRef:
        return self.secret_ref if self.secret_ref is not None else self.config_map_ref  # type: ignore[return-value]


class WorkloadSpec(BaseModel):
    model_config = ConfigDict(extra='forbid')

    image: str = Field(..., min_length=1)
    replicas: int = Field(default=1, ge=0)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    env: List[EnvBinding] = Field(default_factory=list)
    env_values: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode='after')
    def validate_unique_env_names(self) -> 'WorkloadSpec':
        seen: set[str] = set()
        for name in [binding.name for binding in self.env] + list(self.env_values):
            if name in seen:
                raise ValueError(f"Environment variable '{name}' is declared more than once")
            seen.add(name)
        return self


class LabelSelectorRequirement(BaseModel):
    model_config = ConfigDict(extra='forbid')

    key: str
    operator: Literal["In", "NotIn", "Exists", "DoesNotExist"]
    values: List[str] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_values(self) -> 'LabelSelectorRequirement':
        if self.operator in {"In", "NotIn"} and not self.values:
            raise ValueError(f"Operator '{self.operator}' requires a non-empty 'values' list")
        if self.operator in {"Exists", "DoesNotExist"} and self.values:
            raise ValueError(f"Operator '{self.operator}' does not take 'values'")
        return self

    def matches(self, labels: Dict[str, str]) -> bool:
        if self.operator == "Exists":
            return self.key in labels
        if self.operator == "DoesNotExist":
            return self.key not in labels
        if self.operator == "In":
            return labels.get(self.key) in self.values
        return self.key not in labels or labels[self.key] not in self.values


class LabelSelector(BaseModel):
    """Predicate over instance labels. An empty selector selects nothing."""
    model_config = ConfigDict(extra='forbid')

    match_labels: Dict[str, str] = Field(default_factory=dict)
    match_expressions: List[LabelSelectorRequirement] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions

    def matches(self, labels: Dict[str, str]) -> bool:
        if self.is_empty():
            return False
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        return all(requirement.matches(labels) for requirement in self.match_expressions)


class ServiceSpec(BaseModel):
    model_config = ConfigDict(extra='forbid')

    selector: LabelSelector = Field(default_factory=LabelSelector)
    target_port: Optional[int] = Field(default=None, ge=1, le=65535)


class IngressRuleSpec(BaseModel):
    model_config = ConfigDict(extra='forbid')

    host: str = Field(..., min_length=1)
    path_prefix: str = Field(default="/", pattern=r"^/")
    target_service: str = Field(..., pattern=NAME_PATTERN)

    @field_validator("host")
    @classmethod
    def normalize_host(cls, value: str) -> str:
        host = value.strip().lower().rstrip(".")
        if not host:
            raise ValueError(f"Invalid host '{value}'")
        if host != "*" and "*" in host and not (host.startswith("*.") and "*" not in host[2:]):
            raise ValueError(f"Unsupported wildcard host '{value}'; use '*' or '*.domain'")
        return host


SPEC_MODELS: Dict[ResourceKind, Type[BaseModel]] = {
    ResourceKind.SECRET: SecretSpec,
    ResourceKind.CONFIG_MAP: ConfigMapSpec,
    ResourceKind.WORKLOAD: WorkloadSpec,
    ResourceKind.SERVICE: ServiceSpec,
    ResourceKind.INGRESS_RULE: IngressRuleSpec,
}


def normalize_spec(kind: ResourceKind, spec: Any) -> Dict[str, Any]:
    """Validate a spec document for its kind and return its canonical dict form."""
    model = SPEC_MODELS[kind]
    if isinstance(spec, model):
        validated = spec
    else:
        validated = model.model_validate(spec or {})
    return validated.model_dump(mode="json")


class Resource(BaseModel):
    """
    One generation of a declared resource. Generations are immutable once stored.
    """
    model_config = ConfigDict(extra='forbid', frozen=True)

    kind: ResourceKind
    name: str = Field(..., pattern=NAME_PATTERN)
    spec: Dict[str, Any] = Field(default_factory=dict)
    generation: int = Field(default=0, ge=0)
    revision: int = Field(default=0, ge=0)
    created_revision: int = Field(default=0, ge=0)

    @model_validator(mode='after')
    def validate_spec(self) -> 'Resource':
        normalize_spec(self.kind, self.spec)
        return self

    @property
    def key(self) -> tuple[ResourceKind, str]:
        return (self.kind, self.name)

    def typed_spec(self) -> Any:
        return SPEC_MODELS[self.kind].model_validate(self.spec)


class GenerationRef(BaseModel):
    """A pinned (kind, name, generation) reference held by an instance."""
    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    name: str
    generation: int


class Endpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    port: int

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


class Instance(BaseModel):
    """One running unit satisfying a workload's replica count."""
    model_config = ConfigDict(extra='forbid')

    id: str
    workload_name: str
    workload_generation: int
    health: InstanceHealth = InstanceHealth.PENDING
    address: Optional[str] = None
    port: Optional[int] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    created_sequence: int = 0
    pins: List[GenerationRef] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict, exclude=True, repr=False)


class ChangeEvent(BaseModel):
    """A store mutation delivered to watchers."""
    model_config = ConfigDict(frozen=True)

    type: ChangeType
    kind: ResourceKind
    name: str
    generation: int
    revision: int
