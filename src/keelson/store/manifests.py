import os
import re
import yaml
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple
from pydantic import BaseModel, Field, ValidationError

from keelson.core.errors import NotFound
from keelson.core.models import APPLY_ORDER, NAME_PATTERN, Resource, ResourceKind
from keelson.store.resource_store import ResourceStore
from keelson.utils.diagnostics import KeelsonDiagnostic


_KIND_ALIASES: Dict[str, ResourceKind] = {
    "secret": ResourceKind.SECRET,
    "configmap": ResourceKind.CONFIG_MAP,
    "config_map": ResourceKind.CONFIG_MAP,
    "workload": ResourceKind.WORKLOAD,
    "deployment": ResourceKind.WORKLOAD,
    "service": ResourceKind.SERVICE,
    "ingressrule": ResourceKind.INGRESS_RULE,
    "ingress_rule": ResourceKind.INGRESS_RULE,
}


class UnknownKind(ValueError):
    """Raised when a document declares a kind keelson does not manage."""


class ManifestDocument(BaseModel):
    """One parsed resource document and where it came from."""

    resource: Resource
    file_path: str
    index: int = 0


class ManifestScanResult(BaseModel):
    documents: List[ManifestDocument] = Field(default_factory=list)
    diagnostics: List[KeelsonDiagnostic] = Field(default_factory=list)

    @property
    def resources(self) -> List[Resource]:
        return [document.resource for document in self.documents]


class ApplyResult(BaseModel):
    """Outcome of applying a scan to the store."""

    applied: Dict[str, int] = Field(default_factory=dict)
    unchanged: List[str] = Field(default_factory=list)
    pruned: List[str] = Field(default_factory=list)


def parse_kind(value: Any) -> ResourceKind:
    """Resolve a document `kind` value, accepting a few common spellings."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Document is missing 'kind' field.")

    lowered = value.strip().lower()
    if lowered in _KIND_ALIASES:
        return _KIND_ALIASES[lowered]
    raise UnknownKind(f"Unknown kind '{value}'. Expected one of: {', '.join(k.value for k in ResourceKind)}.")


def parse_document(data: Any) -> Resource:
    """
    Build a Resource from one decoded YAML document.

    Accepts `name` either at the top level or under `metadata.name`.

    Raises:
        ValueError: If the document is not a mapping, has no name/kind, or its spec is invalid.
    """
    if not isinstance(data, dict):
        raise ValueError("Resource document must be a YAML object.")

    kind = parse_kind(data.get("kind"))

    name = data.get("name")
    metadata = data.get("metadata")
    if name is None and isinstance(metadata, dict):
        name = metadata.get("name")
    if not name:
        raise ValueError(f"{kind.value} document is missing 'name' field.")

    spec = data.get("spec")
    if spec is None:
        # Secrets and ConfigMaps are commonly written with data at the top level.
        spec = {key: data[key] for key in ("data", "string_data") if key in data}

    try:
        return Resource(kind=kind, name=str(name), spec=spec)
    except ValidationError as exc:
        raise ValueError(_summarize_validation_error(kind, str(name), exc)) from exc


def parse_manifest_text(content: str) -> List[Resource]:
    """Parse every non-empty document of a (possibly multi-document) YAML text."""
    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML: {e}")

    return [parse_document(doc) for doc in documents]


def parse_manifest_file(file_path: Path) -> List[Tuple[int, Any]]:
    """Read a manifest file and return its raw (index, document) pairs."""
    try:
        content = file_path.read_text(encoding="utf-8")
        documents = list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse YAML in {file_path}: {e}")
    except OSError as e:
        raise ValueError(f"Failed to read {file_path}: {e}")

    return [(index, doc) for index, doc in enumerate(documents) if doc is not None]


def declared_kinds(file_path: Path) -> FrozenSet[ResourceKind]:
    """Kinds declared by the documents of a manifest file; unreadable files declare none."""
    try:
        documents = parse_manifest_file(file_path)
    except ValueError:
        return frozenset()

    kinds: Set[ResourceKind] = set()
    for _, raw in documents:
        if not isinstance(raw, dict):
            continue
        try:
            kinds.add(parse_kind(raw.get("kind")))
        except ValueError:
            continue
    return frozenset(kinds)


def _summarize_validation_error(kind: ResourceKind, name: str, exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return f"Invalid {kind.value} '{name}': " + "; ".join(problems)


class ManifestScanner:
    """
    Scans a directory for resource manifests (*.yaml / *.yml).
    """

    NAME_REGEX = re.compile(NAME_PATTERN)
    SUFFIXES = {".yaml", ".yml"}

    def __init__(self, root_dir: Path, config_file_name: str = "keelson.yaml"):
        self.root_dir = root_dir
        self.config_file_name = config_file_name

    def scan(self) -> ManifestScanResult:
        documents: List[ManifestDocument] = []
        diagnostics: List[KeelsonDiagnostic] = []
        seen: Dict[Tuple[ResourceKind, str], str] = {}

        if self.root_dir.is_file():
            candidates = [self.root_dir]
        else:
            candidates = []
            for root, dirs, files in os.walk(self.root_dir):
                dirs[:] = sorted(d for d in dirs if not d.startswith("."))
                for file in sorted(files):
                    file_path = Path(root) / file
                    if file_path.suffix.lower() not in self.SUFFIXES:
                        continue
                    if file_path.parent == self.root_dir and file == self.config_file_name:
                        continue
                    candidates.append(file_path)

        for file_path in candidates:
            try:
                raw_documents = parse_manifest_file(file_path)
            except ValueError as e:
                diagnostics.append(KeelsonDiagnostic(
                    file_path=str(file_path),
                    error_code="ERR_PARSE_FAILURE",
                    message=str(e),
                    suggestion="Check YAML syntax."
                ))
                continue

            for index, raw in raw_documents:
                if isinstance(raw, dict) and isinstance(raw.get("name"), str) and not self.NAME_REGEX.match(raw["name"]):
                    diagnostics.append(KeelsonDiagnostic(
                        file_path=str(file_path),
                        error_code="ERR_INVALID_NAME",
                        message=f"'{raw['name']}' is an invalid name.",
                        suggestion="Names must be lower-case alphanumerics, '-' or '.', starting and ending with an alphanumeric.",
                    ))
                    continue

                try:
                    resource = parse_document(raw)
                except UnknownKind as e:
                    diagnostics.append(KeelsonDiagnostic(
                        file_path=str(file_path),
                        error_code="ERR_UNKNOWN_KIND",
                        message=f"Document {index}: {e}",
                        severity="warning",
                        suggestion="Supported kinds are Secret, ConfigMap, Workload, Service and IngressRule."
                    ))
                    continue
                except ValueError as e:
                    diagnostics.append(KeelsonDiagnostic(
                        file_path=str(file_path),
                        error_code="ERR_INVALID_SPEC",
                        message=f"Document {index}: {e}",
                        suggestion="Check the required fields for this kind."
                    ))
                    continue

                previous = seen.get(resource.key)
                if previous is not None:
                    diagnostics.append(KeelsonDiagnostic(
                        file_path=str(file_path),
                        error_code="ERR_DUPLICATE_NAME",
                        message=f"{resource.kind.value} '{resource.name}' is already declared in {previous}.",
                        suggestion="Rename this resource or remove the duplicate."
                    ))
                    continue

                seen[resource.key] = str(file_path)
                documents.append(ManifestDocument(resource=resource, file_path=str(file_path), index=index))

        return ManifestScanResult(documents=documents, diagnostics=diagnostics)


def apply_resources(
    store: ResourceStore,
    resources: List[Resource],
    prune: bool = False,
    prune_kinds: Optional[Set[ResourceKind]] = None,
) -> ApplyResult:
    """
    Put resources into the store, dependencies first.

    With `prune`, stored resources (of `prune_kinds`, default all) that are no
    longer declared are deleted, consumers first.
    """
    result = ApplyResult()
    order = {kind: position for position, kind in enumerate(APPLY_ORDER)}
    declared = {resource.key for resource in resources}

    for resource in sorted(resources, key=lambda item: order[item.kind]):
        label = f"{resource.kind.value}/{resource.name}"
        before = store.get(resource.kind, resource.name).generation if store.exists(resource.kind, resource.name) else 0
        generation = store.put(resource)
        if generation == before:
            result.unchanged.append(label)
        else:
            result.applied[label] = generation

    if prune:
        kinds = prune_kinds or set(ResourceKind)
        for kind in reversed(APPLY_ORDER):
            if kind not in kinds:
                continue
            for stored in store.list(kind):
                if stored.key in declared:
                    continue
                try:
                    store.delete(stored.kind, stored.name)
                except NotFound:
                    continue
                result.pruned.append(f"{stored.kind.value}/{stored.name}")

    return result


def apply_scan(store: ResourceStore, scan: ManifestScanResult, prune: bool = False) -> ApplyResult:
    """Apply every document of a manifest scan."""
    return apply_resources(store, scan.resources, prune=prune)
