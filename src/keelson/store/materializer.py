from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from keelson.core.errors import NotFound, UnresolvedReference
from keelson.core.models import (
    ConfigMapSpec,
    EnvBinding,
    GenerationRef,
    Resource,
    ResourceKind,
    SecretSpec,
    WorkloadSpec,
)
from keelson.store.resource_store import ResourceStore


@dataclass(frozen=True)
class MaterializedEnv:
    """Runtime environment for one instance plus the generations it was read from."""

    env: Dict[str, str]
    sources: List[GenerationRef] = field(default_factory=list)


class Materializer:
    """
    Resolves Secret/ConfigMap references of a workload spec into a concrete env map.

    Resolution is synchronous and read-only: a missing resource or key is
    reported as `UnresolvedReference` and never created on the fly. When
    `pinned` generations are supplied they are read instead of the current
    ones, which raises `VersionPinned` once a pinned generation is gone.
    """

    def __init__(self, store: ResourceStore) -> None:
        self.store = store

    def resolve(
        self,
        workload_spec: WorkloadSpec,
        pinned: Optional[Mapping[Tuple[ResourceKind, str], int]] = None,
    ) -> MaterializedEnv:
        env: Dict[str, str] = dict(workload_spec.env_values)
        sources: Dict[Tuple[ResourceKind, str], GenerationRef] = {}
        resources: Dict[Tuple[ResourceKind, str], Resource] = {}

        for binding in workload_spec.env:
            source_key = (binding.source_kind, binding.ref.name)
            if source_key not in resources:
                resource = self._read(binding, pinned)
                resources[source_key] = resource
                sources[source_key] = GenerationRef(
                    kind=resource.kind,
                    name=resource.name,
                    generation=resource.generation,
                )

            env[binding.name] = self._lookup(resources[source_key], binding.ref.key)

        return MaterializedEnv(env=env, sources=list(sources.values()))

    def missing_references(self, workload_spec: WorkloadSpec) -> List[str]:
        """List every binding that would fail to resolve, for status reporting."""
        missing: List[str] = []
        for binding in workload_spec.env:
            try:
                self._lookup(self._read(binding, None), binding.ref.key)
            except UnresolvedReference:
                missing.append(f"{binding.source_kind.value}/{binding.ref.name}:{binding.ref.key}")
        return missing

    def _read(
        self,
        binding: EnvBinding,
        pinned: Optional[Mapping[Tuple[ResourceKind, str], int]],
    ) -> Resource:
        kind = binding.source_kind
        name = binding.ref.name
        generation = pinned.get((kind, name)) if pinned else None

        try:
            if generation is not None:
                return self.store.get_generation(kind, name, generation)
            return self.store.get(kind, name)
        except NotFound:
            raise UnresolvedReference(kind.value, name) from None

    def _lookup(self, resource: Resource, key: str) -> str:
        if resource.kind == ResourceKind.CONFIG_MAP:
            data = ConfigMapSpec.model_validate(resource.spec).data
            if key not in data:
                raise UnresolvedReference(resource.kind.value, resource.name, key)
            return data[key]

        spec = SecretSpec.model_validate(resource.spec)
        if key in spec.string_data:
            return spec.string_data[key]
        if key not in spec.data:
            raise UnresolvedReference(resource.kind.value, resource.name, key)

        try:
            return base64.b64decode(spec.data[key], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise UnresolvedReference(
                resource.kind.value, resource.name, key, reason=f"value is not valid base64 text ({exc})"
            ) from exc
