"""The SidecarTrait resource: sidecar containers and volumes for a workload."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from oamcatalog.meta import (
    CORE_OAM_GROUP_VERSION,
    Condition,
    ConditionedStatus,
    ObjectMeta,
    TypedReference,
)

GROUP_VERSION = CORE_OAM_GROUP_VERSION
API_VERSION = str(GROUP_VERSION)
KIND = "SidecarTrait"


@dataclass
class SidecarTraitSpec:
    """The desired state: one container, extra volumes and the target workload."""

    container: dict[str, Any] = field(default_factory=dict)
    volumes: list[dict[str, Any]] = field(default_factory=list)
    workload_reference: TypedReference = field(default_factory=TypedReference)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.container:
            data["container"] = copy.deepcopy(self.container)
        if self.volumes:
            data["volumes"] = copy.deepcopy(self.volumes)
        data["workloadRef"] = self.workload_reference.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SidecarTraitSpec:
        data = data or {}
        return cls(
            container=copy.deepcopy(data.get("container") or {}),
            volumes=copy.deepcopy(data.get("volumes") or []),
            workload_reference=TypedReference.from_dict(data.get("workloadRef")),
        )


@dataclass
class SidecarTraitStatus(ConditionedStatus):
    """The observed state of a SidecarTrait."""


@dataclass
class SidecarTrait:
    """A trait that injects a sidecar container and volumes into a workload."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SidecarTraitSpec = field(default_factory=SidecarTraitSpec)
    status: SidecarTraitStatus = field(default_factory=SidecarTraitStatus)
    api_version: str = API_VERSION
    kind: str = KIND

    def get_condition(self, condition_type: str) -> Condition:
        return self.status.get_condition(condition_type)

    def set_conditions(self, *args: Condition) -> None:
        self.status.set_conditions(*args)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SidecarTrait:
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=SidecarTraitSpec.from_dict(data.get("spec")),
            status=SidecarTraitStatus.from_dict(data.get("status")),
            api_version=data.get("apiVersion", API_VERSION),
            kind=data.get("kind", KIND),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": self.metadata.to_dict(),
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }