"""The PodSpecWorkload resource: a pod spec run with a number of replicas."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from oamcatalog.meta import (
    STANDARD_OAM_GROUP_VERSION,
    Condition,
    ConditionedStatus,
    ObjectMeta,
    TypedReference,
)

GROUP_VERSION = STANDARD_OAM_GROUP_VERSION
API_VERSION = str(GROUP_VERSION)
KIND = "PodSpecWorkload"


@dataclass
class PodSpecWorkloadSpec:
    """The desired state: replica count (unset means 1) and the pod spec."""

    replicas: int | None = None
    pod_spec: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.replicas is not None:
            data["replicas"] = self.replicas
        data["podSpec"] = copy.deepcopy(self.pod_spec)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PodSpecWorkloadSpec:
        data = data or {}
        return cls(
            replicas=data.get("replicas"),
            pod_spec=copy.deepcopy(data.get("podSpec") or {}),
        )


@dataclass
class PodSpecWorkloadStatus(ConditionedStatus):
    """The observed state: conditions and the resources the workload manages."""

    resources: list[TypedReference] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.resources:
            data["resources"] = [r.to_dict() for r in self.resources]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PodSpecWorkloadStatus:
        data = data or {}
        return cls(
            conditions=cls._conditions_from(data),
            resources=[TypedReference.from_dict(r) for r in data.get("resources") or []],
        )


@dataclass
class PodSpecWorkload:
    """A workload made of a pod spec, rendered as a deployment and service."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: PodSpecWorkloadSpec = field(default_factory=PodSpecWorkloadSpec)
    status: PodSpecWorkloadStatus = field(default_factory=PodSpecWorkloadStatus)
    api_version: str = API_VERSION
    kind: str = KIND

    def get_condition(self, condition_type: str) -> Condition:
        return self.status.get_condition(condition_type)

    def set_conditions(self, *args: Condition) -> None:
        self.status.set_conditions(*args)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PodSpecWorkload:
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=PodSpecWorkloadSpec.from_dict(data.get("spec")),
            status=PodSpecWorkloadStatus.from_dict(data.get("status")),
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