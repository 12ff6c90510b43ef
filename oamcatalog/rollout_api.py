"""The SimpleRolloutTrait resource: gradual replacement of a workload."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Union

from oamcatalog.meta import (
    EXTEND_OAM_GROUP_VERSION,
    Condition,
    ConditionedStatus,
    ObjectMeta,
    TypedReference,
)

GROUP_VERSION = EXTEND_OAM_GROUP_VERSION
API_VERSION = str(GROUP_VERSION)
KIND = "SimpleRolloutTrait"

IntOrString = Union[int, str]


@dataclass
class RolloutHistory:
    """One completed rollout: the revision number and its recorded data."""

    revision: int = 0
    history_data: Any = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.revision:
            data["revision"] = self.revision
        if self.history_data is not None:
            data["historyData"] = copy.deepcopy(self.history_data)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RolloutHistory:
        data = data or {}
        return cls(
            revision=data.get("revision", 0),
            history_data=copy.deepcopy(data.get("historyData")),
        )


@dataclass
class SimpleRolloutTraitSpec:
    """The desired state: target replicas, step sizes and the workload."""

    replica: int | None = None
    batch: IntOrString | None = None
    max_unavailable: IntOrString | None = None
    workload_reference: TypedReference = field(default_factory=TypedReference)

    def to_dict(self) -> dict[str, Any]:
        return {
            "replica": self.replica,
            "batch": self.batch,
            "maxUnavailable": self.max_unavailable,
            "workloadRef": self.workload_reference.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SimpleRolloutTraitSpec:
        data = data or {}
        return cls(
            replica=data.get("replica"),
            batch=data.get("batch"),
            max_unavailable=data.get("maxUnavailable"),
            workload_reference=TypedReference.from_dict(data.get("workloadRef")),
        )


@dataclass
class SimpleRolloutTraitStatus(ConditionedStatus):
    """The observed state: rollout history and the workload currently served."""

    rollout_history: list[RolloutHistory] = field(default_factory=list)
    current_workload_reference: TypedReference = field(default_factory=TypedReference)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.rollout_history:
            data["rolloutiHistory"] = [h.to_dict() for h in self.rollout_history]
        data["currentWorkloadRef"] = self.current_workload_reference.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SimpleRolloutTraitStatus:
        data = data or {}
        return cls(
            conditions=cls._conditions_from(data),
            rollout_history=[RolloutHistory.from_dict(h) for h in data.get("rolloutiHistory") or []],
            current_workload_reference=TypedReference.from_dict(data.get("currentWorkloadRef")),
        )


@dataclass
class SimpleRolloutTrait:
    """A trait that rolls a workload over to a new revision step by step."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SimpleRolloutTraitSpec = field(default_factory=SimpleRolloutTraitSpec)
    status: SimpleRolloutTraitStatus = field(default_factory=SimpleRolloutTraitStatus)
    api_version: str = API_VERSION
    kind: str = KIND

    def get_condition(self, condition_type: str) -> Condition:
        return self.status.get_condition(condition_type)

    def set_conditions(self, *args: Condition) -> None:
        self.status.set_conditions(*args)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SimpleRolloutTrait:
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=SimpleRolloutTraitSpec.from_dict(data.get("spec")),
            status=SimpleRolloutTraitStatus.from_dict(data.get("status")),
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