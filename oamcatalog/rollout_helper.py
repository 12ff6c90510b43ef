"""Helpers for rolling a workload's deployments over to a new revision."""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Iterable, Sequence

from oamcatalog.meta import (
    APPS_GROUP_VERSION,
    CORE_OAM_GROUP_VERSION,
    Client,
    NamespacedName,
    TypedReference,
    api_version_to_group_version,
)
from oamcatalog.rollout_api import SimpleRolloutTrait

log = logging.getLogger(__name__)

OAM_API_VERSION = str(CORE_OAM_GROUP_VERSION)
APPS_API_VERSION = str(APPS_GROUP_VERSION)

KIND_DEPLOYMENT = "Deployment"
KIND_STATEFUL_SET = "StatefulSet"
KIND_CONTROLLER_REVISION = "ControllerRevision"

GVK_DEPLOYMENT = "apps/v1, Kind=Deployment"
GVK_STATEFUL_SET = "apps/v1, Kind=StatefulSet"

# Kubernetes runs one replica when a deployment leaves the count unset.
_DEFAULT_REPLICAS = 1

ChildFetcher = Callable[[dict[str, Any]], Iterable[dict[str, Any]]]


def _gvk(obj: dict[str, Any]) -> str:
    group_version = api_version_to_group_version(obj.get("apiVersion", ""))
    return f"{group_version.group}/{group_version.version}, Kind={obj.get('kind', '')}"


def _replicas(deployment: dict[str, Any]) -> int:
    replicas = (deployment.get("spec") or {}).get("replicas")
    return _DEFAULT_REPLICAS if replicas is None else replicas


def _ready_replicas(deployment: dict[str, Any]) -> int:
    return (deployment.get("status") or {}).get("readyReplicas") or 0


def _apply_replicas(client: Client, deployment: dict[str, Any], replicas: int) -> None:
    deployment.setdefault("spec", {})["replicas"] = replicas
    stored = client.update(deployment)
    deployment.setdefault("metadata", {})["resourceVersion"] = stored["metadata"]["resourceVersion"]


def determine_workload_type(
    workload: dict[str, Any], fetch_children: ChildFetcher
) -> list[dict[str, Any]]:
    """Return the native resources behind a workload.

    An OAM core workload is resolved through ``fetch_children``; an ``apps/v1``
    object stands for itself. Any other apiVersion raises ValueError.
    """
    api_version = workload.get("apiVersion", "")
    if api_version == OAM_API_VERSION:
        return list(fetch_children(workload))
    if api_version == APPS_API_VERSION:
        log.info("workload is a native resource, apiVersion %s", api_version)
        return [workload]
    if not api_version:
        raise ValueError("failed to get the workload APIVersion")
    raise ValueError(f"This trait doesn't support this APIVersion {api_version}")


def is_newly_created(trait: SimpleRolloutTrait) -> bool:
    """True while the trait has not yet recorded the workload it serves."""
    return trait.status.current_workload_reference == TypedReference()


def is_under_rollout(trait: SimpleRolloutTrait) -> bool:
    """True when the desired workload differs from the one currently served."""
    return trait.status.current_workload_reference != trait.spec.workload_reference


def is_scale_up_ready(deployments: Sequence[dict[str, Any]], target_replicas: int) -> bool:
    """True when there are deployments and each has the target number ready."""
    if not deployments:
        return False
    return all(_ready_replicas(d) == target_replicas for d in deployments)


def is_scale_down_ready(deployments: Sequence[dict[str, Any]]) -> bool:
    """True when there are deployments and each is scaled to nothing."""
    if not deployments:
        return False
    return all(_replicas(d) == 0 and _ready_replicas(d) == 0 for d in deployments)


def scale_up_gradually(
    client: Client,
    deployments: Sequence[dict[str, Any]],
    target_replica: int,
    batch: int,
) -> None:
    """Raise each settled deployment by ``batch`` replicas, up to the target.

    Deployments still converging are left alone. The dictionaries are updated
    in place and written through ``client``; client errors propagate.
    """
    for deployment in deployments:
        replicas = _replicas(deployment)
        if replicas != _ready_replicas(deployment):
            continue
        if replicas == target_replica:
            log.info("Scale up is ready")
            continue
        wanted = target_replica if replicas + batch >= target_replica else replicas + batch
        _apply_replicas(client, deployment, wanted)
        log.info(
            "Successfully update deployment for scaling up, deployment name %s",
            deployment.get("metadata", {}).get("name", ""),
        )


def scale_down_gradually(
    client: Client,
    deployments: Sequence[dict[str, Any]],
    target_replica: int,
    batch: int,
) -> None:
    """Lower each settled deployment by ``batch`` replicas, down to the target.

    Deployments already at zero or still converging are left alone.
    """
    for deployment in deployments:
        replicas = _replicas(deployment)
        if replicas == 0:
            continue
        if replicas != _ready_replicas(deployment):
            continue
        if replicas == target_replica:
            log.info("Scale down is ready")
            continue
        wanted = target_replica if replicas - batch <= target_replica else replicas - batch
        _apply_replicas(client, deployment, wanted)
        log.info(
            "Successfully update deployment for scaling down, deployment name %s",
            deployment.get("metadata", {}).get("name", ""),
        )


def fetch_workload(client: Client, trait: SimpleRolloutTrait) -> dict[str, Any]:
    """Return the workload the trait points to; NotFoundError if it is missing."""
    ref = trait.spec.workload_reference
    workload = client.get(
        ref.api_version, ref.kind, NamespacedName(trait.metadata.namespace, ref.name)
    )
    log.info(
        "Get the workload the trait is pointing to: %s %s %s",
        workload.get("apiVersion", ""),
        workload.get("kind", ""),
        ref.name,
    )
    return workload


def get_underlying_deployments(
    workload: dict[str, Any], fetch_children: ChildFetcher
) -> list[dict[str, Any]]:
    """Return copies of the Deployments among the workload's resources."""
    resources = determine_workload_type(workload, fetch_children)
    log.info("Get underlying resources: %d", len(resources))
    return [copy.deepcopy(r) for r in resources if _gvk(r) == GVK_DEPLOYMENT]


def get_controller_revision(client: Client, trait: SimpleRolloutTrait) -> dict[str, Any]:
    """Return the ControllerRevision named after the trait's workload reference."""
    return client.get(
        APPS_API_VERSION,
        KIND_CONTROLLER_REVISION,
        NamespacedName(trait.metadata.namespace, trait.spec.workload_reference.name),
    )