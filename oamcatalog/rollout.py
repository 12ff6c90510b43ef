"""Reconciler that rolls a SimpleRolloutTrait's workload over step by step."""

from __future__ import annotations

import logging
from typing import Any

from oamcatalog.meta import (
    Client,
    Condition,
    ConflictError,
    NamespacedName,
    NotFoundError,
    Result,
    reconcile_error,
    reconcile_success,
)
from oamcatalog.rollout_api import (
    API_VERSION,
    KIND,
    IntOrString,
    RolloutHistory,
    SimpleRolloutTrait,
)
from oamcatalog.rollout_helper import (
    ChildFetcher,
    fetch_workload,
    get_controller_revision,
    get_underlying_deployments,
    is_newly_created,
    is_scale_down_ready,
    is_scale_up_ready,
    is_under_rollout,
    scale_down_gradually,
    scale_up_gradually,
)

log = logging.getLogger(__name__)

ERR_LOCATE_WORKLOAD = "cannot find workload"
ERR_LOCATE_RESOURCES = "cannot find resources"
ERR_LOCATE_AVAILABLE_RESOURCES = "cannot find available resources"
ERR_MARSHAL_DEPLOYMENT = "cannot unmarshal deployment"
ERR_FAIL_UPDATE_DEPLOYMENT = "failed to update deployment"
ERR_FAIL_DELETE_LEGACY_WORKLOAD = "failed to delete wrokload"
ERR_FAIL_SCALE_UP = "failed to scale up new workload"
ERR_FAIL_SCALE_DOWN = "failed to scale down new workload"
ERR_FAIL_UPDATE_STATUS = "fail to update rollout status"
ERR_FAIL_GET_CONTROLLER_REVISION = "fail to get controller revision"

RECONCILE_WAIT = Result(requeue_after=30.0)
RECONCILE_WAIT_WORKLOAD_INIT = Result(requeue_after=5.0)
RECONCILE_WAIT_WORKLOAD_SCALE = Result(requeue_after=5.0)

# Kubernetes runs one replica when a deployment leaves the count unset.
_DEFAULT_REPLICAS = 1

_CLIENT_ERRORS = (NotFoundError, ConflictError, ValueError)


def _no_children(workload: dict[str, Any]) -> list[dict[str, Any]]:
    return []


def _int_val(value: IntOrString | None) -> int:
    """The integer held by an int-or-string; a string or nothing counts as 0."""
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _spec_replicas(deployment: dict[str, Any]) -> int:
    replicas = (deployment.get("spec") or {}).get("replicas")
    return _DEFAULT_REPLICAS if replicas is None else replicas


def _available_replicas(deployment: dict[str, Any]) -> int:
    return (deployment.get("status") or {}).get("availableReplicas") or 0


def _wrap(message: str, error: BaseException) -> str:
    return f"{message}: {error}"


class SimpleRolloutTraitReconciler:
    """Reconciles SimpleRolloutTraits by scaling the new workload up and the old down."""

    def __init__(self, client: Client, fetch_children: ChildFetcher | None = None) -> None:
        self.client = client
        self.fetch_children = fetch_children or _no_children

    def _patch_condition(self, trait: SimpleRolloutTrait, condition: Condition) -> None:
        trait.set_conditions(condition)
        self.client.patch(
            {
                "apiVersion": trait.api_version,
                "kind": trait.kind,
                "metadata": {"name": trait.metadata.name, "namespace": trait.metadata.namespace},
                "status": trait.status.to_dict(),
            }
        )

    def _fail(self, trait: SimpleRolloutTrait, message: str) -> Result:
        self._patch_condition(trait, reconcile_error(message))
        return RECONCILE_WAIT

    def _update_status(self, trait: SimpleRolloutTrait) -> None:
        self.client.update_status(trait.to_dict())

    def reconcile(self, request: NamespacedName) -> Result:
        """Advance the rollout one step; return when to run again."""
        log.info("Reconcile SimpleRolloutTrait %s", request)
        try:
            trait = SimpleRolloutTrait.from_dict(self.client.get(API_VERSION, KIND, request))
        except NotFoundError:
            return Result()

        if trait.spec.replica is None:
            raise ValueError("spec.replica is required")
        target_replica = trait.spec.replica

        if is_newly_created(trait):
            return self._initialise(trait, target_replica)
        if is_under_rollout(trait):
            return self._roll(trait, target_replica)
        return Result()

    def _record_revision(
        self, trait: SimpleRolloutTrait, history: list[RolloutHistory]
    ) -> Result | None:
        try:
            revision = get_controller_revision(self.client, trait)
        except NotFoundError as error:
            log.error("Failed to get ControllerRevision %s: %s",
                      trait.spec.workload_reference.name, error)
            return self._fail(trait, _wrap(ERR_FAIL_GET_CONTROLLER_REVISION, error))

        history.append(
            RolloutHistory(revision=revision.get("revision", 0), history_data=revision.get("data"))
        )
        trait.status.rollout_history = history
        trait.status.current_workload_reference = trait.spec.workload_reference
        try:
            self._update_status(trait)
        except _CLIENT_ERRORS as error:
            log.error("Failed to update rollouttrait status: %s", error)
            return self._fail(trait, _wrap(ERR_FAIL_UPDATE_STATUS, error))
        return None

    def _initialise(self, trait: SimpleRolloutTrait, target_replica: int) -> Result:
        try:
            workload = fetch_workload(self.client, trait)
        except NotFoundError as error:
            log.error("Workload not found %s: %s", trait.spec.workload_reference.name, error)
            return self._fail(trait, _wrap(ERR_LOCATE_WORKLOAD, error))

        try:
            deployments = get_underlying_deployments(workload, self.fetch_children)
        except ValueError as error:
            log.error("Cannot find the workload child resources: %s", error)
            return self._fail(trait, ERR_LOCATE_RESOURCES)

        if not deployments:
            return RECONCILE_WAIT_WORKLOAD_INIT

        for deployment in deployments:
            available = _available_replicas(deployment)
            if available != _spec_replicas(deployment):
                # updating before the initial setup settles would be rejected
                return RECONCILE_WAIT_WORKLOAD_INIT
            if available == target_replica:
                continue
            deployment.setdefault("spec", {})["replicas"] = target_replica
            log.info("Going to update Deployment %s",
                     deployment.get("metadata", {}).get("name", ""))
            try:
                self.client.update(deployment)
            except _CLIENT_ERRORS as error:
                log.error("Failed to apply a deployment: %s", error)
                return self._fail(trait, _wrap(ERR_FAIL_UPDATE_DEPLOYMENT, error))

        failed = self._record_revision(trait, [])
        if failed is not None:
            return failed
        self._patch_condition(trait, reconcile_success())
        return Result()

    def _roll(self, trait: SimpleRolloutTrait, target_replica: int) -> Result:
        try:
            new_workload = fetch_workload(self.client, trait)
        except NotFoundError as error:
            log.error("Workload not found %s: %s", trait.spec.workload_reference.name, error)
            return self._fail(trait, _wrap(ERR_LOCATE_WORKLOAD, error))

        try:
            new_deployments = get_underlying_deployments(new_workload, self.fetch_children)
        except ValueError as error:
            log.error("Cannot find the workload child resources: %s", error)
            return self._fail(trait, ERR_LOCATE_RESOURCES)

        if not new_deployments:
            # the workload exists but its deployments do not yet
            return RECONCILE_WAIT

        current = trait.status.current_workload_reference
        old_key = NamespacedName(trait.metadata.namespace, current.name)
        old_workload = self.client.get(current.api_version, current.kind, old_key)

        try:
            old_deployments = get_underlying_deployments(old_workload, self.fetch_children)
        except ValueError as error:
            log.error("Cannot find the workload child resources: %s", error)
            return self._fail(trait, ERR_LOCATE_RESOURCES)

        if is_scale_up_ready(new_deployments, target_replica) and is_scale_down_ready(
            old_deployments
        ):
            try:
                self.client.delete(
                    old_workload.get("apiVersion", ""), old_workload.get("kind", ""), old_key
                )
            except NotFoundError as error:
                log.error("Failed to delete old workload instance: %s", error)
                return self._fail(trait, ERR_FAIL_DELETE_LEGACY_WORKLOAD)
            log.info("Deleted old workload instance %s", old_workload.get("kind", ""))

            failed = self._record_revision(trait, list(trait.status.rollout_history))
            if failed is not None:
                return failed
            self._patch_condition(trait, reconcile_success())
            return Result()

        try:
            scale_up_gradually(
                self.client, new_deployments, target_replica, _int_val(trait.spec.batch)
            )
        except _CLIENT_ERRORS as error:
            log.error("Failed to scale up new workload: %s", error)
            return self._fail(trait, _wrap(ERR_FAIL_SCALE_UP, error))
        try:
            scale_down_gradually(
                self.client, old_deployments, 0, _int_val(trait.spec.max_unavailable)
            )
        except _CLIENT_ERRORS as error:
            log.error("Failed to scale down old workload: %s", error)
            return self._fail(trait, _wrap(ERR_FAIL_SCALE_DOWN, error))
        return RECONCILE_WAIT_WORKLOAD_SCALE