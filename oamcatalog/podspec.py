"""Reconciler that renders a PodSpecWorkload into a Deployment and a Service."""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from typing import Any

from oamcatalog.meta import (
    APPS_GROUP_VERSION,
    CORE_GROUP_VERSION,
    STANDARD_OAM_GROUP_VERSION,
    Client,
    Condition,
    ConflictError,
    NamespacedName,
    NotFoundError,
    Result,
    TypedReference,
    reconcile_error,
    reconcile_success,
)
from oamcatalog.podspec_api import PodSpecWorkload

log = logging.getLogger(__name__)

ERR_RENDER_DEPLOYMENT = "cannot render deployment"
ERR_RENDER_SERVICE = "cannot render service"
ERR_APPLY_DEPLOYMENT = "cannot apply the deployment"
ERR_APPLY_SERVICE = "cannot apply the service"

WORKLOAD_API_VERSION = str(STANDARD_OAM_GROUP_VERSION)
WORKLOAD_KIND = "PodSpecWorkload"

DEPLOYMENT_KIND = "Deployment"
DEPLOYMENT_API_VERSION = str(APPS_GROUP_VERSION)
SERVICE_KIND = "Service"
SERVICE_API_VERSION = str(CORE_GROUP_VERSION)

LABEL_NAME_KEY = "component.oam.dev/name"

PROTOCOL_TCP = "TCP"
SERVICE_TYPE_CLUSTER_IP = "ClusterIP"
FIRST_SERVICE_PORT = 8080

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

APP_CONFIG_KIND = "ApplicationConfiguration"

RECONCILE_WAIT = Result(requeue_after=30.0)

# Delays between attempts when a status update meets a conflicting write.
_RETRY_DELAYS = (0.01, 0.05, 0.25)

_CLIENT_ERRORS = (NotFoundError, ConflictError, ValueError)


@dataclass(frozen=True)
class _Event:
    """An event recorded against an object."""

    object: TypedReference
    type: str
    reason: str
    message: str


def _controller_reference(workload: PodSpecWorkload) -> dict[str, Any]:
    return {
        "apiVersion": WORKLOAD_API_VERSION,
        "kind": WORKLOAD_KIND,
        "name": workload.metadata.name,
        "uid": workload.metadata.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def _pass_label_and_annotation(workload: PodSpecWorkload, meta: dict[str, Any]) -> None:
    """Copy the workload's labels and annotations; the target's own values win."""
    for key, source in (("labels", workload.metadata.labels),
                        ("annotations", workload.metadata.annotations)):
        merged = {**source, **(meta.get(key) or {})}
        if merged:
            meta[key] = merged


def render_deployment(workload: PodSpecWorkload) -> dict[str, Any]:
    """Build the Deployment that runs the workload's pod spec."""
    name = workload.metadata.name
    pod_spec = copy.deepcopy(workload.spec.pod_spec or {})
    for container in pod_spec.get("containers") or []:
        for port in container.get("ports") or []:
            if not port.get("protocol"):
                port["protocol"] = PROTOCOL_TCP

    spec: dict[str, Any] = {}
    if workload.spec.replicas is not None:
        spec["replicas"] = workload.spec.replicas
    spec["selector"] = {"matchLabels": {LABEL_NAME_KEY: name}}
    template_meta: dict[str, Any] = {"labels": {LABEL_NAME_KEY: name}}
    spec["template"] = {"metadata": template_meta, "spec": pod_spec}

    metadata: dict[str, Any] = {"name": name, "namespace": workload.metadata.namespace}
    _pass_label_and_annotation(workload, metadata)
    _pass_label_and_annotation(workload, template_meta)
    metadata["ownerReferences"] = [_controller_reference(workload)]

    deployment = {
        "apiVersion": DEPLOYMENT_API_VERSION,
        "kind": DEPLOYMENT_KIND,
        "metadata": metadata,
        "spec": spec,
    }
    log.info("rendered a deployment %s", name)
    return deployment


def container_ports_specified(workload: PodSpecWorkload | None) -> bool:
    """True when any container of the workload declares a port."""
    if workload is None:
        return False
    containers = (workload.spec.pod_spec or {}).get("containers") or []
    return any(container.get("ports") for container in containers)


def render_service(workload: PodSpecWorkload) -> dict[str, Any]:
    """Build a ClusterIP Service exposing every container port from 8080 upwards."""
    name = workload.metadata.name
    containers = (workload.spec.pod_spec or {}).get("containers") or []
    ports = []
    container_ports = (port for container in containers for port in container.get("ports") or [])
    for number, port in enumerate(container_ports, start=FIRST_SERVICE_PORT):
        service_port: dict[str, Any] = {}
        if port.get("name"):
            service_port["name"] = port["name"]
        service_port["protocol"] = port.get("protocol") or PROTOCOL_TCP
        service_port["port"] = number
        service_port["targetPort"] = port.get("containerPort", 0)
        ports.append(service_port)

    return {
        "apiVersion": SERVICE_API_VERSION,
        "kind": SERVICE_KIND,
        "metadata": {
            "name": name,
            "namespace": workload.metadata.namespace,
            "labels": {LABEL_NAME_KEY: name},
            "ownerReferences": [_controller_reference(workload)],
        },
        "spec": {
            "selector": {LABEL_NAME_KEY: name},
            "ports": ports,
            "type": SERVICE_TYPE_CLUSTER_IP,
        },
    }


def _reference_to(obj: dict[str, Any]) -> TypedReference:
    meta = obj.get("metadata") or {}
    return TypedReference(
        api_version=obj.get("apiVersion", ""),
        kind=obj.get("kind", ""),
        name=meta.get("name", ""),
        uid=meta.get("uid", ""),
    )


class PodSpecWorkloadReconciler:
    """Reconciles PodSpecWorkloads into a Deployment and, with ports, a Service."""

    def __init__(self, client: Client) -> None:
        self.client = client
        self.events: list[_Event] = []

    def _record(self, target: TypedReference, event_type: str, reason: str, message: str) -> None:
        self.events.append(_Event(target, event_type, reason, message))

    def _event_object(self, workload: PodSpecWorkload) -> TypedReference:
        namespace = workload.metadata.namespace
        for owner in workload.metadata.owner_references:
            if owner.get("kind") != APP_CONFIG_KIND:
                continue
            try:
                parent = self.client.get(
                    owner.get("apiVersion", ""),
                    APP_CONFIG_KIND,
                    NamespacedName(namespace, owner.get("name", "")),
                )
            except NotFoundError:
                continue
            return _reference_to(parent)
        return TypedReference(
            WORKLOAD_API_VERSION, WORKLOAD_KIND, workload.metadata.name, workload.metadata.uid
        )

    def _patch_condition(self, workload: PodSpecWorkload, condition: Condition) -> None:
        workload.set_conditions(condition)
        self.client.patch(
            {
                "apiVersion": WORKLOAD_API_VERSION,
                "kind": WORKLOAD_KIND,
                "metadata": {
                    "name": workload.metadata.name,
                    "namespace": workload.metadata.namespace,
                },
                "status": workload.to_dict().get("status") or {},
            }
        )

    def _fail(self, workload: PodSpecWorkload, message: str) -> Result:
        self._patch_condition(workload, reconcile_error(message))
        return RECONCILE_WAIT

    def reconcile(self, request: NamespacedName) -> Result:
        """Apply the workload's Deployment and Service; return when to run again."""
        log.info("Reconcile podspecworkload workload %s", request)
        try:
            workload = PodSpecWorkload.from_dict(
                self.client.get(WORKLOAD_API_VERSION, WORKLOAD_KIND, request)
            )
        except NotFoundError:
            log.info("Podspec workload is deleted")
            return Result()

        event_obj = self._event_object(workload)
        name = workload.metadata.name

        deployment = render_deployment(workload)
        try:
            applied = self.client.apply(deployment)
        except _CLIENT_ERRORS as error:
            log.error("Failed to apply to a deployment: %s", error)
            self._record(event_obj, EVENT_WARNING, ERR_APPLY_DEPLOYMENT, str(error))
            return self._fail(workload, f"{ERR_APPLY_DEPLOYMENT}: {error}")
        self._record(
            event_obj,
            EVENT_NORMAL,
            "Deployment created",
            f"Workload `{name}` successfully patched a deployment `{deployment['metadata']['name']}`",
        )
        resources = [_reference_to(applied)]

        if container_ports_specified(workload):
            service = render_service(workload)
            try:
                applied = self.client.apply(service)
            except _CLIENT_ERRORS as error:
                log.error("Failed to apply a service: %s", error)
                self._record(event_obj, EVENT_WARNING, ERR_APPLY_DEPLOYMENT, str(error))
                return self._fail(workload, f"{ERR_APPLY_SERVICE}: {error}")
            self._record(
                event_obj,
                EVENT_NORMAL,
                "Service created",
                f"Workload `{name}` successfully server side patched a service "
                f"`{service['metadata']['name']}`",
            )
            resources.append(_reference_to(applied))

        data = workload.to_dict()
        status = dict(data.get("status") or {})
        status["resources"] = [ref.to_dict() for ref in resources]
        data["status"] = status
        workload = PodSpecWorkload.from_dict(data)

        workload = self.update_status(workload)
        self._patch_condition(workload, reconcile_success())
        return Result()

    def update_status(self, workload: PodSpecWorkload) -> PodSpecWorkload:
        """Write the workload's status over the stored one, retrying on conflicts.

        Returns the workload as stored afterwards.
        """
        status = copy.deepcopy(workload.to_dict().get("status") or {})
        key = NamespacedName(workload.metadata.namespace, workload.metadata.name)
        delays = iter(_RETRY_DELAYS)
        while True:
            current = self.client.get(WORKLOAD_API_VERSION, WORKLOAD_KIND, key)
            current["status"] = copy.deepcopy(status)
            try:
                return PodSpecWorkload.from_dict(self.client.update_status(current))
            except ConflictError:
                delay = next(delays, None)
                if delay is None:
                    raise
                time.sleep(delay)