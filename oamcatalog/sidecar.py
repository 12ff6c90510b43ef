"""Injection of sidecar containers and volumes into a trait's workload."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence

from oamcatalog.meta import (
    Client,
    NamespacedName,
    NotFoundError,
    Result,
    TypedReference,
    api_version_to_group_version,
    reconcile_error,
    reconcile_success,
)
from oamcatalog.sidecar_api import API_VERSION, KIND, SidecarTrait

ERR_SIDECAR_CONTAINER_NAME_DUPLICATE = "cannot deploy sidecar container, duplicate name"
ERR_SIDECAR_VOLUME_NAME_DUPLICATE = "cannot deploy sidecar volume, duplicate name"
ERR_PATCH_TO_BE_SIDECAR_RESOURCE = "cannot patch the resource for containers"
ERR_SIDECAR_RESOURCE = "cannot sidecar the resourc"
ERR_QUERY_OPENAPI = "failed to query openAPI"
ERR_LOCATE_WORKLOAD = "cannot find workload"
ERR_FETCH_CHILD_RESOURCES = "failed to fetch workload child resources"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

APP_CONFIG_KIND = "ApplicationConfiguration"

# How long to wait before trying again after a failed reconcile.
RECONCILE_WAIT = Result(requeue_after=30.0)

CONTAINERS_FIELD_PATHS = (
    ("spec", "containers"),
    ("spec", "template", "spec", "containers"),
)
VOLUMES_FIELD_PATHS = (
    ("spec", "volumes"),
    ("spec", "template", "spec", "volumes"),
)

# An OpenAPI document maps (group, version, kind) to the resource's schema.
OpenAPIDocument = Mapping[tuple[str, str, str], Mapping[str, Any]]
ChildFetcher = Callable[[dict[str, Any]], Iterable[dict[str, Any]]]


class _SidecarError(Exception):
    """A failure while injecting the sidecar into one of the resources."""


@dataclass(frozen=True)
class _Event:
    """An event recorded against an object."""

    object: TypedReference
    type: str
    reason: str
    message: str


def _merge_by_name(existing: list[Any], item: dict[str, Any]) -> list[Any]:
    name = item.get("name")
    for index, current in enumerate(existing):
        if isinstance(current, dict) and current.get("name") == name:
            existing[index] = copy.deepcopy(item)
            return existing
    existing.append(copy.deepcopy(item))
    return existing


def combine_containers(
    res_containers: Sequence[Any] | None, container: dict[str, Any]
) -> list[Any]:
    """Add the sidecar container; one with the same name is replaced in place."""
    return _merge_by_name(copy.deepcopy(list(res_containers or [])), container)


def combine_volumes(
    res_volumes: Sequence[Any] | None, volumes: Iterable[dict[str, Any]]
) -> list[Any]:
    """Add each volume; one with the same name is replaced in place."""
    combined = copy.deepcopy(list(res_volumes or []))
    for volume in volumes:
        combined = _merge_by_name(combined, volume)
    return combined


def _schema_kind(schema: Mapping[str, Any]) -> str:
    if schema.get("type") == "array" or "items" in schema:
        return "array"
    if "properties" in schema:
        return "kind"
    if "additionalProperties" in schema and isinstance(schema["additionalProperties"], Mapping):
        return "map"
    return "primitive"


def _lookup_schema_for_field(
    schema: Mapping[str, Any], path: Sequence[str]
) -> Mapping[str, Any] | None:
    """Walk ``path`` through the schema, passing through arrays and maps."""
    remaining = list(path)
    current = schema
    while remaining:
        kind = _schema_kind(current)
        if kind == "array":
            current = current.get("items") or {}
        elif kind == "map":
            current = current["additionalProperties"]
        elif kind == "kind":
            sub = current["properties"].get(remaining[0])
            if sub is None:
                return None
            current = sub
            remaining.pop(0)
        else:
            return None
    return current


def locate_field(
    document: OpenAPIDocument,
    resource: dict[str, Any],
    field_paths: Iterable[Sequence[str]],
) -> tuple[bool, list[str] | None]:
    """Find the first of ``field_paths`` the resource's schema defines.

    Returns whether that field is an array, with the path; ``(False, None)``
    when the schema defines none of them.
    """
    group_version = api_version_to_group_version(resource.get("apiVersion", ""))
    schema = document.get((group_version.group, group_version.version, resource.get("kind", "")))
    if schema is None:
        return False, None
    for path in field_paths:
        found = _lookup_schema_for_field(schema, path)
        if found is not None:
            return _schema_kind(found) == "array", list(path)
    return False, None


def locate_containers_field(
    document: OpenAPIDocument, resource: dict[str, Any]
) -> tuple[bool, list[str] | None]:
    """Locate the containers list of a pod or of a pod template."""
    return locate_field(document, resource, CONTAINERS_FIELD_PATHS)


def locate_volumes_field(
    document: OpenAPIDocument, resource: dict[str, Any]
) -> tuple[bool, list[str] | None]:
    """Locate the volumes list of a pod or of a pod template."""
    return locate_field(document, resource, VOLUMES_FIELD_PATHS)


def _nested_slice(obj: dict[str, Any], path: Sequence[str]) -> list[Any] | None:
    current: Any = obj
    for index, key in enumerate(path):
        if not isinstance(current, dict):
            where = ".".join(path[:index])
            raise ValueError(f"{where} is of the type {type(current).__name__}, expected map")
        if key not in current:
            return None
        current = current[key]
    if not isinstance(current, list):
        raise ValueError(f"{'.'.join(path)} is of the type {type(current).__name__}, expected list")
    return current


def _set_nested(obj: dict[str, Any], value: Any, path: Sequence[str]) -> None:
    current = obj
    for key in path[:-1]:
        child = current.get(key)
        if not isinstance(child, dict):
            if child is not None:
                raise ValueError(f"value cannot be set because {key} is not a map")
            child = current[key] = {}
        current = child
    current[path[-1]] = copy.deepcopy(value)


def _no_children(workload: dict[str, Any]) -> list[dict[str, Any]]:
    return []


class SidecarTraitReconciler:
    """Reconciles SidecarTraits by patching their workload's resources."""

    def __init__(
        self,
        client: Client,
        document: OpenAPIDocument | None,
        fetch_children: ChildFetcher | None = None,
    ) -> None:
        self.client = client
        self.document = document
        self.fetch_children = fetch_children or _no_children
        self.events: list[_Event] = []

    def _record(self, target: TypedReference, event_type: str, reason: str, message: str) -> None:
        self.events.append(_Event(target, event_type, reason, message))

    def _event_object(self, trait: SidecarTrait) -> TypedReference:
        namespace = trait.metadata.namespace
        for owner in trait.metadata.owner_references:
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
            return TypedReference(
                api_version=parent["apiVersion"],
                kind=parent["kind"],
                name=parent["metadata"]["name"],
                uid=parent["metadata"].get("uid", ""),
            )
        return TypedReference(trait.api_version, trait.kind, trait.metadata.name, trait.metadata.uid)

    def _patch_condition(self, trait: SidecarTrait, condition: Any) -> None:
        trait.set_conditions(condition)
        self.client.patch(
            {
                "apiVersion": trait.api_version,
                "kind": trait.kind,
                "metadata": {"name": trait.metadata.name, "namespace": trait.metadata.namespace},
                "status": trait.status.to_dict(),
            }
        )

    def _fetch_workload(self, trait: SidecarTrait) -> dict[str, Any]:
        ref = trait.spec.workload_reference
        return self.client.get(
            ref.api_version, ref.kind, NamespacedName(trait.metadata.namespace, ref.name)
        )

    def reconcile(self, request: NamespacedName) -> Result:
        """Inject the trait's sidecar into its workload; return when to run again."""
        try:
            trait = SidecarTrait.from_dict(self.client.get(API_VERSION, KIND, request))
        except NotFoundError:
            return Result()

        event_obj = self._event_object(trait)

        try:
            workload = self._fetch_workload(trait)
        except NotFoundError as error:
            self._record(event_obj, EVENT_WARNING, ERR_LOCATE_WORKLOAD, str(error))
            raise

        try:
            resources = list(self.fetch_children(workload))
        except Exception as error:  # the fetcher is supplied by the caller
            self._record(event_obj, EVENT_WARNING, ERR_FETCH_CHILD_RESOURCES, str(error))
            self._patch_condition(trait, reconcile_error(ERR_FETCH_CHILD_RESOURCES))
            return RECONCILE_WAIT

        if not resources:
            resources = [workload]

        try:
            self._sidecar_resources(trait, resources)
        except _SidecarError as error:
            self._record(event_obj, EVENT_WARNING, ERR_SIDECAR_RESOURCE, str(error))
            self._patch_condition(trait, reconcile_error(error))
            return RECONCILE_WAIT

        self._record(
            event_obj,
            EVENT_NORMAL,
            "Sidecar containers applied",
            f"Trait `{trait.metadata.name}` successfully sidecar a resource to",
        )
        self._patch_condition(trait, reconcile_success())
        return Result()

    def _sidecar_resources(self, trait: SidecarTrait, resources: list[dict[str, Any]]) -> None:
        if self.document is None:
            raise _SidecarError(f"{ERR_QUERY_OPENAPI}: no OpenAPI document")

        found = False
        for resource in resources:
            combined = False

            is_array, containers_path = locate_containers_field(self.document, resource)
            if is_array and containers_path:
                try:
                    current = _nested_slice(resource, containers_path)
                except ValueError as error:
                    raise _SidecarError(f"{ERR_PATCH_TO_BE_SIDECAR_RESOURCE}: {error}") from error
                if current is None:
                    raise _SidecarError(
                        f"{ERR_PATCH_TO_BE_SIDECAR_RESOURCE}: "
                        f"{'.'.join(containers_path)} not found"
                    )
                containers = combine_containers(current, trait.spec.container)
                try:
                    _set_nested(resource, containers, containers_path)
                except ValueError as error:
                    raise _SidecarError(f"{ERR_PATCH_TO_BE_SIDECAR_RESOURCE}: {error}") from error
                found = combined = True

            is_array, volumes_path = locate_volumes_field(self.document, resource)
            if is_array and volumes_path:
                try:
                    current = _nested_slice(resource, volumes_path)
                    volumes = combine_volumes(current, trait.spec.volumes)
                    _set_nested(resource, volumes, volumes_path)
                except ValueError as error:
                    raise _SidecarError(f"{ERR_PATCH_TO_BE_SIDECAR_RESOURCE}: {error}") from error
                found = combined = True

            if combined:
                try:
                    self.client.patch(resource)
                except (NotFoundError, ValueError) as error:
                    raise _SidecarError(f"{ERR_SIDECAR_RESOURCE}: {error}") from error

        if not found:
            raise _SidecarError(ERR_SIDECAR_RESOURCE)