"""Admission webhooks that default and validate PodSpecWorkloads."""

from __future__ import annotations

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, MutableMapping

from oamcatalog.meta import Client, ObjectMeta
from oamcatalog.podspec_api import PodSpecWorkload

mutate_log = logging.getLogger(f"{__name__}.mutate")
validate_log = logging.getLogger(f"{__name__}.validate")

VALIDATE_PATH = "/validate-standard-oam-dev-v1alpha1-podspecworkload"
MUTATE_PATH = "/mutate-standard-oam-dev-v1alpha1-podspecworkload"

OPERATION_CREATE = "CREATE"
OPERATION_UPDATE = "UPDATE"
OPERATION_DELETE = "DELETE"
OPERATION_CONNECT = "CONNECT"

ERROR_REQUIRED = "Required value"
ERROR_INVALID = "Invalid value"
ERROR_TOO_LONG = "Too long"

_TOTAL_ANNOTATION_LIMIT = 256 * 1024

_DNS1123_LABEL = "[a-z0-9]([-a-z0-9]*[a-z0-9])?"
_DNS1123_LABEL_RE = re.compile(_DNS1123_LABEL)
_DNS1123_SUBDOMAIN_RE = re.compile(rf"{_DNS1123_LABEL}(\.{_DNS1123_LABEL})*")
_QUALIFIED_NAME_RE = re.compile("([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]")

_LABEL_MAX = 63
_SUBDOMAIN_MAX = 253

_SUBDOMAIN_MSG = (
    "a lowercase RFC 1123 subdomain must consist of lower case alphanumeric characters, "
    "'-' or '.', and must start and end with an alphanumeric character"
)
_LABEL_MSG = (
    "a lowercase RFC 1123 label must consist of lower case alphanumeric characters "
    "or '-', and must start and end with an alphanumeric character"
)
_QUALIFIED_MSG = (
    "must consist of alphanumeric characters, '-', '_' or '.', "
    "and must start and end with an alphanumeric character"
)


def _render(value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)


@dataclass(frozen=True)
class FieldError:
    """A problem with one field of an object."""

    type: str
    field: str
    bad_value: Any = None
    detail: str = ""

    def __str__(self) -> str:
        if self.type in (ERROR_REQUIRED, ERROR_TOO_LONG):
            body = self.type
        else:
            body = f"{self.type}: {_render(self.bad_value)}"
        if self.detail:
            body += f": {self.detail}"
        return f"{self.field}: {body}"


def _aggregate(errors: list[FieldError]) -> str:
    messages = list(dict.fromkeys(str(e) for e in errors))
    if len(messages) == 1:
        return messages[0]
    return "[" + ", ".join(messages) + "]"


def _subdomain_errors(value: str) -> list[str]:
    errors = []
    if len(value) > _SUBDOMAIN_MAX:
        errors.append(f"must be no more than {_SUBDOMAIN_MAX} characters")
    if not _DNS1123_SUBDOMAIN_RE.fullmatch(value):
        errors.append(_SUBDOMAIN_MSG)
    return errors


def _label_errors(value: str) -> list[str]:
    errors = []
    if len(value) > _LABEL_MAX:
        errors.append(f"must be no more than {_LABEL_MAX} characters")
    if not _DNS1123_LABEL_RE.fullmatch(value):
        errors.append(_LABEL_MSG)
    return errors


def _qualified_name_errors(value: str) -> list[str]:
    parts = value.split("/")
    if len(parts) == 1:
        name = parts[0]
        errors: list[str] = []
    elif len(parts) == 2:
        prefix, name = parts
        if not prefix:
            errors = ["prefix part must be non-empty"]
        else:
            errors = [f"prefix part {msg}" for msg in _subdomain_errors(prefix)]
    else:
        return [f"a qualified name {_QUALIFIED_MSG}, with an optional DNS subdomain prefix and '/'"]
    if not name:
        errors.append("name part must be non-empty")
    elif len(name) > _LABEL_MAX:
        errors.append(f"name part must be no more than {_LABEL_MAX} characters")
    if name and not _QUALIFIED_NAME_RE.fullmatch(name):
        errors.append(f"name part {_QUALIFIED_MSG}")
    return errors


def _label_value_errors(value: str) -> list[str]:
    errors = []
    if len(value) > _LABEL_MAX:
        errors.append(f"must be no more than {_LABEL_MAX} characters")
    if value and not _QUALIFIED_NAME_RE.fullmatch(value):
        errors.append(f"a valid label {_QUALIFIED_MSG}")
    return errors


def _validate_object_meta(meta: ObjectMeta, path: str = "metadata") -> list[FieldError]:
    errors: list[FieldError] = []
    if not meta.name:
        errors.append(FieldError(ERROR_REQUIRED, f"{path}.name", None,
                                 "name or generateName is required"))
    else:
        errors.extend(FieldError(ERROR_INVALID, f"{path}.name", meta.name, msg)
                      for msg in _subdomain_errors(meta.name))
    if not meta.namespace:
        errors.append(FieldError(ERROR_REQUIRED, f"{path}.namespace"))
    else:
        errors.extend(FieldError(ERROR_INVALID, f"{path}.namespace", meta.namespace, msg)
                      for msg in _label_errors(meta.namespace))

    labels_path = f"{path}.labels"
    for key, value in meta.labels.items():
        errors.extend(FieldError(ERROR_INVALID, labels_path, key, msg)
                      for msg in _qualified_name_errors(key))
        errors.extend(FieldError(ERROR_INVALID, labels_path, value, msg)
                      for msg in _label_value_errors(value))

    annotations_path = f"{path}.annotations"
    total = 0
    for key, value in meta.annotations.items():
        errors.extend(FieldError(ERROR_INVALID, annotations_path, key, msg)
                      for msg in _qualified_name_errors(key.lower()))
        total += len(key) + len(value)
    if total > _TOTAL_ANNOTATION_LIMIT:
        errors.append(FieldError(ERROR_TOO_LONG, annotations_path, "",
                                 f"must have at most {_TOTAL_ANNOTATION_LIMIT} bytes"))

    owners_path = f"{path}.ownerReferences"
    for owner in meta.owner_references:
        for key, what in (("apiVersion", "version"), ("kind", "kind"),
                          ("name", "name"), ("uid", "uid")):
            if not owner.get(key):
                errors.append(FieldError(ERROR_INVALID, owners_path, owner,
                                         f"{what} must not be empty"))
    return errors


def default_pod_spec_workload(obj: PodSpecWorkload) -> None:
    """Fill in defaults: an unset replica count becomes 1."""
    mutate_log.info("default %s", obj.metadata.name)
    if obj.spec.replicas is None:
        mutate_log.info("default replicas as 1")
        obj.spec.replicas = 1


def validate_create(obj: PodSpecWorkload) -> list[FieldError]:
    """Return the problems that forbid creating ``obj``; empty when it is valid."""
    validate_log.info("validate create %s", obj.metadata.name)
    errors = _validate_object_meta(obj.metadata)
    replicas = obj.spec.replicas
    if replicas is not None and replicas < 0:
        errors.append(FieldError(ERROR_INVALID, "spec.Replicas", replicas,
                                 "must be greater than or equal to 0"))
    containers = obj.spec.pod_spec.get("containers")
    if not containers:
        errors.append(FieldError(ERROR_INVALID, "spec.podSpec.Containers", containers,
                                 "You need at least one container"))
    return errors


def validate_update(obj: PodSpecWorkload, old_obj: PodSpecWorkload | None) -> list[FieldError]:
    """Validate an update; the new object must be valid as if it were created."""
    validate_log.info("validate update %s", obj.metadata.name)
    return validate_create(obj)


def validate_delete(obj: PodSpecWorkload) -> list[FieldError]:
    """Deletion is always allowed."""
    validate_log.info("validate delete %s", obj.metadata.name)
    return []


@dataclass(frozen=True)
class AdmissionRequest:
    """An admission review request: the operation and the raw JSON objects."""

    operation: str
    object: bytes | str
    old_object: bytes | str = b""
    uid: str = ""


@dataclass
class AdmissionResponse:
    """The verdict on a request, with JSON patch operations when mutating."""

    allowed: bool
    code: int = HTTPStatus.OK
    message: str = ""
    patches: list[dict[str, Any]] = field(default_factory=list)


def _errored(code: HTTPStatus, error: BaseException | str) -> AdmissionResponse:
    return AdmissionResponse(allowed=False, code=code, message=str(error))


def _decode(raw: bytes | str) -> tuple[dict[str, Any], PodSpecWorkload]:
    if not raw:
        raise ValueError("there is no content to decode")
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("object must be a JSON object")
    try:
        return data, PodSpecWorkload.from_dict(data)
    except (AttributeError, TypeError) as error:
        raise ValueError(f"cannot decode PodSpecWorkload: {error}") from error


def _overlay(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _overlay(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def _escape(key: str) -> str:
    return key.replace("~", "~0").replace("/", "~1")


def _json_patch(old: Any, new: Any, path: str = "") -> list[dict[str, Any]]:
    if isinstance(old, dict) and isinstance(new, dict):
        ops: list[dict[str, Any]] = []
        for key in old:
            sub = f"{path}/{_escape(key)}"
            if key not in new:
                ops.append({"op": "remove", "path": sub})
            else:
                ops.extend(_json_patch(old[key], new[key], sub))
        ops.extend(
            {"op": "add", "path": f"{path}/{_escape(key)}", "value": copy.deepcopy(value)}
            for key, value in new.items()
            if key not in old
        )
        return ops
    if isinstance(old, list) and isinstance(new, list) and len(old) == len(new):
        ops = []
        for index, (a, b) in enumerate(zip(old, new)):
            ops.extend(_json_patch(a, b, f"{path}/{index}"))
        return ops
    if type(old) is type(new) and old == new:
        return []
    return [{"op": "replace", "path": path, "value": copy.deepcopy(new)}]


@dataclass
class MutatingHandler:
    """Fills in PodSpecWorkload defaults and answers with a JSON patch."""

    client: Client | None = None

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        try:
            original, obj = _decode(request.object)
        except ValueError as error:
            return _errored(HTTPStatus.BAD_REQUEST, error)
        default_pod_spec_workload(obj)
        try:
            current = _overlay(copy.deepcopy(original), obj.to_dict())
            json.dumps(current)
        except (TypeError, ValueError) as error:
            return _errored(HTTPStatus.INTERNAL_SERVER_ERROR, error)
        patches = _json_patch(original, current)
        if patches:
            mutate_log.debug(
                "Admit PodSpecWorkload %s/%s patches: %s",
                obj.metadata.namespace,
                obj.metadata.name,
                json.dumps(patches),
            )
        return AdmissionResponse(allowed=True, patches=patches)


@dataclass
class ValidatingHandler:
    """Rejects PodSpecWorkloads that fail validation on create or update."""

    client: Client | None = None

    def handle(self, request: AdmissionRequest) -> AdmissionResponse:
        try:
            _, obj = _decode(request.object)
        except ValueError as error:
            validate_log.error("decoder failed, operation %s: %s", request.operation, error)
            return _errored(HTTPStatus.BAD_REQUEST, error)

        if request.operation == OPERATION_CREATE:
            errors = validate_create(obj)
            if errors:
                return _errored(HTTPStatus.UNPROCESSABLE_ENTITY, _aggregate(errors))
        elif request.operation == OPERATION_UPDATE:
            try:
                _, old_obj = _decode(request.old_object)
            except ValueError as error:
                return _errored(HTTPStatus.BAD_REQUEST, error)
            errors = validate_update(obj, old_obj)
            if errors:
                return _errored(HTTPStatus.UNPROCESSABLE_ENTITY, _aggregate(errors))
        return AdmissionResponse(allowed=True)


def register(server: MutableMapping[str, Any]) -> None:
    """Mount the validating and mutating handlers on the server's routes."""
    server[VALIDATE_PATH] = ValidatingHandler()
    server[MUTATE_PATH] = MutatingHandler()