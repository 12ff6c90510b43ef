"""Object metadata, status conditions and an in-memory object store."""

from __future__ import annotations

import copy
import itertools
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

TYPE_SYNCED = "Synced"

STATUS_TRUE = "True"
STATUS_FALSE = "False"
STATUS_UNKNOWN = "Unknown"

REASON_RECONCILE_SUCCESS = "ReconcileSuccess"
REASON_RECONCILE_ERROR = "ReconcileError"

_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass(frozen=True)
class GroupVersion:
    """An API group together with one of its versions."""

    group: str
    version: str

    def __str__(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


CORE_OAM_GROUP_VERSION = GroupVersion("core.oam.dev", "v1alpha2")
EXTEND_OAM_GROUP_VERSION = GroupVersion("extend.oam.dev", "v1alpha2")
STANDARD_OAM_GROUP_VERSION = GroupVersion("standard.oam.dev", "v1alpha1")
APPS_GROUP_VERSION = GroupVersion("apps", "v1")
CORE_GROUP_VERSION = GroupVersion("", "v1")


def api_version_to_group_version(api_version: str) -> GroupVersion:
    """Split an apiVersion string such as ``apps/v1`` into group and version."""
    parts = api_version.split("/")
    if len(parts) == 2:
        return GroupVersion(parts[0], parts[1])
    return GroupVersion("", parts[0])


@dataclass(frozen=True)
class TypedReference:
    """A reference to an object of a given API version and kind."""

    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = {"apiVersion": self.api_version, "kind": self.kind, "name": self.name}
        if self.uid:
            data["uid"] = self.uid
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TypedReference:
        data = data or {}
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
        )


@dataclass(frozen=True)
class NamespacedName:
    """The namespace and name that identify an object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class ObjectMeta:
    """The metadata common to every stored object."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        pairs = (
            ("name", self.name),
            ("namespace", self.namespace),
            ("uid", self.uid),
            ("resourceVersion", self.resource_version),
            ("labels", dict(self.labels)),
            ("annotations", dict(self.annotations)),
            ("ownerReferences", copy.deepcopy(self.owner_references)),
        )
        return {key: value for key, value in pairs if value}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ObjectMeta:
        data = data or {}
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            uid=data.get("uid", ""),
            resource_version=data.get("resourceVersion", ""),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            owner_references=copy.deepcopy(data.get("ownerReferences") or []),
        )


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass
class Condition:
    """An observation of one aspect of an object's state.

    Two conditions are equal when type, status, reason and message match;
    the transition time is not compared.
    """

    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = field(default_factory=_now, compare=False)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "type": self.type,
            "status": self.status,
            "lastTransitionTime": self.last_transition_time.strftime(_TIME_FORMAT),
        }
        if self.reason:
            data["reason"] = self.reason
        if self.message:
            data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        stamp = data.get("lastTransitionTime")
        when = (
            datetime.strptime(stamp, _TIME_FORMAT).replace(tzinfo=timezone.utc)
            if stamp
            else _now()
        )
        return cls(
            type=data.get("type", ""),
            status=data.get("status", ""),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=when,
        )


@dataclass
class ConditionedStatus:
    """A status that holds a list of conditions, at most one per type."""

    conditions: list[Condition] = field(default_factory=list)

    def get_condition(self, condition_type: str) -> Condition:
        """Return the condition of the given type, or an Unknown one."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return Condition(type=condition_type, status=STATUS_UNKNOWN)

    def set_conditions(self, *args: Condition) -> None:
        """Add or replace conditions; an equal existing condition is kept as is."""
        for new in args:
            exists = False
            for index, existing in enumerate(self.conditions):
                if existing.type != new.type:
                    continue
                exists = True
                if existing != new:
                    self.conditions[index] = new
            if not exists:
                self.conditions.append(new)

    def to_dict(self) -> dict[str, Any]:
        if not self.conditions:
            return {}
        return {"conditions": [c.to_dict() for c in self.conditions]}

    @classmethod
    def _conditions_from(cls, data: dict[str, Any] | None) -> list[Condition]:
        return [Condition.from_dict(c) for c in (data or {}).get("conditions") or []]

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ConditionedStatus:
        return cls(conditions=cls._conditions_from(data))


def reconcile_success() -> Condition:
    """The condition recorded after a successful reconcile."""
    return Condition(type=TYPE_SYNCED, status=STATUS_TRUE, reason=REASON_RECONCILE_SUCCESS)


def reconcile_error(error: BaseException | str) -> Condition:
    """The condition recorded when a reconcile fails with ``error``."""
    return Condition(
        type=TYPE_SYNCED,
        status=STATUS_FALSE,
        reason=REASON_RECONCILE_ERROR,
        message=str(error),
    )


@dataclass(frozen=True)
class Result:
    """What a reconcile asks of the caller: whether and when to run again."""

    requeue: bool = False
    requeue_after: float = 0.0


class NotFoundError(LookupError):
    """The requested object does not exist."""


class ConflictError(RuntimeError):
    """The object already exists or was changed since it was read."""


def _merge_patch(target: Any, patch: Any) -> Any:
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    if not isinstance(target, dict):
        target = {}
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        else:
            target[key] = _merge_patch(target.get(key), value)
    return target


class Client:
    """An in-memory object store with the semantics of an API server client.

    Objects are plain dictionaries with ``apiVersion``, ``kind`` and
    ``metadata``; every call hands out copies, never the stored object.
    """

    def __init__(self, objects: Iterable[dict[str, Any]] = ()) -> None:
        self._objects: dict[tuple[str, str, str, str], dict[str, Any]] = {}
        self._versions = itertools.count(1)
        for obj in objects:
            self.create(obj)

    @staticmethod
    def _key_of(obj: dict[str, Any]) -> tuple[str, str, str, str]:
        meta = obj.get("metadata") or {}
        name = meta.get("name")
        if not name:
            raise ValueError("object has no metadata.name")
        return (obj.get("apiVersion", ""), obj.get("kind", ""), meta.get("namespace", ""), name)

    def _stored(self, key: tuple[str, str, str, str]) -> dict[str, Any]:
        try:
            return self._objects[key]
        except KeyError:
            raise NotFoundError(f'{key[1]} "{key[2]}/{key[3]}" not found') from None

    def _store(self, key: tuple[str, str, str, str], obj: dict[str, Any]) -> dict[str, Any]:
        obj.setdefault("metadata", {})["resourceVersion"] = str(next(self._versions))
        self._objects[key] = obj
        return copy.deepcopy(obj)

    @staticmethod
    def _check_version(stored: dict[str, Any], obj: dict[str, Any]) -> None:
        version = (obj.get("metadata") or {}).get("resourceVersion")
        if version and version != stored["metadata"]["resourceVersion"]:
            name = stored["metadata"].get("name", "")
            raise ConflictError(f'{stored.get("kind", "")} "{name}" has been modified')

    def get(self, api_version: str, kind: str, key: NamespacedName) -> dict[str, Any]:
        """Return a copy of the stored object."""
        return copy.deepcopy(self._stored((api_version, kind, key.namespace, key.name)))

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Store a new object, giving it a uid if it has none."""
        key = self._key_of(obj)
        if key in self._objects:
            raise ConflictError(f'{key[1]} "{key[2]}/{key[3]}" already exists')
        new = copy.deepcopy(obj)
        meta = new.setdefault("metadata", {})
        if not meta.get("uid"):
            meta["uid"] = str(uuid.uuid4())
        meta.pop("resourceVersion", None)
        return self._store(key, new)

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an object; its status is left as stored."""
        key = self._key_of(obj)
        stored = self._stored(key)
        self._check_version(stored, obj)
        new = copy.deepcopy(obj)
        new["metadata"]["uid"] = stored["metadata"]["uid"]
        if "status" in stored:
            new["status"] = copy.deepcopy(stored["status"])
        else:
            new.pop("status", None)
        return self._store(key, new)

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace only the status of an object."""
        key = self._key_of(obj)
        stored = self._stored(key)
        self._check_version(stored, obj)
        new = copy.deepcopy(stored)
        if "status" in obj:
            new["status"] = copy.deepcopy(obj["status"])
        else:
            new.pop("status", None)
        return self._store(key, new)

    def patch(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Merge ``obj`` into the stored object; ``None`` values remove keys."""
        key = self._key_of(obj)
        stored = self._stored(key)
        uid = stored["metadata"]["uid"]
        merged = _merge_patch(copy.deepcopy(stored), obj)
        merged["metadata"]["uid"] = uid
        return self._store(key, merged)

    def apply(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create the object if it is missing, otherwise merge it in."""
        if self._key_of(obj) in self._objects:
            return self.patch(obj)
        return self.create(obj)

    def delete(self, api_version: str, kind: str, key: NamespacedName) -> None:
        """Remove the object."""
        full_key = (api_version, kind, key.namespace, key.name)
        self._stored(full_key)
        del self._objects[full_key]