# oamcatalog

This package provides resource models and reconcile logic for three Open Application Model
extensions:

- **SidecarTrait** (`core.oam.dev/v1alpha2`) adds a sidecar container and
  volumes to the workload it points to. It also adds them to that workload's
  child resources. A container or volume with the same name is replaced in
  place. Any other container or volume is appended.
- **SimpleRolloutTrait** (`extend.oam.dev/v1alpha2`) moves a workload to a
  new revision. It scales the new workload's Deployments up by `batch` and
  scales the old ones down by `maxUnavailable`. Once both sides have settled,
  it deletes the old workload. It records each ControllerRevision it
  completes in the trait's rollout history.
- **PodSpecWorkload** (`standard.oam.dev/v1alpha1`) renders a Deployment from
  a pod spec. If any container declares ports, it also renders a ClusterIP
  Service, with service ports numbered from 8080. Mutating and validating
  admission handlers for this resource are included.

The package uses only the standard library.

## Installation

```
pip install .
```

## Modules

| Module | Contents |
| --- | --- |
| `oamcatalog.meta` | `GroupVersion`, `TypedReference`, `NamespacedName`, `ObjectMeta`, `Condition`, `ConditionedStatus`, `Result`, `Client`, `NotFoundError`, `ConflictError`, `reconcile_success()`, `reconcile_error()`, `api_version_to_group_version()` |
| `oamcatalog.sidecar_api` | `SidecarTrait`, `SidecarTraitSpec`, `SidecarTraitStatus` |
| `oamcatalog.rollout_api` | `SimpleRolloutTrait`, `SimpleRolloutTraitSpec`, `SimpleRolloutTraitStatus`, `RolloutHistory` |
| `oamcatalog.podspec_api` | `PodSpecWorkload`, `PodSpecWorkloadSpec`, `PodSpecWorkloadStatus` |
| `oamcatalog.sidecar` | `combine_containers()`, `combine_volumes()`, `locate_field()`, `locate_containers_field()`, `locate_volumes_field()`, `SidecarTraitReconciler` |
| `oamcatalog.rollout_helper` | `determine_workload_type()`, `is_newly_created()`, `is_under_rollout()`, `is_scale_up_ready()`, `is_scale_down_ready()`, `scale_up_gradually()`, `scale_down_gradually()`, `fetch_workload()`, `get_underlying_deployments()`, `get_controller_revision()` |
| `oamcatalog.rollout` | `SimpleRolloutTraitReconciler` |
| `oamcatalog.podspec` | `render_deployment()`, `render_service()`, `container_ports_specified()`, `PodSpecWorkloadReconciler` |
| `oamcatalog.webhook` | `FieldError`, `AdmissionRequest`, `AdmissionResponse`, `MutatingHandler`, `ValidatingHandler`, `default_pod_spec_workload()`, `validate_create()`, `validate_update()`, `validate_delete()`, `register()` |

Each resource class has `from_dict()` and `to_dict()`, which convert to and
from the plain dictionary form of the object. Each one also has
`get_condition()` and `set_conditions()`.

## The object store

`meta.Client` is an in-memory object store. It holds plain dictionaries keyed
by apiVersion, kind, namespace and name. Every call returns copies of the
stored objects. The store provides these methods:

- `get`
- `create`, which assigns a uid
- `update`, which keeps the stored status
- `update_status`
- `patch`, a merge in which `None` removes a key
- `apply`, which creates the object or merges into it
- `delete`

A missing object raises `NotFoundError`. `ConflictError` is raised in two
cases:

- an object is created twice;
- `update` or `update_status` is given an object whose `resourceVersion`
  differs from the stored one.

All reconcilers read and write through a `Client`. Each `reconcile(request)`
takes a `NamespacedName` and returns a `Result`:

- an empty `Result` when the object is done or missing;
- a result with `requeue_after` set when the reconciler should run again.

Failures are written to the object's `Synced` condition.

## Examples

Defaulting and validating a workload:

```python
from oamcatalog.meta import ObjectMeta
from oamcatalog.podspec_api import PodSpecWorkload
from oamcatalog.webhook import default_pod_spec_workload, validate_create

workload = PodSpecWorkload(metadata=ObjectMeta(name="web", namespace="default"))
default_pod_spec_workload(workload)      # replicas defaults to 1
errors = validate_create(workload)       # no containers -> one FieldError
```

Merging a sidecar into an existing container list:

```python
from oamcatalog.sidecar import combine_containers

containers = combine_containers(
    [{"name": "app", "image": "app:1"}],
    {"name": "proxy", "image": "proxy:1"},
)
```

Reconciling a PodSpecWorkload against the in-memory store:

```python
from oamcatalog.meta import Client, NamespacedName
from oamcatalog.podspec import PodSpecWorkloadReconciler

client = Client([{
    "apiVersion": "standard.oam.dev/v1alpha1",
    "kind": "PodSpecWorkload",
    "metadata": {"name": "web", "namespace": "default"},
    "spec": {"podSpec": {"containers": [
        {"name": "web", "image": "nginx", "ports": [{"containerPort": 80}]},
    ]}},
}])
PodSpecWorkloadReconciler(client).reconcile(NamespacedName("default", "web"))
service = client.get("v1", "Service", NamespacedName("default", "web"))
```

## What the package does not do

- It does not connect to a cluster. It does not watch objects or run a
  controller manager. It has no command-line program. You must call
  `reconcile()` yourself, with a `Client` that holds the objects.
- It does not discover the child resources of an OAM workload. The sidecar and
  rollout reconcilers take a `fetch_children` callable. It receives a workload
  dictionary and returns that workload's resources. By default the workload has
  no children.
- It does not fetch OpenAPI schemas. `SidecarTraitReconciler` takes a document
  that maps `(group, version, kind)` to a schema dictionary. The schema uses the
  `properties`, `items` and `additionalProperties` keys.
- Events are not sent anywhere. The sidecar and pod-spec reconcilers append
  them to their `events` list.
- It does not serve HTTP. `register(server)` only puts a `ValidatingHandler`
  and a `MutatingHandler` into a mapping, under their webhook paths. Each
  `handle()` method takes an `AdmissionRequest` that holds the raw JSON. It
  returns an `AdmissionResponse`; responses from the mutating handler carry
  JSON patch operations.

## Running the tests

```
pip install -e ".[test]"
pytest
```