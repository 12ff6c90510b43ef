from oamcatalog.meta import (
    STATUS_UNKNOWN,
    TYPE_SYNCED,
    Client,
    NamespacedName,
    ObjectMeta,
    TypedReference,
    reconcile_error,
    reconcile_success,
)
from oamcatalog.sidecar_api import SidecarTrait, SidecarTraitSpec, SidecarTraitStatus


def _trait():
    return SidecarTrait(
        metadata=ObjectMeta(name="sidecar", namespace="default"),
        spec=SidecarTraitSpec(
            container={"name": "log", "image": "busybox"},
            volumes=[{"name": "shared", "emptyDir": {}}],
            workload_reference=TypedReference("apps/v1", "Deployment", "web"),
        ),
    )


def test_default_api_version_and_kind():
    trait = SidecarTrait()
    assert trait.api_version == "core.oam.dev/v1alpha2"
    assert trait.kind == "SidecarTrait"


def test_wire_keys():
    data = _trait().to_dict()
    assert data["spec"]["workloadRef"] == {"apiVersion": "apps/v1", "kind": "Deployment", "name": "web"}
    assert data["spec"]["container"] == {"name": "log", "image": "busybox"}
    assert data["spec"]["volumes"] == [{"name": "shared", "emptyDir": {}}]


def test_empty_spec_omits_container_and_volumes():
    data = SidecarTraitSpec().to_dict()
    assert set(data) == {"workloadRef"}


def test_round_trip():
    trait = _trait()
    trait.set_conditions(reconcile_error("failed"))
    assert SidecarTrait.from_dict(trait.to_dict()) == trait


def test_conditions_delegate_to_status():
    trait = _trait()
    assert trait.get_condition(TYPE_SYNCED).status == STATUS_UNKNOWN
    trait.set_conditions(reconcile_success())
    assert trait.get_condition(TYPE_SYNCED) == reconcile_success()
    assert trait.status == SidecarTraitStatus([reconcile_success()])


def test_store_and_read_back_through_client():
    client = Client()
    client.create(_trait().to_dict())
    fetched = SidecarTrait.from_dict(
        client.get("core.oam.dev/v1alpha2", "SidecarTrait", NamespacedName("default", "sidecar"))
    )
    assert fetched.spec == _trait().spec
    assert fetched.metadata.uid