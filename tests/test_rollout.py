import pytest

from oamcatalog.meta import Client, NamespacedName, NotFoundError, Result, TypedReference
from oamcatalog.rollout import (
    ERR_FAIL_GET_CONTROLLER_REVISION,
    ERR_LOCATE_RESOURCES,
    ERR_LOCATE_WORKLOAD,
    RECONCILE_WAIT,
    RECONCILE_WAIT_WORKLOAD_INIT,
    RECONCILE_WAIT_WORKLOAD_SCALE,
    SimpleRolloutTraitReconciler,
)
from oamcatalog.rollout_api import API_VERSION, KIND, SimpleRolloutTrait

NS = "default"
REQUEST = NamespacedName(NS, "rollout")


def deployment(name, replicas, ready=None, available=None):
    ready = replicas if ready is None else ready
    available = replicas if available is None else available
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": NS},
        "spec": {"replicas": replicas},
        "status": {"readyReplicas": ready, "availableReplicas": available},
    }


def revision(name, number):
    return {
        "apiVersion": "apps/v1",
        "kind": "ControllerRevision",
        "metadata": {"name": name, "namespace": NS},
        "revision": number,
        "data": {"rev": number},
    }


def ref(name, api_version="apps/v1", kind="Deployment"):
    return {"apiVersion": api_version, "kind": kind, "name": name}


def trait(workload_ref, replica=3, batch=1, max_unavailable=1, status=None):
    return {
        "apiVersion": API_VERSION,
        "kind": KIND,
        "metadata": {"name": "rollout", "namespace": NS},
        "spec": {
            "replica": replica,
            "batch": batch,
            "maxUnavailable": max_unavailable,
            "workloadRef": workload_ref,
        },
        "status": status or {},
    }


def stored_trait(client):
    return SimpleRolloutTrait.from_dict(client.get(API_VERSION, KIND, REQUEST))


def replicas_of(client, name):
    return client.get("apps/v1", "Deployment", NamespacedName(NS, name))["spec"]["replicas"]


def test_missing_trait_is_ignored():
    assert SimpleRolloutTraitReconciler(Client()).reconcile(REQUEST) == Result()


def test_new_trait_scales_workload_and_records_history():
    client = Client([trait(ref("web-v1")), deployment("web-v1", 2), revision("web-v1", 1)])
    result = SimpleRolloutTraitReconciler(client).reconcile(REQUEST)
    assert result == Result()
    assert replicas_of(client, "web-v1") == 3
    stored = stored_trait(client)
    assert [h.revision for h in stored.status.rollout_history] == [1]
    assert stored.status.rollout_history[0].history_data == {"rev": 1}
    assert stored.status.current_workload_reference == TypedReference("apps/v1", "Deployment", "web-v1")
    assert stored.get_condition("Synced").status == "True"


def test_new_trait_waits_for_initial_setup():
    client = Client([trait(ref("web-v1")), deployment("web-v1", 2, available=1)])
    result = SimpleRolloutTraitReconciler(client).reconcile(REQUEST)
    assert result == RECONCILE_WAIT_WORKLOAD_INIT
    assert replicas_of(client, "web-v1") == 2
    assert stored_trait(client).status.current_workload_reference == TypedReference()


def test_new_trait_with_missing_workload_reports_error():
    client = Client([trait(ref("absent"))])
    result = SimpleRolloutTraitReconciler(client).reconcile(REQUEST)
    assert result == RECONCILE_WAIT
    condition = stored_trait(client).get_condition("Synced")
    assert condition.status == "False"
    assert condition.message.startswith(ERR_LOCATE_WORKLOAD)


def test_new_trait_without_controller_revision_reports_error():
    client = Client([trait(ref("web-v1")), deployment("web-v1", 3)])
    result = SimpleRolloutTraitReconciler(client).reconcile(REQUEST)
    assert result == RECONCILE_WAIT
    assert stored_trait(client).get_condition("Synced").message.startswith(
        ERR_FAIL_GET_CONTROLLER_REVISION
    )


def test_new_trait_with_oam_workload_without_children_waits():
    workload = {
        "apiVersion": "core.oam.dev/v1alpha2",
        "kind": "ContainerizedWorkload",
        "metadata": {"name": "cw", "namespace": NS},
    }
    client = Client([trait(ref("cw", "core.oam.dev/v1alpha2", "ContainerizedWorkload")), workload])
    assert SimpleRolloutTraitReconciler(client).reconcile(REQUEST) == RECONCILE_WAIT_WORKLOAD_INIT


def test_new_trait_with_unsupported_workload_reports_error():
    workload = {"apiVersion": "example.com/v1", "kind": "Thing",
                "metadata": {"name": "thing", "namespace": NS}}
    client = Client([trait(ref("thing", "example.com/v1", "Thing")), workload])
    result = SimpleRolloutTraitReconciler(client).reconcile(REQUEST)
    assert result == RECONCILE_WAIT
    assert stored_trait(client).get_condition("Synced").message == ERR_LOCATE_RESOURCES


def test_stable_trait_does_nothing():
    status = {"currentWorkloadRef": ref("web-v1")}
    client = Client([trait(ref("web-v1"), status=status), deployment("web-v1", 1)])
    result = SimpleRolloutTraitReconciler(client).reconcile(REQUEST)
    assert result == Result()
    assert replicas_of(client, "web-v1") == 1
    assert stored_trait(client).status.conditions == []


def test_rollout_scales_new_up_and_old_down():
    status = {"currentWorkloadRef": ref("web-v1")}
    client = Client([
        trait(ref("web-v2"), replica=4, batch=2, max_unavailable=1, status=status),
        deployment("web-v1", 3),
        deployment("web-v2", 1),
    ])
    result = SimpleRolloutTraitReconciler(client).reconcile(REQUEST)
    assert result == RECONCILE_WAIT_WORKLOAD_SCALE
    assert replicas_of(client, "web-v2") == 3
    assert replicas_of(client, "web-v1") == 2


def test_rollout_completes_when_both_sides_are_ready():
    status = {
        "currentWorkloadRef": ref("web-v1"),
        "rolloutiHistory": [{"revision": 1, "historyData": {"rev": 1}}],
    }
    client = Client([
        trait(ref("web-v2"), replica=4, status=status),
        deployment("web-v1", 0),
        deployment("web-v2", 4),
        revision("web-v2", 2),
    ])
    result = SimpleRolloutTraitReconciler(client).reconcile(REQUEST)
    assert result == Result()
    with pytest.raises(NotFoundError):
        client.get("apps/v1", "Deployment", NamespacedName(NS, "web-v1"))
    stored = stored_trait(client)
    assert [h.revision for h in stored.status.rollout_history] == [1, 2]
    assert stored.status.current_workload_reference.name == "web-v2"
    assert stored.get_condition("Synced").status == "True"


def test_rollout_with_missing_old_workload_raises():
    status = {"currentWorkloadRef": ref("web-v1")}
    client = Client([trait(ref("web-v2"), status=status), deployment("web-v2", 1)])
    with pytest.raises(NotFoundError):
        SimpleRolloutTraitReconciler(client).reconcile(REQUEST)


def test_string_batch_counts_as_zero():
    status = {"currentWorkloadRef": ref("web-v1")}
    client = Client([
        trait(ref("web-v2"), replica=4, batch="20%", max_unavailable="20%", status=status),
        deployment("web-v1", 3),
        deployment("web-v2", 1),
    ])
    result = SimpleRolloutTraitReconciler(client).reconcile(REQUEST)
    assert result == RECONCILE_WAIT_WORKLOAD_SCALE
    assert replicas_of(client, "web-v2") == 1
    assert replicas_of(client, "web-v1") == 3


def test_missing_replica_is_rejected():
    client = Client([trait(ref("web-v1"), replica=None), deployment("web-v1", 1)])
    with pytest.raises(ValueError):
        SimpleRolloutTraitReconciler(client).reconcile(REQUEST)