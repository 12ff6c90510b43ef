import pytest

from oamcatalog import rollout_helper as rh
from oamcatalog.meta import Client, NamespacedName, NotFoundError, ObjectMeta, TypedReference
from oamcatalog.rollout_api import (
    SimpleRolloutTrait,
    SimpleRolloutTraitSpec,
    SimpleRolloutTraitStatus,
)

NS = "default"


def _deployment(name, replicas, ready):
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": NS},
        "spec": {"replicas": replicas},
        "status": {"readyReplicas": ready},
    }


def _stored(client, name):
    return client.get("apps/v1", "Deployment", NamespacedName(NS, name))


def _loaded(client, *deployments):
    for d in deployments:
        client.create(d)
    return [_stored(client, d["metadata"]["name"]) for d in deployments]


def _trait(ref_name="web", current=None):
    ref = TypedReference("apps/v1", "Deployment", ref_name)
    return SimpleRolloutTrait(
        metadata=ObjectMeta(name="rollout", namespace=NS),
        spec=SimpleRolloutTraitSpec(replica=5, workload_reference=ref),
        status=SimpleRolloutTraitStatus(current_workload_reference=current or TypedReference()),
    )


def _no_children(workload):
    raise AssertionError("should not be called")


def test_determine_native_workload_is_itself():
    workload = _deployment("web", 1, 1)
    assert rh.determine_workload_type(workload, _no_children) == [workload]


def test_determine_oam_workload_uses_children():
    workload = {"apiVersion": rh.OAM_API_VERSION, "kind": "ContainerizedWorkload",
                "metadata": {"name": "app", "namespace": NS}}
    child = _deployment("app", 1, 1)
    assert rh.determine_workload_type(workload, lambda w: [child]) == [child]


def test_determine_without_api_version_fails():
    with pytest.raises(ValueError, match="failed to get the workload APIVersion"):
        rh.determine_workload_type({"kind": "Deployment"}, _no_children)


def test_determine_unsupported_api_version_fails():
    with pytest.raises(ValueError, match="doesn't support"):
        rh.determine_workload_type({"apiVersion": "apps.kruise.io/v1"}, _no_children)


def test_underlying_deployments_filters_and_copies():
    deployment = _deployment("app", 2, 2)
    service = {"apiVersion": "v1", "kind": "Service", "metadata": {"name": "app"}}
    stateful = {"apiVersion": "apps/v1", "kind": "StatefulSet", "metadata": {"name": "db"}}
    workload = {"apiVersion": rh.OAM_API_VERSION, "kind": "ContainerizedWorkload"}
    result = rh.get_underlying_deployments(workload, lambda w: [deployment, service, stateful])
    assert result == [deployment]
    result[0]["spec"]["replicas"] = 9
    assert deployment["spec"]["replicas"] == 2


def test_newly_created():
    assert rh.is_newly_created(_trait()) is True
    assert rh.is_newly_created(_trait(current=TypedReference("apps/v1", "Deployment", "web"))) is False


def test_under_rollout():
    same = _trait(current=TypedReference("apps/v1", "Deployment", "web"))
    other = _trait(current=TypedReference("apps/v1", "Deployment", "old"))
    assert rh.is_under_rollout(same) is False
    assert rh.is_under_rollout(other) is True


def test_scale_up_ready():
    assert rh.is_scale_up_ready([], 3) is False
    assert rh.is_scale_up_ready([_deployment("a", 3, 3), _deployment("b", 3, 3)], 3) is True
    assert rh.is_scale_up_ready([_deployment("a", 3, 3), _deployment("b", 3, 2)], 3) is False


def test_scale_down_ready():
    assert rh.is_scale_down_ready([]) is False
    assert rh.is_scale_down_ready([_deployment("a", 0, 0)]) is True
    assert rh.is_scale_down_ready([_deployment("a", 0, 1)]) is False
    assert rh.is_scale_down_ready([_deployment("a", 1, 0)]) is False


def test_scale_up_reaches_target():
    client = Client()
    deployments = _loaded(client, _deployment("web", 4, 4))
    rh.scale_up_gradually(client, deployments, 5, 2)
    assert _stored(client, "web")["spec"]["replicas"] == 5
    assert deployments[0]["spec"]["replicas"] == 5


def test_scale_up_by_batch():
    client = Client()
    deployments = _loaded(client, _deployment("web", 2, 2))
    rh.scale_up_gradually(client, deployments, 5, 2)
    assert _stored(client, "web")["spec"]["replicas"] == 4


def test_scale_up_skips_unsettled_and_finished():
    client = Client()
    deployments = _loaded(client, _deployment("busy", 2, 1), _deployment("done", 5, 5))
    before = [_stored(client, n)["metadata"]["resourceVersion"] for n in ("busy", "done")]
    rh.scale_up_gradually(client, deployments, 5, 2)
    after = [_stored(client, n)["metadata"]["resourceVersion"] for n in ("busy", "done")]
    assert after == before
    assert _stored(client, "busy")["spec"]["replicas"] == 2


def test_scale_up_twice_keeps_versions_in_step():
    client = Client()
    deployments = _loaded(client, _deployment("web", 1, 1))
    rh.scale_up_gradually(client, deployments, 10, 1)
    deployments[0]["status"]["readyReplicas"] = deployments[0]["spec"]["replicas"]
    rh.scale_up_gradually(client, deployments, 10, 9)
    assert _stored(client, "web")["spec"]["replicas"] == 10


def test_scale_down_by_batch_and_to_target():
    client = Client()
    deployments = _loaded(client, _deployment("a", 3, 3), _deployment("b", 1, 1))
    rh.scale_down_gradually(client, deployments, 0, 1)
    assert _stored(client, "a")["spec"]["replicas"] == 2
    assert _stored(client, "b")["spec"]["replicas"] == 0


def test_scale_down_skips_zero_and_unsettled():
    client = Client()
    deployments = _loaded(client, _deployment("zero", 0, 0), _deployment("busy", 3, 2))
    rh.scale_down_gradually(client, deployments, 0, 1)
    assert _stored(client, "zero")["spec"]["replicas"] == 0
    assert _stored(client, "busy")["spec"]["replicas"] == 3


def test_scale_up_missing_deployment_raises():
    with pytest.raises(NotFoundError):
        rh.scale_up_gradually(Client(), [_deployment("ghost", 1, 1)], 3, 1)


def test_fetch_workload():
    client = Client([_deployment("web", 1, 1)])
    workload = rh.fetch_workload(client, _trait())
    assert workload["metadata"]["name"] == "web"
    assert workload["metadata"]["uid"]
    with pytest.raises(NotFoundError):
        rh.fetch_workload(client, _trait("missing"))


def test_get_controller_revision():
    revision = {
        "apiVersion": "apps/v1",
        "kind": "ControllerRevision",
        "metadata": {"name": "web-v2", "namespace": NS},
        "revision": 2,
        "data": {"spec": {"replicas": 3}},
    }
    client = Client([revision])
    result = rh.get_controller_revision(client, _trait("web-v2"))
    assert result["revision"] == 2
    assert result["data"] == {"spec": {"replicas": 3}}
    with pytest.raises(NotFoundError):
        rh.get_controller_revision(client, _trait("web-v3"))