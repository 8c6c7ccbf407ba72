import pytest

from kubesentry.rules import AdmissionAttributes
from kubesentry.workloads import (
    WorkloadLookupError,
    extract_pod_owner,
    get_container_name_from_exec_event,
    get_controller_details,
    get_pod_details,
)


class FakeClient:
    def __init__(self, pods=None, replica_sets=None, jobs=None):
        self.pods = pods or {}
        self.replica_sets = replica_sets or {}
        self.jobs = jobs or {}

    def get_pod(self, namespace, name):
        return self.pods[(namespace, name)]

    def get_replica_set(self, namespace, name):
        return self.replica_sets[(namespace, name)]

    def get_job(self, namespace, name):
        return self.jobs[(namespace, name)]


def make_obj(namespace, name, owners=(), node=None):
    obj = {
        "metadata": {
            "name": name,
            "namespace": namespace,
            "ownerReferences": [{"kind": k, "name": n} for k, n in owners],
        }
    }
    if node is not None:
        obj["spec"] = {"nodeName": node}
    return obj


def test_replica_set_owned_by_deployment():
    client = FakeClient(
        replica_sets={("ns", "web-rs"): make_obj("ns", "web-rs", [("Deployment", "web")])}
    )
    pod = make_obj("ns", "web-rs-abc", [("ReplicaSet", "web-rs")])
    assert extract_pod_owner(pod, client) == ("Deployment", "web", "ns")


def test_replica_set_lookup_failure_falls_back():
    pod = make_obj("ns", "p", [("ReplicaSet", "rs1")])
    assert extract_pod_owner(pod, FakeClient()) == ("ReplicaSet", "rs1", "ns")


def test_job_owned_by_cronjob():
    client = FakeClient(jobs={("ns", "job1"): make_obj("ns", "job1", [("CronJob", "nightly")])})
    pod = make_obj("ns", "p", [("Job", "job1")])
    assert extract_pod_owner(pod, client) == ("CronJob", "nightly", "ns")


def test_job_without_owner():
    client = FakeClient(jobs={("ns", "job1"): make_obj("ns", "job1")})
    pod = make_obj("ns", "p", [("Job", "job1")])
    assert extract_pod_owner(pod, client) == ("Job", "job1", "ns")


@pytest.mark.parametrize("kind", ["StatefulSet", "DaemonSet"])
def test_direct_owners(kind):
    pod = make_obj("ns", "p", [(kind, "owner")])
    assert extract_pod_owner(pod, FakeClient()) == (kind, "owner", "ns")


def test_no_owner():
    assert extract_pod_owner(make_obj("ns", "p"), FakeClient()) == ("", "", "")


def test_get_pod_details_error():
    with pytest.raises(WorkloadLookupError):
        get_pod_details(FakeClient(), "missing", "ns")


def test_controller_details():
    pod = make_obj("ns", "p", [("StatefulSet", "db")], node="node-a")
    client = FakeClient(pods={("ns", "p"): pod})
    event = AdmissionAttributes(name="p", namespace="ns")
    assert get_controller_details(event, client) == ("StatefulSet", "db", "ns", "node-a")


def test_controller_details_requires_name_and_namespace():
    with pytest.raises(WorkloadLookupError):
        get_controller_details(AdmissionAttributes(name="p"), FakeClient())


def test_controller_details_missing_pod():
    with pytest.raises(WorkloadLookupError):
        get_controller_details(AdmissionAttributes(name="p", namespace="ns"), FakeClient())


def test_container_name_from_exec():
    event = AdmissionAttributes(
        subresource="exec", object={"kind": "PodExecOptions", "container": "test-container"}
    )
    assert get_container_name_from_exec_event(event) == "test-container"


def test_container_name_not_exec():
    with pytest.raises(WorkloadLookupError):
        get_container_name_from_exec_event(AdmissionAttributes(subresource="attach", object={}))


def test_container_name_missing_object():
    with pytest.raises(WorkloadLookupError):
        get_container_name_from_exec_event(AdmissionAttributes(subresource="exec"))


def test_container_name_wrong_type():
    event = AdmissionAttributes(subresource="exec", object={"container": 5})
    with pytest.raises(WorkloadLookupError):
        get_container_name_from_exec_event(event)