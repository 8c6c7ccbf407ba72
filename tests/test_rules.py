from datetime import datetime, timezone

from kubesentry.matching import GroupVersionResource
from kubesentry.rules import (
    AdmissionAlert,
    AdmissionAttributes,
    BaseRule,
    BaseRuntimeAlert,
    RuleDescriptor,
    RuleFailure,
    RulePriority,
    RuntimeAlertK8sDetails,
    UserInfo,
    get_k8s_wlid,
    parse_wlid,
)


def test_has_tags_matches_any_tag():
    descriptor = RuleDescriptor(id="R2000", name="Exec to pod", tags=["exec"])
    assert descriptor.has_tags(["other", "exec"]) is True
    assert descriptor.has_tags(["portforward"]) is False
    assert descriptor.has_tags([]) is False


def test_descriptor_priority_default():
    descriptor = RuleDescriptor(id="x", name="y")
    assert descriptor.priority == RulePriority.NONE


def test_parameters_merge_and_copy():
    rule = BaseRule()
    rule.set_parameters({"a": 1})
    rule.set_parameters({"b": 2, "a": 3})
    params = rule.get_parameters()
    assert params == {"a": 3, "b": 2}
    params["c"] = 4
    assert rule.get_parameters() == {"a": 3, "b": 2}


def test_base_rule_reports_no_failure():
    assert BaseRule().process_event(AdmissionAttributes(), None) is None


def test_wlid_format():
    assert (
        get_k8s_wlid("c", "ns", "Deployment", "web")
        == "wlid://cluster-c/namespace-ns/deployment-web"
    )


def test_wlid_round_trip():
    wlid = get_k8s_wlid("cluster1", "default", "replicaset", "my-app-5d9f")
    assert parse_wlid(wlid) == {
        "cluster": "cluster1",
        "namespace": "default",
        "kind": "replicaset",
        "name": "my-app-5d9f",
    }


def test_parse_malformed_wlid():
    assert parse_wlid("garbage") == {"cluster": "", "namespace": "", "kind": "", "name": ""}


def test_set_workload_details():
    failure = RuleFailure()
    failure.set_workload_details(get_k8s_wlid("prod", "team", "statefulset", "db"))
    details = failure.runtime_alert_k8s_details
    assert details.cluster_name == "prod"
    assert details.workload_namespace == "team"
    assert details.workload_kind == "statefulset"
    assert details.workload_name == "db"


def test_set_workload_details_empty_keeps_values():
    failure = RuleFailure(runtime_alert_k8s_details=RuntimeAlertK8sDetails(cluster_name="keep"))
    failure.set_workload_details("")
    assert failure.runtime_alert_k8s_details.cluster_name == "keep"


def test_group_version_kind():
    attrs = AdmissionAttributes(kind="Deployment", kind_group="apps", kind_version="v1")
    assert attrs.group_version_kind == {"group": "apps", "version": "v1", "kind": "Deployment"}


def test_admission_alert_to_dict():
    alert = AdmissionAlert(
        object_name="pod-1",
        resource=GroupVersionResource("", "v1", "pods"),
        user_info=UserInfo(name="test-user", groups=["test-group"]),
        dry_run=True,
    )
    data = alert.to_dict()
    assert data["objectName"] == "pod-1"
    assert data["resource"] == {"group": "", "version": "v1", "resource": "pods"}
    assert data["userInfo"]["username"] == "test-user"
    assert data["userInfo"]["groups"] == ["test-group"]
    assert data["dryRun"] is True


def test_timestamp_serialisation():
    assert BaseRuntimeAlert().to_dict()["timestamp"] == "0001-01-01T00:00:00Z"
    ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert BaseRuntimeAlert(timestamp=ts).to_dict()["timestamp"] == "2024-05-01T12:00:00Z"