from kubeverdict.core.errors import ErrorKind
from kubeverdict.core.models import NamespaceSpec
from kubeverdict.core.preflight import (detect_cni, run_preflight, sweep_stale_namespaces,
                                        verify_network_policy_support)


def test_detect_cni_from_kube_system_labels(cluster):
    assert detect_cni(cluster) == "unknown"
    cluster.add_system_pod("kube-system", "kube-proxy-abc", {"k8s-app": "kube-proxy"})
    assert detect_cni(cluster) == "kubenet"
    cluster.add_system_pod("kube-system", "calico-node-xyz", {"k8s-app": "calico-node"})
    assert detect_cni(cluster) == "calico"


def test_policy_support_check_cleans_up_without_waiting(cluster):
    assert verify_network_policy_support(cluster)
    assert cluster.list_namespaces() == []
    assert cluster.deletion_requests[0][1] is False

    cluster.reject_network_policies = True
    assert not verify_network_policy_support(cluster)


def test_sweep_deletes_only_runner_namespaces(cluster):
    cluster.create_namespace(NamespaceSpec("np-test-old-1", {"test-runner": "kubeverdict"}))
    cluster.create_namespace(NamespaceSpec("np-test-old-2", {"test-runner": "kubeverdict"}))
    cluster.create_namespace(NamespaceSpec("production", {"team": "payments"}))

    assert sweep_stale_namespaces(cluster) == ["np-test-old-1", "np-test-old-2"]
    assert cluster.list_namespaces() == ["production"]


def test_preflight_report(cluster):
    cluster.add_system_pod("kube-system", "cilium-1", {"k8s-app": "cilium"})
    report = run_preflight(cluster)
    assert report.ok
    assert report.cluster_reachable and report.network_policy_api
    assert report.environment()["cni"] == "cilium"
    assert report.warnings == []


def test_unreachable_cluster(cluster):
    cluster.fail("cluster_info", ErrorKind.TIMEOUT)
    report = run_preflight(cluster)
    assert not report.ok
    assert "cluster not reachable" in report.problems[0]
