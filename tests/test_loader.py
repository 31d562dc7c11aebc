"""
SCENARIO LOADER TESTS
---------------------
Malformed scenarios must be rejected before anything reaches a cluster.
"""

import pytest

from kubeverdict.core.errors import ScenarioError
from kubeverdict.core.models import Expectation, PodRef, Protocol
from kubeverdict.scenarios.loader import (ScenarioLoader, extract_recipe_manifests, filter_scenarios,
                                          load_scenarios)

from conftest import DENY_WEB, make_scenario, two_pod_scenario

RECIPE = """# Deny all ingress

Some prose.

```yaml
apiVersion: networking.k8s.io/v1
kind: NetworkPolicy
metadata:
  name: deny-all
spec:
  podSelector: {}
  policyTypes:
    - Ingress
```

And a second one:

```yaml
apiVersion: networking.k8s.io/v1
kind: NetworkPolicy
metadata:
  name: allow-web
spec:
  podSelector:
    matchLabels:
      app: web
  ingress:
    - from:
        - podSelector: {}
```
"""


def test_parses_probes_and_resolves_destinations():
    scenario = make_scenario(two_pod_scenario(policies=[DENY_WEB], probes=[
        {"source": "ns1/client", "destination": "ns1/web", "protocol": "TCP", "port": 80,
         "expected": "deny", "timeoutSeconds": 3},
        {"source": "ns1/client", "destination": "example.com", "port": 443},
    ]))
    internal, external = scenario.probes
    assert internal.destination_ref == PodRef("ns1", "web")
    assert internal.protocol == Protocol.TCP
    assert internal.expected == Expectation.DENY
    assert internal.timeout_seconds == 3
    assert external.is_external
    assert external.protocol == Protocol.HTTP and external.timeout_seconds == 2
    assert scenario.policies[0].ingress == []
    assert scenario.policies[0].egress is None


@pytest.mark.parametrize("mutate,message", [
    (lambda d: d["pods"][0].update(namespace="nope"), "undeclared namespace"),
    (lambda d: d["probes"][0].update(source="ns1/ghost"), "not a declared pod"),
    (lambda d: d["probes"][0].update(destination="ns1/ghost"), "not a declared pod"),
    (lambda d: d["probes"][0].update(expected="maybe"), "not one of"),
    (lambda d: d["probes"][0].update(protocol="udp"), "not one of"),
    (lambda d: d["pods"].append(dict(d["pods"][0])), "declared twice"),
    (lambda d: d.pop("id"), "no 'id'"),
])
def test_invalid_scenarios_are_rejected(mutate, message):
    data = two_pod_scenario()
    mutate(data)
    with pytest.raises(ScenarioError, match=message):
        make_scenario(data)


def test_recipe_extraction():
    docs = extract_recipe_manifests(RECIPE)
    assert [d["metadata"]["name"] for d in docs] == ["deny-all", "allow-web"]


def test_recipe_and_manifest_policies(tmp_path):
    (tmp_path / "recipes").mkdir()
    (tmp_path / "recipes" / "01-deny.md").write_text(RECIPE, encoding="utf-8")
    data = two_pod_scenario(policies=[
        {"recipe": "recipes/01-deny.md", "policy": "allow-web", "namespace": "ns1"},
        {"manifest": {"kind": "NetworkPolicy", "metadata": {"name": "raw", "namespace": "ns1"},
                      "spec": {"podSelector": {}, "policyTypes": ["Egress"], "egress": []}}},
    ])
    scenario = ScenarioLoader().parse(data, base_dir=tmp_path)
    names = [(p.name, p.namespace) for p in scenario.policies]
    assert names == [("allow-web", "ns1"), ("raw", "ns1")]
    assert scenario.policies[1].egress == []

    data["policies"] = [{"recipe": "recipes/01-deny.md", "policy": "missing", "namespace": "ns1"}]
    with pytest.raises(ScenarioError, match="contains no policy 'missing'"):
        ScenarioLoader().parse(data, base_dir=tmp_path)


def test_load_directory_multi_document_and_duplicate_ids(tmp_path):
    (tmp_path / "a.yaml").write_text(
        "id: one\nnamespaces: [ns1]\n---\nid: two\ntags: [egress]\nnamespaces: [ns1]\n", encoding="utf-8")
    (tmp_path / "nested").mkdir()
    (tmp_path / "nested" / "b.yml").write_text("id: three\n", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    scenarios = load_scenarios([tmp_path])
    assert [s.id for s in scenarios] == ["one", "two", "three"]

    (tmp_path / "c.yaml").write_text("id: one\n", encoding="utf-8")
    with pytest.raises(ScenarioError, match="duplicate scenario id 'one'"):
        load_scenarios([tmp_path])


def test_invalid_yaml_is_a_scenario_error(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("id: [unclosed\n", encoding="utf-8")
    with pytest.raises(ScenarioError, match="invalid YAML"):
        load_scenarios([path])


def test_filter_by_id_or_tag():
    scenarios = [make_scenario({"id": "01-deny", "tags": ["ingress"]}),
                 make_scenario({"id": "02-egress", "tags": ["egress"]}),
                 make_scenario({"id": "03-mixed"})]
    assert [s.id for s in filter_scenarios(scenarios, None)] == ["01-deny", "02-egress", "03-mixed"]
    assert [s.id for s in filter_scenarios(scenarios, ["01-*,03-*"])] == ["01-deny", "03-mixed"]
    assert [s.id for s in filter_scenarios(scenarios, ["egress"])] == ["02-egress"]
    assert filter_scenarios(scenarios, ["nothing"]) == []


def test_image_is_left_to_the_runner_when_omitted():
    data = two_pod_scenario()
    data["pods"][1]["image"] = "nginx:1.25"
    client, web = make_scenario(data).pods
    assert client.image == ""
    assert web.image == "nginx:1.25"
