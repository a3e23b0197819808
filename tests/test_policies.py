from __future__ import annotations

import json

from allowlist import resolve
from policies.egress import build_fqdn_policy, build_ip_policy
from policies.meta import POD_LABEL, sanitize_label_value

SELECTOR = {"task_id": "t", "run_id": "r", "dag_id": "d"}


def test_ip_policy_one_rule_per_port_with_cidrs() -> None:
    pol = build_ip_policy("pod-a", "team-a", SELECTOR, {22: {"10.0.0.5"}, 5432: {"10.1.0.0/16", "10.1.2.3"}})

    assert pol["kind"] == "NetworkPolicy"
    assert pol["metadata"]["name"] == "pod-a"
    assert pol["metadata"]["namespace"] == "team-a"
    assert pol["spec"]["policyTypes"] == ["Egress"]
    assert pol["spec"]["podSelector"] == {"matchLabels": {"dag_id": "d", "run_id": "r", "task_id": "t"}}
    assert pol["spec"]["egress"] == [
        {"to": [{"ipBlock": {"cidr": "10.0.0.5/32"}}], "ports": [{"protocol": "TCP", "port": 22}]},
        {
            "to": [{"ipBlock": {"cidr": "10.1.0.0/16"}}, {"ipBlock": {"cidr": "10.1.2.3/32"}}],
            "ports": [{"protocol": "TCP", "port": 5432}],
        },
    ]


def test_fqdn_policy_one_rule_per_port() -> None:
    pol = build_fqdn_policy("pod-a", "team-a", SELECTOR, {443: {"pypi.org", "files.pythonhosted.org"}})

    assert pol["apiVersion"] == "networking.gke.io/v1alpha3"
    assert pol["kind"] == "FQDNNetworkPolicy"
    assert pol["metadata"]["name"] == "pod-a-fqdn"
    assert pol["spec"]["egress"] == [
        {"to": [{"fqdns": ["files.pythonhosted.org", "pypi.org"]}], "ports": [{"protocol": "TCP", "port": 443}]}
    ]


def test_empty_maps_build_nothing() -> None:
    assert build_ip_policy("p", "ns", SELECTOR, {}) is None
    assert build_fqdn_policy("p", "ns", SELECTOR, {}) is None


def test_synthesis_is_byte_identical_regardless_of_insertion_order() -> None:
    a = build_fqdn_policy("p", "ns", SELECTOR, {8080: {"b.org", "a.org"}, 443: {"c.org"}})
    b = build_fqdn_policy("p", "ns", dict(reversed(list(SELECTOR.items()))), {443: {"c.org"}, 8080: {"a.org", "b.org"}})
    assert json.dumps(a) == json.dumps(b)

    res = resolve("10.0.0.9:22,10.0.0.1:22,10.0.0.5:80")
    assert json.dumps(build_ip_policy("p", "ns", SELECTOR, res.ip)) == json.dumps(
        build_ip_policy("p", "ns", SELECTOR, res.ip)
    )


def test_policies_carry_management_labels() -> None:
    pol = build_ip_policy("Pod_Name", "ns", SELECTOR, {22: {"1.1.1.1"}})
    assert pol["metadata"]["labels"][POD_LABEL] == "Pod_Name"


def test_label_values_are_truncated_with_hash() -> None:
    v = sanitize_label_value("x" * 100)
    assert len(v) == 63
    assert v.startswith("x" * 56 + "-")
    assert sanitize_label_value("--") == "value"
