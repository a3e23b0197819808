# policies/egress.py
from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional

from addresses import to_cidr
from policies.meta import object_meta

IP_POLICY_API_VERSION = "networking.k8s.io/v1"
IP_POLICY_KIND = "NetworkPolicy"

FQDN_POLICY_GROUP = "networking.gke.io"
FQDN_POLICY_VERSION = "v1alpha3"
FQDN_POLICY_PLURAL = "fqdnnetworkpolicies"
FQDN_POLICY_KIND = "FQDNNetworkPolicy"


def ip_policy_name(pod_name: str) -> str:
    return pod_name


def fqdn_policy_name(pod_name: str) -> str:
    return f"{pod_name}-fqdn"


def _ports(port: int) -> list:
    return [{"protocol": "TCP", "port": int(port)}]


def _pod_selector(selector: Mapping[str, str]) -> Dict[str, Any]:
    return {"matchLabels": {k: selector[k] for k in sorted(selector)}}


def _sorted_cidrs(hosts: Iterable[str]) -> list:
    return sorted({to_cidr(h) for h in hosts})


def build_ip_policy(
    pod_name: str,
    namespace: str,
    selector: Mapping[str, str],
    ip_map: Mapping[int, Iterable[str]],
) -> Optional[Dict[str, Any]]:
    """NetworkPolicy allowing egress to the resolved IPs, one rule per port.

    Returns None when there is nothing to allow (no object is created).
    """
    if not ip_map:
        return None

    egress = []
    for port in sorted(ip_map):
        egress.append(
            {
                "to": [{"ipBlock": {"cidr": cidr}} for cidr in _sorted_cidrs(ip_map[port])],
                "ports": _ports(port),
            }
        )

    return {
        "apiVersion": IP_POLICY_API_VERSION,
        "kind": IP_POLICY_KIND,
        "metadata": object_meta(ip_policy_name(pod_name), namespace, pod_name),
        "spec": {
            "podSelector": _pod_selector(selector),
            "egress": egress,
            "policyTypes": ["Egress"],
        },
    }


def build_fqdn_policy(
    pod_name: str,
    namespace: str,
    selector: Mapping[str, str],
    fqdn_map: Mapping[int, Iterable[str]],
) -> Optional[Dict[str, Any]]:
    """FQDNNetworkPolicy for hostnames; the FQDN controller resolves them later."""
    if not fqdn_map:
        return None

    egress = []
    for port in sorted(fqdn_map):
        egress.append(
            {
                "to": [{"fqdns": sorted(set(fqdn_map[port]))}],
                "ports": _ports(port),
            }
        )

    return {
        "apiVersion": f"{FQDN_POLICY_GROUP}/{FQDN_POLICY_VERSION}",
        "kind": FQDN_POLICY_KIND,
        "metadata": object_meta(fqdn_policy_name(pod_name), namespace, pod_name),
        "spec": {
            "podSelector": _pod_selector(selector),
            "egress": egress,
            "policyTypes": ["Egress"],
        },
    }
