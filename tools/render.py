#!/usr/bin/env python3
"""tools/render.py

Render the egress policies the webhook would create for a pod, as
multi-document YAML, without touching a cluster.

Usage examples:
  ALLOWLIST="pypi.org,10.0.0.5:22" POD_LABELS="dag_id=etl,run_id=r1,task_id=t1" \
    python3 tools/render.py

  # With the on-prem alias table, piped into a server-side dry run:
  HOST_ALIAS_PATH=/var/run/onprem-firewall.yaml ALLOWLIST="db-scan.example.org:1521" \
    POD_LABELS="component=singleuser-server,hub.jupyter.org/username=alice" \
    python3 tools/render.py | kubectl apply --dry-run=server -f -
"""

from __future__ import annotations

import os
import sys
from typing import Dict, List

import yaml

# Allow executing from tools/ without installing as a package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from allowlist import resolve  # noqa: E402
from hostmap import AliasTable, load  # noqa: E402
from policies.egress import build_fqdn_policy, build_ip_policy  # noqa: E402
from workloads import classify  # noqa: E402


def parse_labels(raw: str) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if not item:
            continue
        k, _, v = item.partition("=")
        labels[k.strip()] = v.strip()
    return labels


def render_documents(
    pod_name: str,
    namespace: str,
    labels: Dict[str, str],
    allowlist: str,
    aliases: AliasTable,
) -> List[dict]:
    classification = classify(labels)
    if not classification.relevant:
        return []
    resolved = resolve(allowlist, aliases)
    docs = [
        build_ip_policy(pod_name, namespace, classification.selector, resolved.ip),
        build_fqdn_policy(pod_name, namespace, classification.selector, resolved.fqdn),
    ]
    return [d for d in docs if d is not None]


def main() -> int:
    pod_name = os.environ.get("POD_NAME", "example-pod")
    namespace = os.environ.get("NAMESPACE", "default")
    labels = parse_labels(os.environ.get("POD_LABELS", ""))
    allowlist = os.environ.get("ALLOWLIST", "")
    aliases = load(os.environ.get("HOST_ALIAS_PATH"))

    docs = render_documents(pod_name, namespace, labels, allowlist, aliases)
    if not docs:
        print("[render] nothing to render (pod not relevant or empty allowlist)", file=sys.stderr)
        return 1

    try:
        for doc in docs:
            sys.stdout.write("---\n")
            yaml.safe_dump(doc, sys.stdout, sort_keys=False)
    except BrokenPipeError:
        # Common when piping to `head`; exit cleanly
        return 0
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
