# policies/meta.py
from __future__ import annotations

import hashlib
import re
from typing import Dict

MANAGED_BY_LABEL = "egress.allowlist.io/managed-by"
MANAGED_BY_VALUE = "allowlist-webhook"
POD_LABEL = "egress.allowlist.io/pod"


def sanitize_label_value(val: str) -> str:
    # Labels: alphanumerics, '-', '_', '.', start/end alphanumeric, max 63
    v = str(val or "")
    v = re.sub(r"[^A-Za-z0-9-_.]", "-", v)
    v = re.sub(r"[-_.]{2,}", "-", v)
    v = re.sub(r"^[^A-Za-z0-9]+", "", v)
    v = re.sub(r"[^A-Za-z0-9]+$", "", v)
    if not v:
        return "value"
    if len(v) > 63:
        h = hashlib.sha1(str(val).encode()).hexdigest()[:6]
        # leave room for '-' and hash
        v = v[:(63 - 7)] + "-" + h
    return v


def managed_labels(pod_name: str) -> Dict[str, str]:
    return {
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        POD_LABEL: sanitize_label_value(pod_name),
    }


def object_meta(name: str, namespace: str, pod_name: str) -> Dict:
    return {
        "name": name,
        "namespace": namespace,
        "labels": managed_labels(pod_name),
    }
