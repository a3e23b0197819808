# admission.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional

ALLOWLIST_ANNOTATION = "allowlist"

TERMINAL_PHASES = {"Succeeded", "Failed"}


class Operation(str, Enum):
    CREATE = "CREATE"
    DELETE = "DELETE"
    OTHER = "OTHER"


class PolicyState(str, Enum):
    NO_POLICY = "NoPolicy"
    PENDING = "Pending"
    ENFORCED = "Enforced"
    REMOVED = "Removed"


@dataclass(frozen=True)
class PodSnapshot:
    name: str
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    phase: str = "Pending"
    creation_timestamp: Optional[str] = None
    service_account: str = ""

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def allowlist(self) -> str:
        return (self.annotations.get(ALLOWLIST_ANNOTATION) or "").strip()

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @classmethod
    def from_manifest(cls, pod: Optional[dict], namespace: str = "") -> "PodSnapshot":
        """Build a snapshot from a decoded Pod manifest."""
        meta = (pod or {}).get("metadata", {}) or {}
        spec = (pod or {}).get("spec", {}) or {}
        status = (pod or {}).get("status", {}) or {}
        return cls(
            name=meta.get("name") or "",
            namespace=meta.get("namespace") or namespace,
            labels=dict(meta.get("labels", {}) or {}),
            annotations=dict(meta.get("annotations", {}) or {}),
            # pods on CREATE carry no status yet
            phase=status.get("phase") or "Pending",
            creation_timestamp=meta.get("creationTimestamp"),
            service_account=spec.get("serviceAccountName", "") or "",
        )


@dataclass(frozen=True)
class AdmissionEvent:
    operation: Operation
    pod: PodSnapshot


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None
    state: PolicyState = PolicyState.NO_POLICY


def event_from_review(review: dict) -> AdmissionEvent:
    """Decode an AdmissionReview request into an AdmissionEvent.

    CREATE reads the new object, DELETE the old one. A pod that only carries
    metadata.generateName keeps an empty name. Raises ValueError when the
    review has no request or no pod.
    """
    req = (review or {}).get("request")
    if not isinstance(req, dict):
        raise ValueError("admission review has no request")

    op_raw = str(req.get("operation", "")).upper()
    if op_raw == Operation.CREATE.value:
        op, obj = Operation.CREATE, req.get("object")
    elif op_raw == Operation.DELETE.value:
        op, obj = Operation.DELETE, req.get("oldObject")
    else:
        op, obj = Operation.OTHER, req.get("object") or req.get("oldObject")

    if not isinstance(obj, dict):
        raise ValueError(f"admission request {op_raw} carries no pod object")

    pod = PodSnapshot.from_manifest(obj, namespace=req.get("namespace", ""))
    if not pod.name and req.get("name"):
        pod = replace(pod, name=req["name"])
    return AdmissionEvent(operation=op, pod=pod)


def review_response(review: dict, decision: Decision) -> dict:
    req = (review or {}).get("request", {}) or {}
    response = {"uid": req.get("uid", ""), "allowed": decision.allowed}
    if decision.reason:
        response["status"] = {
            "status": "Success" if decision.allowed else "Failure",
            "message": decision.reason,
        }
    return {
        "apiVersion": (review or {}).get("apiVersion", "admission.k8s.io/v1"),
        "kind": "AdmissionReview",
        "response": response,
    }
