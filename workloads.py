# workloads.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

NOTEBOOK = "notebook"
BATCH = "batch"

NOTEBOOK_LABEL = ("component", "singleuser-server")
NOTEBOOK_USER_LABEL = "hub.jupyter.org/username"
BATCH_JOB_LABEL = "dag_id"
BATCH_SELECTOR_KEYS = ("run_id", "dag_id", "task_id")


@dataclass(frozen=True)
class Classification:
    relevant: bool
    kind: Optional[str] = None
    selector: Dict[str, str] = field(default_factory=dict)


def _is_notebook(labels: dict) -> bool:
    key, value = NOTEBOOK_LABEL
    return labels.get(key) == value


def classify(labels: Optional[dict]) -> Classification:
    """Decide whether a pod needs egress control and which pods its policy selects.

    Notebook pods are scoped to one user's session; batch pods to every retry
    of the same task in the same run.
    """
    labels = labels or {}

    if _is_notebook(labels):
        key, value = NOTEBOOK_LABEL
        return Classification(
            relevant=True,
            kind=NOTEBOOK,
            selector={key: value, NOTEBOOK_USER_LABEL: labels.get(NOTEBOOK_USER_LABEL, "")},
        )

    if BATCH_JOB_LABEL in labels:
        return Classification(
            relevant=True,
            kind=BATCH,
            selector={k: labels.get(k, "") for k in BATCH_SELECTOR_KEYS},
        )

    return Classification(relevant=False)


def service_and_team(labels: Optional[dict], service_account: str = "") -> Tuple[str, str]:
    """(service, team) attribution used by allowlist statistics."""
    labels = labels or {}
    if labels.get("app") == "jupyterhub" or _is_notebook(labels):
        return "jupyterhub", labels.get("team", "")
    return "airflow", service_account or ""
