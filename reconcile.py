# reconcile.py
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

from admission import AdmissionEvent, Decision, Operation, PodSnapshot, PolicyState
from allowlist import ResolvedAllow, resolve
from errors import ClusterError, Conflict, EgressError, NotFound, ParseFailure, ReconcileCancelled
from hostmap import AliasTable
from policies.egress import build_fqdn_policy, build_ip_policy, fqdn_policy_name, ip_policy_name
from workloads import classify

logger = logging.getLogger(__name__)

DEFAULT_FQDN_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 1.0
DEFAULT_CONFIRM_TIMEOUT_SECONDS = 10.0
# cleanup after a denial runs past the request deadline
ROLLBACK_TIMEOUT_SECONDS = 5.0


def normalize(obj: dict) -> dict:
    """Strip server-populated fields so live and desired objects compare equal."""
    obj = dict(obj or {})
    obj.pop("status", None)
    meta = dict(obj.get("metadata", {}) or {})
    for k in ["creationTimestamp", "resourceVersion", "uid", "generation", "managedFields",
              "selfLink", "annotations", "finalizers", "ownerReferences"]:
        meta.pop(k, None)
    obj["metadata"] = meta
    return obj


def _unchanged(existing: dict, desired: dict) -> bool:
    live = normalize(existing)
    return (
        live.get("spec") == desired.get("spec")
        and (live["metadata"].get("labels") or {}) == desired["metadata"].get("labels", {})
    )


def _with_resource_version(body: dict, existing: dict) -> dict:
    rv = ((existing or {}).get("metadata", {}) or {}).get("resourceVersion")
    if not rv:
        return body
    out = dict(body)
    out["metadata"] = dict(body["metadata"], resourceVersion=rv)
    return out


# kind, name, delete callable
_Undo = Tuple[str, str, Callable[..., None]]


class _Budget:
    """Deadline and cancellation bookkeeping for one admission request."""

    def __init__(
        self,
        pod: PodSnapshot,
        deadline: Optional[float],
        cancel: Optional[threading.Event],
        clock: Callable[[], float],
        sleep: Callable[[float], None],
    ):
        self.pod = pod
        self.deadline = deadline
        self.cancel = cancel
        self._clock = clock
        self._sleep = sleep

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - self._clock()

    def check(self, step: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise ReconcileCancelled(f"admission for {self.pod.identity} cancelled before {step}")
        left = self.remaining()
        if left is not None and left <= 0:
            raise ReconcileCancelled(f"admission deadline for {self.pod.identity} exceeded before {step}")

    def bound(self, seconds: float) -> float:
        left = self.remaining()
        if left is None:
            return seconds
        return max(0.0, min(seconds, left))

    def sleep(self, seconds: float, step: str) -> None:
        self._sleep(self.bound(seconds))
        self.check(step)

    def call_timeout(self) -> Optional[float]:
        """Time a single cluster call may take, None when there is no deadline."""
        left = self.remaining()
        if left is None:
            return None
        return max(left, 0.001)


class Reconciler:
    """Turns admission events into NetworkPolicy / FQDNNetworkPolicy writes.

    Holds no per-pod state between requests; every write re-reads the live
    object first. Policies are addressed by pod name only.
    """

    def __init__(
        self,
        store,
        aliases: Optional[AliasTable] = None,
        stats=None,
        *,
        fqdn_attempts: int = DEFAULT_FQDN_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        confirm_timeout: float = DEFAULT_CONFIRM_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if fqdn_attempts < 1:
            raise ValueError("fqdn_attempts must be >= 1")
        self.store = store
        self.aliases = aliases if aliases is not None else AliasTable()
        self.stats = stats
        self.fqdn_attempts = fqdn_attempts
        self.backoff_seconds = backoff_seconds
        self.confirm_timeout = confirm_timeout
        self._sleep = sleep
        self._clock = clock

    def handle(
        self,
        event: AdmissionEvent,
        deadline: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Decision:
        """Apply one admission event and return the admission decision.

        ``deadline`` is an absolute value of the reconciler's clock.
        """
        pod = event.pod
        classification = classify(pod.labels)
        if not classification.relevant or not pod.allowlist:
            return Decision(allowed=True)

        budget = _Budget(pod, deadline, cancel, self._clock, self._sleep)

        if event.operation == Operation.DELETE or pod.terminal:
            return self._remove(pod, budget)
        if event.operation == Operation.CREATE:
            return self._enforce(pod, classification.selector, budget)

        logger.debug("[reconcile] %s: ignoring %s", pod.identity, event.operation.value)
        return Decision(allowed=True)

    # ── create path ────────────────────────────
    def _enforce(self, pod: PodSnapshot, selector: dict, budget: _Budget) -> Decision:
        if not pod.name:
            # generateName prefixes are shared between pods and cannot key a policy
            logger.error("[reconcile] %s: pod has no concrete name", pod.identity)
            return Decision(allowed=False, reason="pods with an allowlist must set metadata.name")

        try:
            resolved = resolve(pod.allowlist, self.aliases)
        except ParseFailure as e:
            logger.error("[reconcile] %s: invalid allowlist: %s", pod.identity, e)
            return Decision(allowed=False, reason=f"invalid allowlist: {e}")

        if resolved.dropped:
            logger.info("[reconcile] %s: dropped invalid hosts %s", pod.identity, sorted(resolved.dropped))
        if resolved.is_empty():
            logger.info("[reconcile] %s: allowlist resolved to nothing, skipping", pod.identity)
            return Decision(allowed=True)

        ip_body = build_ip_policy(pod.name, pod.namespace, selector, resolved.ip)
        fqdn_body = build_fqdn_policy(pod.name, pod.namespace, selector, resolved.fqdn)

        self._transition(pod, PolicyState.NO_POLICY, PolicyState.PENDING)
        written: List[_Undo] = []
        try:
            if ip_body is not None:
                self._apply_ip_policy(pod, ip_body, budget, written)
            if fqdn_body is not None:
                self._apply_fqdn_policy(pod, fqdn_body, budget, written)
                self._confirm(pod, budget)
        except EgressError as e:
            logger.error("[reconcile] %s: failed enforcing egress policy: %s", pod.identity, e)
            self._rollback(pod, written)
            return Decision(allowed=False, reason=str(e), state=PolicyState.PENDING)

        self._transition(pod, PolicyState.PENDING, PolicyState.ENFORCED)
        self._record(resolved, pod)
        return Decision(allowed=True, state=PolicyState.ENFORCED)

    def _apply_ip_policy(self, pod: PodSnapshot, body: dict, budget: _Budget, written: List[_Undo]) -> None:
        name = ip_policy_name(pod.name)
        budget.check(f"create networkpolicy {name}")
        # registered before the call: a timed out create may still land
        undo = ("networkpolicy", name, self.store.delete_ip_policy)
        written.append(undo)
        try:
            self.store.create_ip_policy(pod.namespace, body, timeout=budget.call_timeout())
            logger.info("[reconcile] %s: created networkpolicy %s", pod.identity, name)
            return
        except Conflict:
            written.remove(undo)

        # already exists: admission retry or name reuse
        budget.check(f"read networkpolicy {name}")
        existing = self.store.get_ip_policy(pod.namespace, name, timeout=budget.call_timeout())
        if _unchanged(existing, body):
            logger.info("[reconcile] %s: networkpolicy %s up to date", pod.identity, name)
            return
        budget.check(f"update networkpolicy {name}")
        self.store.update_ip_policy(
            pod.namespace, name, _with_resource_version(body, existing), timeout=budget.call_timeout()
        )
        logger.info("[reconcile] %s: updated networkpolicy %s", pod.identity, name)

    def _put_fqdn_policy(self, pod: PodSnapshot, name: str, body: dict, budget: _Budget, written: List[_Undo]) -> None:
        try:
            existing = self.store.get_fqdn_policy(pod.namespace, name, timeout=budget.call_timeout())
        except NotFound:
            budget.check(f"create fqdnnetworkpolicy {name}")
            undo = ("fqdnnetworkpolicy", name, self.store.delete_fqdn_policy)
            if undo not in written:
                written.append(undo)
            self.store.create_fqdn_policy(pod.namespace, body, timeout=budget.call_timeout())
            logger.info("[reconcile] %s: created fqdnnetworkpolicy %s", pod.identity, name)
            return

        if _unchanged(existing, body):
            logger.info("[reconcile] %s: fqdnnetworkpolicy %s up to date", pod.identity, name)
            return
        budget.check(f"update fqdnnetworkpolicy {name}")
        self.store.update_fqdn_policy(
            pod.namespace, name, _with_resource_version(body, existing), timeout=budget.call_timeout()
        )
        logger.info("[reconcile] %s: updated fqdnnetworkpolicy %s", pod.identity, name)

    def _apply_fqdn_policy(self, pod: PodSnapshot, body: dict, budget: _Budget, written: List[_Undo]) -> None:
        name = fqdn_policy_name(pod.name)
        last_err: Optional[ClusterError] = None

        for attempt in range(1, self.fqdn_attempts + 1):
            budget.check(f"write fqdnnetworkpolicy {name}")
            try:
                self._put_fqdn_policy(pod, name, body, budget, written)
                return
            except ClusterError as e:
                last_err = e
                logger.warning(
                    "[reconcile] %s: fqdnnetworkpolicy %s attempt %d/%d failed: %s",
                    pod.identity, name, attempt, self.fqdn_attempts, e,
                )
            if attempt < self.fqdn_attempts:
                budget.sleep(attempt * self.backoff_seconds, f"retry fqdnnetworkpolicy {name}")

        raise ClusterError(
            f"fqdnnetworkpolicy {pod.namespace}/{name} not written after {self.fqdn_attempts} attempts: {last_err}",
            status=last_err.status if last_err else None,
        )

    def _confirm(self, pod: PodSnapshot, budget: _Budget) -> None:
        # The FQDN controller materializes a NetworkPolicy with the same name.
        name = fqdn_policy_name(pod.name)
        budget.check(f"confirm networkpolicy {name}")
        timeout = budget.bound(self.confirm_timeout)
        try:
            confirmed = self.store.watch_ip_policy_exists(pod.namespace, name, timeout)
        except ClusterError as e:
            logger.warning("[reconcile] %s: watching networkpolicy %s failed: %s", pod.identity, name, e)
            confirmed = False

        if not confirmed:
            logger.warning(
                "[reconcile] %s: networkpolicy %s not confirmed within %.1fs, admitting anyway",
                pod.identity, name, timeout,
            )

    def _rollback(self, pod: PodSnapshot, written: List[_Undo]) -> None:
        """Delete the objects this request created; the pod will never run."""
        for kind, name, delete in reversed(written):
            try:
                delete(pod.namespace, name, timeout=ROLLBACK_TIMEOUT_SECONDS)
                logger.info("[reconcile] %s: rolled back %s %s", pod.identity, kind, name)
            except NotFound:
                pass
            except ClusterError as e:
                logger.error("[reconcile] %s: rolling back %s %s failed: %s", pod.identity, kind, name, e)

    def _record(self, resolved: ResolvedAllow, pod: PodSnapshot) -> None:
        if self.stats is None:
            return
        self.stats.record(resolved, pod)

    # ── delete path ────────────────────────────
    def _remove(self, pod: PodSnapshot, budget: _Budget) -> Decision:
        failures = []
        steps = (
            ("fqdnnetworkpolicy", fqdn_policy_name(pod.name), self.store.delete_fqdn_policy),
            ("networkpolicy", ip_policy_name(pod.name), self.store.delete_ip_policy),
        )
        for kind, name, delete in steps:
            try:
                budget.check(f"delete {kind} {name}")
                delete(pod.namespace, name, timeout=budget.call_timeout())
                logger.info("[reconcile] %s: deleted %s %s", pod.identity, kind, name)
            except (NotFound, Conflict):
                logger.debug("[reconcile] %s: %s %s already gone", pod.identity, kind, name)
            except EgressError as e:
                logger.error("[reconcile] %s: failed deleting %s %s: %s", pod.identity, kind, name, e)
                failures.append(str(e))

        if failures:
            # a terminal pod is never held back; report and let it go
            return Decision(allowed=True, reason="; ".join(failures), state=PolicyState.ENFORCED)

        self._transition(pod, PolicyState.ENFORCED, PolicyState.REMOVED)
        return Decision(allowed=True, state=PolicyState.REMOVED)

    @staticmethod
    def _transition(pod: PodSnapshot, old: PolicyState, new: PolicyState) -> None:
        logger.debug("[reconcile] %s: %s -> %s", pod.identity, old.value, new.value)
