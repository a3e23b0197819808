# k8s.py
from __future__ import annotations

import logging
import math
from typing import Callable, Optional

from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError, ReadTimeoutError

from errors import ClusterError, Conflict, NotFound
from policies.egress import FQDN_POLICY_GROUP, FQDN_POLICY_PLURAL, FQDN_POLICY_VERSION

logger = logging.getLogger(__name__)


def load_kube(in_cluster: bool = True) -> None:
    if not in_cluster:
        config.load_kube_config()
        logger.info("[k8s] using kubeconfig (local)")
        return
    try:
        config.load_incluster_config()
        logger.info("[k8s] using in-cluster config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("[k8s] using kubeconfig (local)")


def _translate(e: ApiException, what: str) -> ClusterError:
    msg = f"{what}: {e.status} {e.reason}"
    if e.status == 404:
        return NotFound(msg, status=e.status)
    if e.status == 409:
        return Conflict(msg, status=e.status)
    return ClusterError(msg, status=e.status)


def _timeout_kwargs(timeout: Optional[float]) -> dict:
    if timeout is None:
        return {}
    return {"_request_timeout": max(timeout, 0.001)}


def _call(what: str, fn, *args, timeout: Optional[float] = None, **kwargs):
    """Run one API call; ``timeout`` caps the whole HTTP round trip."""
    try:
        return fn(*args, **kwargs, **_timeout_kwargs(timeout))
    except ApiException as e:
        raise _translate(e, what) from e
    except HTTPError as e:
        # connect/read timeouts and dropped connections never reach ApiException
        raise ClusterError(f"{what}: {e}") from e


class ClusterStore:
    """Object store for the two managed policy kinds.

    NetworkPolicies go through the typed networking API, FQDNNetworkPolicies
    through the custom objects API. Every method returns plain dicts and
    raises NotFound / Conflict / ClusterError instead of ApiException.
    ``timeout`` (seconds) bounds a single call; None leaves it unbounded.
    """

    def __init__(
        self,
        networking: Optional[client.NetworkingV1Api] = None,
        custom: Optional[client.CustomObjectsApi] = None,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
    ):
        self.networking = networking or client.NetworkingV1Api()
        self.custom = custom or client.CustomObjectsApi()
        self._serializer = client.ApiClient()
        self._watch_factory = watch_factory

    def _to_dict(self, obj) -> dict:
        if isinstance(obj, dict):
            return obj
        return self._serializer.sanitize_for_serialization(obj)

    def _custom_kwargs(self, namespace: str) -> dict:
        return {
            "group": FQDN_POLICY_GROUP,
            "version": FQDN_POLICY_VERSION,
            "namespace": namespace,
            "plural": FQDN_POLICY_PLURAL,
        }

    # ── NetworkPolicy ──────────────────────────
    def get_ip_policy(self, namespace: str, name: str, timeout: Optional[float] = None) -> dict:
        obj = _call(
            f"get networkpolicy {namespace}/{name}",
            self.networking.read_namespaced_network_policy, name, namespace,
            timeout=timeout,
        )
        return self._to_dict(obj)

    def create_ip_policy(self, namespace: str, body: dict, timeout: Optional[float] = None) -> dict:
        name = body["metadata"]["name"]
        obj = _call(
            f"create networkpolicy {namespace}/{name}",
            self.networking.create_namespaced_network_policy, namespace, body,
            timeout=timeout,
        )
        return self._to_dict(obj)

    def update_ip_policy(self, namespace: str, name: str, body: dict, timeout: Optional[float] = None) -> dict:
        obj = _call(
            f"update networkpolicy {namespace}/{name}",
            self.networking.replace_namespaced_network_policy, name, namespace, body,
            timeout=timeout,
        )
        return self._to_dict(obj)

    def delete_ip_policy(self, namespace: str, name: str, timeout: Optional[float] = None) -> None:
        _call(
            f"delete networkpolicy {namespace}/{name}",
            self.networking.delete_namespaced_network_policy, name, namespace,
            timeout=timeout,
        )

    # ── FQDNNetworkPolicy ──────────────────────
    def get_fqdn_policy(self, namespace: str, name: str, timeout: Optional[float] = None) -> dict:
        return _call(
            f"get fqdnnetworkpolicy {namespace}/{name}",
            self.custom.get_namespaced_custom_object,
            name=name, timeout=timeout, **self._custom_kwargs(namespace),
        )

    def create_fqdn_policy(self, namespace: str, body: dict, timeout: Optional[float] = None) -> dict:
        name = body["metadata"]["name"]
        return _call(
            f"create fqdnnetworkpolicy {namespace}/{name}",
            self.custom.create_namespaced_custom_object,
            body=body, timeout=timeout, **self._custom_kwargs(namespace),
        )

    def update_fqdn_policy(self, namespace: str, name: str, body: dict, timeout: Optional[float] = None) -> dict:
        return _call(
            f"update fqdnnetworkpolicy {namespace}/{name}",
            self.custom.replace_namespaced_custom_object,
            name=name, body=body, timeout=timeout, **self._custom_kwargs(namespace),
        )

    def delete_fqdn_policy(self, namespace: str, name: str, timeout: Optional[float] = None) -> None:
        _call(
            f"delete fqdnnetworkpolicy {namespace}/{name}",
            self.custom.delete_namespaced_custom_object,
            name=name, timeout=timeout, **self._custom_kwargs(namespace),
        )

    # ── confirmation ───────────────────────────
    def watch_ip_policy_exists(self, namespace: str, name: str, timeout: float) -> bool:
        """Block until NetworkPolicy ``name`` exists or ``timeout`` seconds pass."""
        if timeout <= 0:
            return False
        try:
            self.get_ip_policy(namespace, name, timeout=timeout)
            return True
        except NotFound:
            pass

        w = self._watch_factory()
        try:
            for event in w.stream(
                self.networking.list_namespaced_network_policy,
                namespace,
                field_selector=f"metadata.name={name}",
                timeout_seconds=max(1, int(math.ceil(timeout))),
                _request_timeout=timeout,
            ):
                if event.get("type") in ("ADDED", "MODIFIED"):
                    return True
        except ReadTimeoutError:
            return False
        except ApiException as e:
            raise _translate(e, f"watch networkpolicy {namespace}/{name}") from e
        except HTTPError as e:
            raise ClusterError(f"watch networkpolicy {namespace}/{name}: {e}") from e
        finally:
            w.stop()
        return False
