from __future__ import annotations

from unittest import mock

import pytest
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import ReadTimeoutError

from errors import ClusterError, Conflict, NotFound
from k8s import ClusterStore


def _store(watch_events=None):
    networking = mock.Mock()
    custom = mock.Mock()
    w = mock.Mock()
    w.stream.return_value = iter(watch_events or [])
    store = ClusterStore(networking=networking, custom=custom, watch_factory=lambda: w)
    return store, networking, custom, w


@pytest.mark.parametrize("status,exc", [(404, NotFound), (409, Conflict), (500, ClusterError)])
def test_api_errors_are_translated(status, exc) -> None:
    store, networking, _, _ = _store()
    networking.create_namespaced_network_policy.side_effect = ApiException(status=status, reason="x")

    with pytest.raises(exc) as info:
        store.create_ip_policy("ns", {"metadata": {"name": "p"}})
    assert info.value.status == status


def test_fqdn_calls_use_custom_object_coordinates() -> None:
    store, _, custom, _ = _store()
    custom.get_namespaced_custom_object.return_value = {"metadata": {"name": "p-fqdn"}}

    assert store.get_fqdn_policy("ns", "p-fqdn") == {"metadata": {"name": "p-fqdn"}}
    custom.get_namespaced_custom_object.assert_called_once_with(
        group="networking.gke.io",
        version="v1alpha3",
        namespace="ns",
        plural="fqdnnetworkpolicies",
        name="p-fqdn",
    )


def test_fqdn_delete_not_found() -> None:
    store, _, custom, _ = _store()
    custom.delete_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")
    with pytest.raises(NotFound):
        store.delete_fqdn_policy("ns", "p-fqdn")


def test_watch_short_circuits_when_policy_exists() -> None:
    store, networking, _, w = _store()
    networking.read_namespaced_network_policy.return_value = {"metadata": {"name": "p-fqdn"}}

    assert store.watch_ip_policy_exists("ns", "p-fqdn", 5) is True
    w.stream.assert_not_called()


def test_watch_returns_true_on_added_event() -> None:
    store, networking, _, w = _store(watch_events=[{"type": "ADDED", "object": None}])
    networking.read_namespaced_network_policy.side_effect = ApiException(status=404, reason="Not Found")

    assert store.watch_ip_policy_exists("ns", "p-fqdn", 2.5) is True
    kwargs = w.stream.call_args.kwargs
    assert kwargs["field_selector"] == "metadata.name=p-fqdn"
    assert kwargs["timeout_seconds"] == 3
    w.stop.assert_called_once()


def test_watch_times_out_false() -> None:
    store, networking, _, w = _store(watch_events=[])
    networking.read_namespaced_network_policy.side_effect = ApiException(status=404, reason="Not Found")

    assert store.watch_ip_policy_exists("ns", "p-fqdn", 1) is False
    assert store.watch_ip_policy_exists("ns", "p-fqdn", 0) is False


def test_timeout_is_forwarded_as_request_timeout() -> None:
    store, networking, custom, _ = _store()
    networking.create_namespaced_network_policy.return_value = {"metadata": {"name": "p"}}

    store.create_ip_policy("ns", {"metadata": {"name": "p"}}, timeout=1.5)
    store.delete_fqdn_policy("ns", "p-fqdn", timeout=0.25)

    networking.create_namespaced_network_policy.assert_called_once_with(
        "ns", {"metadata": {"name": "p"}}, _request_timeout=1.5
    )
    assert custom.delete_namespaced_custom_object.call_args.kwargs["_request_timeout"] == 0.25


def test_client_side_timeout_becomes_cluster_error() -> None:
    store, networking, _, _ = _store()
    networking.read_namespaced_network_policy.side_effect = ReadTimeoutError(None, "/apis", "Read timed out.")

    with pytest.raises(ClusterError) as info:
        store.get_ip_policy("ns", "p", timeout=0.1)
    assert not isinstance(info.value, NotFound)
    assert "get networkpolicy ns/p" in str(info.value)


def test_watch_is_bounded_and_read_timeout_means_not_confirmed() -> None:
    store, networking, _, w = _store()
    networking.read_namespaced_network_policy.side_effect = ApiException(status=404, reason="Not Found")
    w.stream.side_effect = ReadTimeoutError(None, "/apis", "Read timed out.")

    assert store.watch_ip_policy_exists("ns", "p-fqdn", 2.0) is False
    assert networking.read_namespaced_network_policy.call_args.kwargs["_request_timeout"] == 2.0
    assert w.stream.call_args.kwargs["_request_timeout"] == 2.0
    w.stop.assert_called_once()
