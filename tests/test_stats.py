from __future__ import annotations

import json
import threading

from admission import PodSnapshot
from allowlist import resolve
from stats import JsonlStatsSink, StatsEmitter, stats_entry


def _pod(labels=None) -> PodSnapshot:
    return PodSnapshot(
        name="nb-alice",
        namespace="team-data",
        labels=labels or {"component": "singleuser-server", "app": "jupyterhub", "team": "data"},
        creation_timestamp="2024-01-01T00:00:00Z",
        service_account="sa",
    )


class ListSink:
    def __init__(self, fail: bool = False):
        self.entries = []
        self.fail = fail

    def write(self, entry: dict) -> None:
        if self.fail:
            raise RuntimeError("sink down")
        self.entries.append(entry)


def test_entry_shape() -> None:
    entry = stats_entry(resolve("pypi.org,10.0.0.1:22"), _pod())
    assert entry == {
        "created": "2024-01-01T00:00:00Z",
        "podname": "nb-alice",
        "namespace": "team-data",
        "team": "data",
        "service": "jupyterhub",
        "allowlist": {"ip": {"22": ["10.0.0.1"]}, "fqdn": {"443": ["pypi.org"]}},
    }


def test_full_queue_drops_instead_of_blocking() -> None:
    emitter = StatsEmitter(ListSink(), maxsize=1, put_timeout=0.01)

    assert emitter.record(resolve("pypi.org"), _pod()) is True
    assert emitter.record(resolve("pypi.org"), _pod()) is False
    assert emitter.dropped == 1


def test_disabled_emitter_records_nothing() -> None:
    emitter = StatsEmitter(None)
    assert emitter.record(resolve("pypi.org"), _pod()) is False
    assert emitter.start(threading.Event()) is None


def test_run_drains_to_sink_and_survives_sink_errors(caplog) -> None:
    good = ListSink()
    emitter = StatsEmitter(good, maxsize=10)
    emitter.record(resolve("pypi.org"), _pod())
    emitter.record(resolve("10.0.0.1:22"), _pod())

    stop = threading.Event()
    stop.set()
    emitter.run(stop)
    assert len(good.entries) == 2

    failing = StatsEmitter(ListSink(fail=True), maxsize=10)
    failing.record(resolve("pypi.org"), _pod())
    with caplog.at_level("ERROR"):
        failing.run(stop)
    assert "team-data/nb-alice" in caplog.text


def test_jsonl_sink_appends_lines(tmp_path) -> None:
    sink = JsonlStatsSink(tmp_path / "stats" / "allowlist.jsonl")
    sink.write({"podname": "a"})
    sink.write({"podname": "b"})

    lines = (tmp_path / "stats" / "allowlist.jsonl").read_text().splitlines()
    assert [json.loads(line)["podname"] for line in lines] == ["a", "b"]


def test_drop_count_is_exact_across_threads() -> None:
    emitter = StatsEmitter(ListSink(), maxsize=1, put_timeout=0)
    emitter.record(resolve("pypi.org"), _pod())

    def flood():
        for _ in range(200):
            emitter.record(resolve("pypi.org"), _pod())

    threads = [threading.Thread(target=flood) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert emitter.dropped == 800
