# stats.py
from __future__ import annotations

import json
import logging
import queue
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from admission import PodSnapshot
from allowlist import ResolvedAllow
from workloads import service_and_team

logger = logging.getLogger(__name__)


def stats_entry(resolved: ResolvedAllow, pod: PodSnapshot) -> dict:
    service, team = service_and_team(pod.labels, pod.service_account)
    return {
        "created": pod.creation_timestamp or datetime.now(timezone.utc).isoformat(),
        "podname": pod.name,
        "namespace": pod.namespace,
        "team": team,
        "service": service,
        "allowlist": resolved.to_dict(),
    }


class JsonlStatsSink:
    """Append-only JSON-lines file, one allowlist resolution per line."""

    def __init__(self, path):
        self.path = Path(path)

    def write(self, entry: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a") as f:
            f.write(json.dumps(entry, sort_keys=True) + "\n")


class StatsEmitter:
    """Fire-and-forget handoff of allowlist statistics to a sink.

    ``record`` never blocks longer than ``put_timeout``; when the queue is
    full the entry is dropped. ``run`` drains the queue on its own thread.
    """

    def __init__(self, sink=None, maxsize: int = 100, put_timeout: float = 0.05):
        self.sink = sink
        self.put_timeout = put_timeout
        self.queue: "queue.Queue[dict]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.sink is not None

    def record(self, resolved: ResolvedAllow, pod: PodSnapshot) -> bool:
        if not self.enabled:
            return False
        entry = stats_entry(resolved, pod)
        try:
            self.queue.put(entry, timeout=self.put_timeout)
        except queue.Full:
            with self._dropped_lock:
                self.dropped += 1
            logger.warning("[stats] queue full, dropping statistics for %s", pod.identity)
            return False
        return True

    def _flush_one(self, entry: dict) -> None:
        try:
            self.sink.write(entry)
        except Exception as e:
            logger.error(
                "[stats] persisting allowlist stats for %s/%s failed: %s",
                entry.get("namespace"), entry.get("podname"), e,
            )

    def run(self, stop_event: threading.Event, poll_seconds: float = 0.5) -> None:
        """Background loop that hands queued entries to the sink."""
        logger.info("[stats] starting statistics writer")
        while not stop_event.is_set():
            try:
                entry = self.queue.get(timeout=poll_seconds)
            except queue.Empty:
                continue
            self._flush_one(entry)
            self.queue.task_done()

        # drain what is left on shutdown
        while True:
            try:
                entry = self.queue.get_nowait()
            except queue.Empty:
                break
            self._flush_one(entry)
            self.queue.task_done()
        logger.info("[stats] statistics writer stopped")

    def start(self, stop_event: threading.Event) -> Optional[threading.Thread]:
        if not self.enabled:
            return None
        thread = threading.Thread(target=self.run, args=(stop_event,), daemon=True, name="stats-writer")
        thread.start()
        return thread
