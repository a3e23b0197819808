# config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    bind_address: str = "0.0.0.0:9443"
    cert_path: Optional[str] = None
    host_alias_path: Optional[str] = None
    in_cluster: bool = True
    fqdn_attempts: int = 3
    fqdn_backoff_seconds: float = 1.0
    confirm_timeout_seconds: float = 10.0
    webhook_timeout_seconds: float = 25.0
    stats_path: Optional[str] = None
    stats_queue_size: int = 100
    log_level: str = "INFO"

    @property
    def host(self) -> str:
        return self.bind_address.rsplit(":", 1)[0] or "0.0.0.0"

    @property
    def port(self) -> int:
        return int(self.bind_address.rsplit(":", 1)[1])

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            bind_address=env.get("BIND_ADDRESS", "0.0.0.0:9443"),
            cert_path=env.get("CERT_PATH") or None,
            host_alias_path=env.get("HOST_ALIAS_PATH") or None,
            in_cluster=env.get("IN_CLUSTER", "1") == "1",
            fqdn_attempts=_int(env, "FQDN_ATTEMPTS", 3),
            fqdn_backoff_seconds=_float(env, "FQDN_BACKOFF_SECONDS", 1.0),
            confirm_timeout_seconds=_float(env, "CONFIRM_TIMEOUT_SECONDS", 10.0),
            webhook_timeout_seconds=_float(env, "WEBHOOK_TIMEOUT_SECONDS", 25.0),
            stats_path=env.get("STATS_PATH") or None,
            stats_queue_size=_int(env, "STATS_QUEUE_SIZE", 100),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
